"""
Tests for FilePollService: wiring, manual runs and the history queries.
"""

import asyncio
import logging
from datetime import timedelta

import pytest
from helpers import FakeAdapter, FakeAdapterFactory, make_config, make_file

from filepoll.config.settings import MetricsSettings, SchedulerSettings, ServiceSettings
from filepoll.core.models import ExecutionStatus, ExecutionTrigger, utcnow
from filepoll.exceptions import ConfigurationNotFoundError, TriggerRejectedError, ValidationError
from filepoll.service.scheduler import Job
from filepoll.service.server import FilePollService


@pytest.fixture
def adapter():
    return FakeAdapter([make_file("invoice_1.csv"), make_file("invoice_2.csv")])


@pytest.fixture
def make_service(state_store, transport, secrets, retry_manager, metrics, adapter):
    def _make(**settings):
        values = dict(scheduler=SchedulerSettings(tick_interval_s=3600, watchdog_interval_s=3600))
        values.update(settings)
        return FilePollService(
            ServiceSettings(**values),
            store=state_store,
            transport=transport,
            secrets=secrets,
            adapter_factory=FakeAdapterFactory(adapter),
            retry_manager=retry_manager,
            metrics=metrics,
        )

    return _make


@pytest.fixture
def service(make_service):
    svc = make_service()
    svc.load_configurations([make_config().to_dict()])
    return svc


class TestLoadConfigurations:
    def test_load_creates_then_redefines(self, make_service):
        svc = make_service()
        [first] = svc.load_configurations([make_config().to_dict()])
        assert first.version == 1
        assert first.next_scheduled_run > utcnow()

        [second] = svc.load_configurations([make_config(name="Renamed").to_dict()])
        assert second.version == 2
        assert svc.configurations.get("acme", "daily-invoices").name == "Renamed"

    def test_invalid_entry_loads_nothing(self, make_service):
        svc = make_service()
        bad = make_config(configuration_id="broken").to_dict()
        bad["schedule"] = {"cron": "not a cron"}
        with pytest.raises(ValidationError):
            svc.load_configurations([make_config().to_dict(), bad])
        assert not svc.configurations.exists("acme", "daily-invoices")

    async def test_seeds_loaded_at_start(self, make_service, transport):
        svc = make_service(configurations=[make_config().to_dict()])
        await svc.start(enable_scheduler=False)
        try:
            assert svc.configurations.exists("acme", "daily-invoices")
            assert not svc.scheduler.running
        finally:
            await svc.stop()


class TestRunOnce:
    async def test_run_once_completes(self, service, transport, adapter):
        record = await service.run_once("acme", "daily-invoices")

        assert record.status == ExecutionStatus.COMPLETED
        assert record.trigger == ExecutionTrigger.MANUAL
        assert record.files_found == 2
        assert record.files_processed == 2
        assert len(transport.messages("FileDiscovered")) == 2
        assert adapter.requests[0].name_pattern == "invoice_*.csv"
        assert not service.scheduler.in_flight

    async def test_second_run_skips_processed_files(self, service):
        await service.run_once("acme", "daily-invoices")
        record = await service.run_once("acme", "daily-invoices")

        assert record.status == ExecutionStatus.COMPLETED
        assert record.files_found == 2
        assert record.files_processed == 0

    async def test_run_stamps_configuration(self, service):
        record = await service.run_once("acme", "daily-invoices")
        config = service.configurations.get("acme", "daily-invoices")
        assert config.last_executed_at is not None
        assert config.last_executed_at >= record.created_at

    async def test_unknown_configuration(self, service):
        with pytest.raises(ConfigurationNotFoundError):
            await service.run_once("acme", "missing")

    async def test_inactive_configuration_rejected(self, service):
        service.configurations.deactivate("acme", "daily-invoices")
        with pytest.raises(TriggerRejectedError, match="inactive"):
            await service.run_once("acme", "daily-invoices")
        assert service.list_executions("acme").items == []

    async def test_in_flight_configuration_rejected(self, service):
        config = service.configurations.get("acme", "daily-invoices")
        record = service.orchestrator.create_execution(config, ExecutionTrigger.SCHEDULED)
        service.scheduler.in_flight[config.key] = Job(config=config, record=record)

        with pytest.raises(TriggerRejectedError, match="in flight"):
            await service.run_once("acme", "daily-invoices")


class TestTrigger:
    async def test_trigger_runs_in_background(self, service):
        async with service:
            execution_id = service.trigger("acme", "daily-invoices")
            for _ in range(200):
                record = service.get_execution(execution_id)
                if record.is_terminal:
                    break
                await asyncio.sleep(0.01)

        assert record.status == ExecutionStatus.COMPLETED
        assert record.trigger == ExecutionTrigger.MANUAL

    async def test_trigger_unknown_configuration(self, service):
        with pytest.raises(ConfigurationNotFoundError):
            service.trigger("acme", "missing")


class TestQueries:
    async def test_list_executions_accepts_status_string(self, service, adapter):
        await service.run_once("acme", "daily-invoices")
        adapter.errors.append(ValueError("boom"))
        await service.run_once("acme", "daily-invoices")

        completed = service.list_executions("acme", status="completed")
        failed = service.list_executions("acme", status=ExecutionStatus.FAILED)
        assert [r.status for r in completed.items] == [ExecutionStatus.COMPLETED]
        assert [r.status for r in failed.items] == [ExecutionStatus.FAILED]
        assert len(service.list_executions("acme").items) == 2

    async def test_execution_files(self, service):
        record = await service.run_once("acme", "daily-invoices")
        page = service.execution_files(record.execution_id)
        assert sorted(f.filename for f in page.items) == ["invoice_1.csv", "invoice_2.csv"]

        filtered = service.execution_files(record.execution_id, filename="INVOICE_2")
        assert [f.filename for f in filtered.items] == ["invoice_2.csv"]

    def test_execution_files_unknown_execution(self, service):
        page = service.execution_files("no-such-execution")
        assert page.items == []
        assert page.continuation_token is None

    def test_get_execution_unknown(self, service):
        assert service.get_execution("no-such-execution") is None

    async def test_execution_metrics(self, service):
        await service.run_once("acme", "daily-invoices")
        await service.run_once("acme", "daily-invoices")

        result = service.execution_metrics("acme", start=utcnow() - timedelta(hours=1))
        assert result.total_executions == 2
        assert result.successful_executions == 2
        assert result.files_discovered == 4
        assert result.files_processed == 2
        assert result.success_rate == 1.0


class TestLifecycle:
    async def test_context_manager_starts_and_stops(self, service, transport):
        async with service:
            assert service.scheduler.running
            assert transport.is_connected
        assert not service.scheduler.running
        assert not transport.is_connected

    async def test_start_is_idempotent(self, service):
        await service.start(enable_scheduler=False)
        await service.start(enable_scheduler=False)
        await service.stop()

    async def test_metrics_follow_settings(self, make_service, metrics):
        make_service(metrics=MetricsSettings(enabled=False))
        assert not metrics.enabled

    async def test_in_memory_transport_warns_when_scheduling(self, service, caplog):
        caplog.set_level(logging.WARNING, logger="filepoll")
        async with service:
            pass
        assert any("in-memory transport" in r.getMessage() for r in caplog.records)

    async def test_no_warning_without_scheduler(self, service, caplog):
        caplog.set_level(logging.WARNING, logger="filepoll")
        await service.start(enable_scheduler=False)
        await service.stop()
        assert not any("in-memory transport" in r.getMessage() for r in caplog.records)
