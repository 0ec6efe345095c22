"""
Tests for SchedulerLoop: tick dispatch, manual triggers, the worker pool,
shutdown and the abandoned-execution watchdog.
"""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from helpers import FakeAdapter, FakeAdapterFactory, make_config, make_file

from filepoll.config.settings import SchedulerSettings
from filepoll.core.models import ErrorCategory, ExecutionRecord, ExecutionStatus, ExecutionTrigger
from filepoll.core.orchestrator import ExecutionOrchestrator
from filepoll.exceptions import TriggerRejectedError
from filepoll.service.scheduler import Job, SchedulerLoop

T0 = datetime(2026, 2, 23, 5, 0, tzinfo=UTC)


@pytest.fixture
def adapter():
    return FakeAdapter([make_file("invoice_1.csv")])


@pytest.fixture
def orchestrator(history, ledger, configurations, transport, secrets, metrics, clock, retry_manager, adapter):
    return ExecutionOrchestrator(
        history=history,
        ledger=ledger,
        transport=transport,
        configurations=configurations,
        adapter_factory=FakeAdapterFactory(adapter),
        secrets=secrets,
        retry_manager=retry_manager,
        metrics=metrics,
        clock=clock,
    )


@pytest.fixture
def make_scheduler(orchestrator, configurations, history, metrics, clock):
    def _make(**settings):
        values = dict(max_concurrent_executions=2, tick_interval_s=3600, watchdog_interval_s=3600)
        values.update(settings)
        return SchedulerLoop(
            orchestrator,
            configurations,
            history,
            settings=SchedulerSettings(**values),
            metrics=metrics,
            clock=clock,
        )

    return _make


async def wait_for_status(history, execution_id, *statuses, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        record = history.get(execution_id)
        if record and record.status in statuses:
            return record
        await asyncio.sleep(0.01)
    raise AssertionError(f"execution {execution_id} never reached {statuses}")


class TestTick:
    """Tests for SchedulerLoop.tick()."""

    async def test_dispatches_due_configuration(self, make_scheduler, configurations, history):
        configurations.create(make_config(), now=T0)
        scheduler = make_scheduler()

        result = await scheduler.tick()

        assert (result.due, result.triggered, result.skipped, result.deferred) == (1, 1, 0, 0)
        job = scheduler.in_flight[("acme", "daily-invoices")]
        assert scheduler.queued == 1
        stored = history.get(job.record.execution_id)
        assert stored.status == ExecutionStatus.PENDING
        assert stored.trigger == ExecutionTrigger.SCHEDULED

    async def test_nothing_due(self, make_scheduler, configurations, clock):
        configurations.create(make_config(), now=clock())
        result = await make_scheduler().tick()
        assert result.due == 0
        assert result.triggered == 0

    async def test_skips_configuration_in_flight(self, make_scheduler, configurations):
        configurations.create(make_config(), now=T0)
        scheduler = make_scheduler()
        await scheduler.tick()

        result = await scheduler.tick()

        assert result.skipped == 1
        assert result.triggered == 0
        assert scheduler.queued == 1

    async def test_defers_when_queue_full(self, make_scheduler, configurations):
        configurations.create(make_config(configuration_id="a"), now=T0)
        configurations.create(make_config(configuration_id="b"), now=T0)
        scheduler = make_scheduler(max_concurrent_executions=1)

        result = await scheduler.tick()

        assert result.triggered == 1
        assert result.deferred == 1

    async def test_batch_size(self, make_scheduler, configurations):
        for i in range(3):
            configurations.create(make_config(configuration_id=f"c{i}"), now=T0)
        result = await make_scheduler(batch_size=2, max_concurrent_executions=5).tick()
        assert result.due == 2

    async def test_status(self, make_scheduler, configurations):
        configurations.create(make_config(), now=T0)
        scheduler = make_scheduler()
        await scheduler.tick()

        status = scheduler.status()
        assert status["running"] is False
        assert status["queued"] == 1
        assert status["in_flight"][0]["configuration_id"] == "daily-invoices"


class TestTrigger:
    """Tests for manual triggers."""

    async def test_manual_trigger(self, make_scheduler, configurations, clock):
        config = configurations.create(make_config(), now=clock())
        record = make_scheduler().trigger(config)
        assert record.trigger == ExecutionTrigger.MANUAL
        assert record.status == ExecutionStatus.PENDING

    async def test_rejects_inactive(self, make_scheduler):
        with pytest.raises(TriggerRejectedError, match="inactive"):
            make_scheduler().trigger(make_config(is_active=False))

    async def test_rejects_in_flight(self, make_scheduler):
        scheduler = make_scheduler()
        scheduler.trigger(make_config())
        with pytest.raises(TriggerRejectedError, match="in flight"):
            scheduler.trigger(make_config())

    async def test_rejects_when_queue_full(self, make_scheduler):
        scheduler = make_scheduler(max_concurrent_executions=1)
        scheduler.trigger(make_config(configuration_id="a"))
        with pytest.raises(TriggerRejectedError, match="queue is full"):
            scheduler.trigger(make_config(configuration_id="b"))

    async def test_rejects_while_stopping(self, make_scheduler):
        scheduler = make_scheduler()
        await scheduler.stop(grace_s=0.1)
        with pytest.raises(TriggerRejectedError, match="shutting down"):
            scheduler.trigger(make_config())


class TestWorkers:
    """The worker pool and shutdown."""

    async def test_due_configuration_runs_to_completion(self, make_scheduler, configurations, history, transport):
        configurations.create(make_config(), now=T0)
        scheduler = make_scheduler()
        scheduler.start()
        try:
            await asyncio.sleep(0)
            job = scheduler.in_flight.get(("acme", "daily-invoices"))
            execution_id = job.record.execution_id if job else history.list("acme").items[0].execution_id
            record = await wait_for_status(history, execution_id, ExecutionStatus.COMPLETED)
        finally:
            await scheduler.stop(grace_s=1)

        assert record.files_processed == 1
        assert scheduler.in_flight == {}
        assert len(transport.messages("FileDiscovered")) == 1
        assert configurations.get("acme", "daily-invoices").next_scheduled_run == datetime(
            2026, 2, 24, 6, 0, tzinfo=UTC
        )

    async def test_manual_trigger_runs(self, make_scheduler, configurations, history, clock):
        config = configurations.create(make_config(), now=clock())
        scheduler = make_scheduler()
        scheduler.start()
        try:
            record = scheduler.trigger(config)
            stored = await wait_for_status(history, record.execution_id, ExecutionStatus.COMPLETED)
        finally:
            await scheduler.stop(grace_s=1)
        assert stored.trigger == ExecutionTrigger.MANUAL

    async def test_execution_timeout(self, make_scheduler, configurations, history, clock, adapter):
        adapter.delay_s = 0.3
        config = configurations.create(make_config(), now=clock())
        scheduler = make_scheduler(execution_timeout_s=0.1)
        scheduler.start()
        try:
            record = scheduler.trigger(config)
            stored = await wait_for_status(history, record.execution_id, ExecutionStatus.FAILED)
        finally:
            await scheduler.stop(grace_s=1)
        assert stored.error_category in (ErrorCategory.NETWORK_ERROR, ErrorCategory.CANCELLED)

    async def test_stop_closes_queued_executions(self, make_scheduler, configurations, history):
        configurations.create(make_config(), now=T0)
        scheduler = make_scheduler()
        await scheduler.tick()
        execution_id = scheduler.in_flight[("acme", "daily-invoices")].record.execution_id

        await scheduler.stop(grace_s=0.1)

        stored = history.get(execution_id)
        assert stored.status == ExecutionStatus.FAILED
        assert stored.error_category == ErrorCategory.CANCELLED
        assert scheduler.in_flight == {}
        assert scheduler.queued == 0

    async def test_stop_cancels_running_execution(self, make_scheduler, configurations, history, clock, adapter):
        adapter.delay_s = 0.2
        config = configurations.create(make_config(), now=clock())
        scheduler = make_scheduler()
        scheduler.start()
        record = scheduler.trigger(config)
        await wait_for_status(history, record.execution_id, ExecutionStatus.RUNNING)

        await scheduler.stop(grace_s=2)

        stored = history.get(record.execution_id)
        assert stored.status == ExecutionStatus.FAILED
        assert stored.error_category == ErrorCategory.CANCELLED
        assert stored.files_processed == 0
        assert not scheduler.running


class TestWatchdog:
    def test_closes_abandoned_but_not_in_flight(self, make_scheduler, history, clock):
        scheduler = make_scheduler(abandoned_after_s=60)
        old = clock() - timedelta(hours=2)
        stale = history.create(ExecutionRecord(tenant_id="acme", configuration_id="a", created_at=old))
        busy = history.create(ExecutionRecord(tenant_id="acme", configuration_id="b", created_at=old))
        recent = history.create(ExecutionRecord(tenant_id="acme", configuration_id="c", created_at=clock()))
        scheduler.in_flight[("acme", "b")] = Job(config=make_config(configuration_id="b"), record=busy)

        closed = scheduler.close_abandoned()

        assert closed == [stale.execution_id]
        assert history.get(busy.execution_id).status == ExecutionStatus.PENDING
        assert history.get(recent.execution_id).status == ExecutionStatus.PENDING
