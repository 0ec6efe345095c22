"""
filepoll long-running service.

Wires the state store, protocol adapters, notification transport,
orchestrator and scheduler together from ServiceSettings, and exposes the
operations the CLI (or an embedding application) needs: manual triggers,
execution history and configuration loading.
"""

from __future__ import annotations

import asyncio
import signal
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import Any

from filepoll.config.loader import load_config
from filepoll.config.settings import ServiceSettings
from filepoll.connections.factory import AdapterFactory
from filepoll.core.models import (
    ExecutionMetrics,
    ExecutionRecord,
    ExecutionStatus,
    ExecutionTrigger,
    Page,
    ProcessedFileRecord,
    RetrievalConfiguration,
    utcnow,
)
from filepoll.core.orchestrator import ExecutionContext, ExecutionOrchestrator
from filepoll.core.retry import RetryManager
from filepoll.core.secrets import EnvSecretResolver, SecretResolver
from filepoll.exceptions import FilePollError, TriggerRejectedError
from filepoll.notify import InMemoryTransport, NotificationTransport, create_transport
from filepoll.observability.metrics import MetricsRegistry, get_metrics_registry
from filepoll.service.scheduler import Job, SchedulerLoop
from filepoll.state.configurations import ConfigurationStore, parse_configurations
from filepoll.state.history import ExecutionHistory
from filepoll.state.ledger import DeduplicationLedger
from filepoll.state.store import StateStore
from filepoll.utils.logging import get_logger, setup_logging_from_config

logger = get_logger("filepoll.service")


class FilePollService:
    """
    The discovery engine as one object.

    Collaborators default to what ``settings`` describes; tests and embedding
    applications can pass their own store, transport or secret resolver.
    """

    def __init__(
        self,
        settings: ServiceSettings | None = None,
        *,
        store: StateStore | None = None,
        transport: NotificationTransport | None = None,
        secrets: SecretResolver | None = None,
        adapter_factory: AdapterFactory | None = None,
        retry_manager: RetryManager | None = None,
        metrics: MetricsRegistry | None = None,
    ):
        self.settings = settings or ServiceSettings()
        self.store = store or StateStore(self.settings.state_path)
        self.store.initialize()

        self.configurations = ConfigurationStore(self.store)
        self.history = ExecutionHistory(self.store)
        self.ledger = DeduplicationLedger(self.store)

        self.metrics = metrics or get_metrics_registry()
        if self.settings.metrics.enabled:
            self.metrics.enable()
        else:
            self.metrics.disable()

        self._executor: ThreadPoolExecutor | None = None
        if adapter_factory is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.settings.adapter_threads, thread_name_prefix="filepoll-adapter"
            )
            adapter_factory = AdapterFactory(executor=self._executor)

        self.transport = transport or create_transport(self.settings.notifications)
        self.orchestrator = ExecutionOrchestrator(
            history=self.history,
            ledger=self.ledger,
            transport=self.transport,
            configurations=self.configurations,
            adapter_factory=adapter_factory,
            secrets=secrets or EnvSecretResolver(prefix=self.settings.secrets_env_prefix),
            retry_policy=self.settings.retry.policy(),
            retry_manager=retry_manager,
            metrics=self.metrics,
            max_results=self.settings.max_results,
            notification_timeout_s=self.settings.notifications.timeout_s,
            publish_summary=self.settings.notifications.summary_enabled,
        )
        self.scheduler = SchedulerLoop(
            self.orchestrator,
            self.configurations,
            self.history,
            settings=self.settings.scheduler,
            metrics=self.metrics,
        )
        self._started = False

    @classmethod
    def from_project(cls, project_dir: Path, env: str | None = None, **overrides: Any) -> FilePollService:
        config = load_config(project_dir, env=env)
        return cls(ServiceSettings.from_config(config, project_dir=project_dir), **overrides)

    # --- Lifecycle -----------------------------------------------------------

    async def start(self, *, enable_scheduler: bool = True) -> None:
        if self._started:
            return
        await self.transport.connect()
        if self.settings.metrics.enabled and self.settings.metrics.port:
            self.metrics.start_http_server(self.settings.metrics.port)
        if self.settings.configurations:
            self.load_configurations(self.settings.configurations)
        if enable_scheduler:
            if isinstance(self.transport, InMemoryTransport):
                logger.warning(
                    "Notifications go to the in-memory transport: nothing leaves this process and only the "
                    f"last {self.transport.max_messages} per topic are kept. "
                    "Set notifications.transport to webhook or kafka for production."
                )
            self.scheduler.start()
        self._started = True
        logger.info("filepoll service started")

    async def stop(self, grace_s: float | None = None) -> None:
        if self.scheduler.running:
            await self.scheduler.stop(grace_s)
        await self.orchestrator.drain()
        await self.transport.disconnect()
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
        self.store.close()
        self._started = False
        logger.info("filepoll service stopped")

    async def __aenter__(self) -> FilePollService:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    # --- Executions ----------------------------------------------------------

    def trigger(self, tenant_id: str, configuration_id: str) -> str:
        """
        Queue a manual execution and return its id without waiting for it.

        Raises:
            ConfigurationNotFoundError: If the configuration does not exist
            TriggerRejectedError: If it is inactive, busy, or the queue is full
        """
        config = self.configurations.get(tenant_id, configuration_id)
        record = self.scheduler.trigger(config)
        logger.info(f"Triggered execution {record.execution_id} for {tenant_id}/{configuration_id}")
        return record.execution_id

    async def run_once(self, tenant_id: str, configuration_id: str) -> ExecutionRecord:
        """Run one execution inline and return its terminal record."""
        config = self.configurations.get(tenant_id, configuration_id)
        if not config.is_active:
            raise TriggerRejectedError(f"Configuration {tenant_id}/{configuration_id} is inactive")
        if config.key in self.scheduler.in_flight:
            raise TriggerRejectedError(f"Configuration {tenant_id}/{configuration_id} already has an execution in flight")

        record = self.orchestrator.create_execution(config, ExecutionTrigger.MANUAL)
        job = Job(
            config=config,
            record=record,
            context=ExecutionContext.with_timeout(self.settings.scheduler.execution_timeout_s),
        )
        self.scheduler.in_flight[config.key] = job
        try:
            return await self.orchestrator.execute(config, record, job.context)
        finally:
            self.scheduler.in_flight.pop(config.key, None)

    def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        return self.history.get(execution_id)

    def list_executions(
        self,
        tenant_id: str,
        *,
        configuration_id: str | None = None,
        status: ExecutionStatus | str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        page_size: int = 50,
        continuation_token: str | None = None,
    ) -> Page[ExecutionRecord]:
        return self.history.list(
            tenant_id,
            configuration_id=configuration_id,
            status=ExecutionStatus(status) if status else None,
            since=since,
            until=until,
            page_size=page_size,
            continuation_token=continuation_token,
        )

    def execution_files(
        self,
        execution_id: str,
        *,
        filename: str | None = None,
        page_size: int = 50,
        continuation_token: str | None = None,
    ) -> Page[ProcessedFileRecord]:
        """Files newly processed by one execution."""
        record = self.history.get(execution_id)
        if record is None:
            return Page(items=[])
        return self.ledger.query(
            record.tenant_id,
            record.configuration_id,
            filename=filename,
            execution_id=execution_id,
            page_size=page_size,
            continuation_token=continuation_token,
        )

    def execution_metrics(
        self,
        tenant_id: str,
        *,
        configuration_id: str | None = None,
        start: datetime,
        end: datetime | None = None,
    ) -> ExecutionMetrics:
        return self.history.metrics(tenant_id, configuration_id=configuration_id, start=start, end=end or utcnow())

    # --- Configurations ------------------------------------------------------

    def load_configurations(
        self, entries: list[dict[str, Any]], *, modified_by: str = "config"
    ) -> list[RetrievalConfiguration]:
        """Validate every entry, then create or redefine them (config.yaml seeds)."""
        parsed = parse_configurations(entries)
        loaded = [self.configurations.upsert(config, modified_by=modified_by) for config in parsed]
        logger.info(f"Loaded {len(loaded)} configuration(s)")
        return loaded


async def _serve(service: FilePollService, stopping: asyncio.Event) -> None:
    await service.start()
    try:
        await stopping.wait()
    finally:
        await service.stop()


def run_service(*, project_dir: Path, env: str | None = None, verbose: bool = False) -> None:
    """
    Run the filepoll service until SIGINT/SIGTERM (blocking).

    Args:
        project_dir: Directory holding config.yaml
        env: Environment name (dev, staging, prod)
        verbose: Force DEBUG logging
    """
    config = load_config(project_dir, env=env)
    setup_logging_from_config(config, project_dir=project_dir)
    if verbose:
        get_logger().setLevel("DEBUG")

    try:
        settings = ServiceSettings.from_config(config, project_dir=project_dir)
    except FilePollError as e:
        raise RuntimeError(f"Initialization failed: {e}") from None

    async def main() -> None:
        stopping = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stopping.set)
            except NotImplementedError:
                # Windows event loops have no signal handlers
                pass
        service = FilePollService(settings)
        await _serve(service, stopping)

    asyncio.run(main())
