"""
Execution orchestrator: one discovery cycle for one configuration.

resolve patterns -> resolve credentials -> list (with retry) -> for each file:
mark in ledger, then notify -> stamp configuration -> terminal status ->
summary broadcast.

Files are marked before they are notified. A file whose notifications fail
stays marked and is not offered again on the next cycle; the execution is
recorded as failed with ``notification_failed`` so the gap is visible in
history.

Errors are categorised here and never propagate to the scheduler, with one
exception: ``asyncio.CancelledError`` is recorded as ``cancelled`` and then
re-raised once the file in progress has finished its notifications.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, tzinfo
from zoneinfo import ZoneInfo

from filepoll.connections.base import DEFAULT_MAX_RESULTS, ListingRequest, ProtocolAdapter
from filepoll.connections.factory import AdapterFactory
from filepoll.core.models import (
    DiscoveredFile,
    ErrorCategory,
    ExecutionRecord,
    ExecutionStatus,
    ExecutionTrigger,
    RetrievalConfiguration,
    TokenTimezone,
    utcnow,
)
from filepoll.core.notifications import build_notifications, build_summary
from filepoll.core.retry import LISTING_RETRY_POLICY, RetryManager, RetryPolicy, RetryState
from filepoll.core.secrets import EnvSecretResolver, SecretResolver, resolve_credentials
from filepoll.core.tokens import resolve_tokens
from filepoll.exceptions import (
    AdapterError,
    AuthenticationFailedError,
    ConcurrencyConflictError,
    ConfigurationNotFoundError,
    CredentialError,
    ExecutionCancelledError,
    FilePollError,
    NetworkError,
    NotFoundError,
    NotificationError,
)
from filepoll.notify.base import Notification, NotificationTransport
from filepoll.observability.metrics import MetricsRegistry, get_metrics_registry
from filepoll.observability.structured_logging import add_correlation_id
from filepoll.state.configurations import ConfigurationStore
from filepoll.state.history import ExecutionHistory
from filepoll.state.ledger import DeduplicationLedger
from filepoll.utils.logging import get_logger

logger = get_logger("filepoll.orchestrator")


@dataclass
class ExecutionContext:
    """
    Cooperative cancellation for one execution.

    The orchestrator checks the context between phases and between files,
    never in the middle of a file's mark-and-notify sequence.
    """

    deadline: float | None = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    reason: str | None = None

    @classmethod
    def with_timeout(cls, timeout_s: float | None) -> ExecutionContext:
        return cls(deadline=time.monotonic() + timeout_s if timeout_s else None)

    def cancel(self, reason: str = "stop requested") -> None:
        self.reason = reason
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def bound(self, timeout_s: float) -> float:
        """Clip a per-call timeout to whatever is left of the deadline."""
        remaining = self.remaining()
        return timeout_s if remaining is None else min(timeout_s, remaining)

    def check(self, phase: str) -> None:
        if self.cancelled:
            raise ExecutionCancelledError(f"Execution cancelled before {phase}: {self.reason}")
        if self.expired:
            raise ExecutionCancelledError(f"Execution deadline exceeded before {phase}")


def categorize(error: BaseException) -> ErrorCategory:
    """Map an exception raised during an execution to its error category."""
    if isinstance(error, (CredentialError, AuthenticationFailedError)):
        return ErrorCategory.AUTHENTICATION_FAILED
    if isinstance(error, NetworkError):
        return ErrorCategory.NETWORK_ERROR
    if isinstance(error, AdapterError):
        return ErrorCategory.PROTOCOL_ERROR
    if isinstance(error, NotificationError):
        return ErrorCategory.NOTIFICATION_FAILED
    if isinstance(error, (ExecutionCancelledError, asyncio.CancelledError)):
        return ErrorCategory.CANCELLED
    if isinstance(error, ConcurrencyConflictError):
        return ErrorCategory.CONCURRENCY_CONFLICT
    return ErrorCategory.INTERNAL_ERROR


class ExecutionOrchestrator:
    """Drives discovery cycles and records their outcome."""

    def __init__(
        self,
        *,
        history: ExecutionHistory,
        ledger: DeduplicationLedger,
        transport: NotificationTransport,
        configurations: ConfigurationStore | None = None,
        adapter_factory: AdapterFactory | None = None,
        secrets: SecretResolver | None = None,
        retry_policy: RetryPolicy | None = None,
        retry_manager: RetryManager | None = None,
        metrics: MetricsRegistry | None = None,
        max_results: int = DEFAULT_MAX_RESULTS,
        notification_timeout_s: float = 10.0,
        publish_summary: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.history = history
        self.ledger = ledger
        self.transport = transport
        self.configurations = configurations
        self.adapter_factory = adapter_factory or AdapterFactory()
        self.secrets = secrets or EnvSecretResolver()
        self.retry_policy = retry_policy or LISTING_RETRY_POLICY
        self.retry_manager = retry_manager or RetryManager()
        self.metrics = metrics or get_metrics_registry()
        self.max_results = max_results
        self.notification_timeout_s = notification_timeout_s
        self.delivery_timeout_s = transport.delivery_budget(notification_timeout_s)
        self.publish_summary = publish_summary
        self.clock = clock
        self._summary_tasks: set[asyncio.Task] = set()

    async def drain(self) -> None:
        """Wait for summary broadcasts still in flight."""
        if self._summary_tasks:
            await asyncio.gather(*list(self._summary_tasks), return_exceptions=True)

    def create_execution(
        self,
        config: RetrievalConfiguration,
        trigger: ExecutionTrigger = ExecutionTrigger.SCHEDULED,
    ) -> ExecutionRecord:
        """Persist a ``pending`` record for a dispatched execution."""
        record = ExecutionRecord(
            tenant_id=config.tenant_id,
            configuration_id=config.configuration_id,
            trigger=trigger,
            created_at=self.clock(),
        )
        self.history.create(record)
        logger.debug(f"Created {trigger} execution {record.execution_id} for {config.tenant_id}/{config.configuration_id}")
        return record

    async def execute(
        self,
        config: RetrievalConfiguration,
        record: ExecutionRecord,
        context: ExecutionContext | None = None,
    ) -> ExecutionRecord:
        """
        Run one discovery cycle and return the terminal record.

        Never raises for execution failures; they are recorded on the
        returned record. ``asyncio.CancelledError`` is recorded and re-raised.
        """
        context = context or ExecutionContext()
        with add_correlation_id(record.execution_id[:8]):
            try:
                return await self._run(config, record, context)
            except asyncio.CancelledError:
                logger.warning(f"Execution {record.execution_id} cancelled by the event loop")
                self._finish(config, record, ErrorCategory.CANCELLED, "Execution task was cancelled")
                raise

    async def _run(self, config: RetrievalConfiguration, record: ExecutionRecord, context: ExecutionContext) -> ExecutionRecord:
        key = f"{config.tenant_id}/{config.configuration_id}"
        if record.status == ExecutionStatus.PENDING and (context.cancelled or context.expired):
            # Never started: pending may go straight to failed
            self._finish(config, record, ErrorCategory.CANCELLED, "Execution cancelled before start", stamp_config=False)
            return record

        record.start(self.clock())
        self._persist(record)
        logger.info(f"Execution {record.execution_id} started for {key} ({record.trigger})")

        category: ErrorCategory | None = None
        message: str | None = None
        try:
            await self._discover_and_notify(config, record, context)
        except NotificationError as e:
            category, message = ErrorCategory.NOTIFICATION_FAILED, e.message
        except FilePollError as e:
            category, message = categorize(e), e.message
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected error in execution {record.execution_id}")
            category, message = ErrorCategory.INTERNAL_ERROR, f"{type(e).__name__}: {e}"

        self._finish(config, record, category, message)
        return record

    def resolve_patterns(self, config: RetrievalConfiguration, now: datetime) -> tuple[date, str, str]:
        """Discovery date plus resolved path and filename patterns for ``now``."""
        tz: tzinfo = ZoneInfo("UTC")
        if config.token_timezone == TokenTimezone.SCHEDULE:
            tz = ZoneInfo(config.schedule.timezone)
        discovery_date = now.astimezone(tz).date()
        return (
            discovery_date,
            resolve_tokens(config.path_pattern, discovery_date),
            resolve_tokens(config.filename_pattern, discovery_date),
        )

    async def _discover_and_notify(
        self,
        config: RetrievalConfiguration,
        record: ExecutionRecord,
        context: ExecutionContext,
    ) -> None:
        context.check("pattern resolution")
        discovery_date, path, filename = self.resolve_patterns(config, self.clock())
        record.resolved_path = path
        record.resolved_filename = filename
        logger.debug(f"Resolved path={path!r} filename={filename!r} for {discovery_date}")

        context.check("listing")
        credentials = resolve_credentials(config.settings.secret_handles(), self.secrets)
        adapter = self.adapter_factory.create(config.protocol, config.settings)
        request = ListingRequest(
            path=path,
            name_pattern=filename,
            extension=config.extension,
            credentials=credentials,
            max_results=self.max_results,
        )
        files = await self._list(adapter, request, record, context)
        record.files_found = len(files)
        self._persist(record)

        failures: list[str] = []
        for file in files:
            context.check(f"processing {file.filename}")
            unit = asyncio.ensure_future(self._process_file(config, record, file, discovery_date, context))
            try:
                failures.extend(await asyncio.shield(unit))
            except asyncio.CancelledError:
                # A marked file is always notified before the cancel propagates
                if not unit.done():
                    logger.info(f"Finishing {file.filename} before cancelling execution {record.execution_id}")
                    failures.extend(await unit)
                raise

        if failures:
            raise NotificationError(
                f"{len(failures)} notification(s) failed: " + "; ".join(failures[:5])
                + (" ..." if len(failures) > 5 else "")
            )
        logger.info(
            f"Execution {record.execution_id}: {record.files_found} found, {record.files_processed} new, "
            f"{record.notifications_emitted} notification(s) emitted"
        )

    async def _list(
        self,
        adapter: ProtocolAdapter,
        request: ListingRequest,
        record: ExecutionRecord,
        context: ExecutionContext,
    ) -> list[DiscoveredFile]:
        async def attempt() -> list[DiscoveredFile]:
            context.check("listing attempt")
            timeout = context.bound(adapter.timeout_s)
            try:
                return await asyncio.wait_for(adapter.list_files(request), timeout=timeout)
            except asyncio.TimeoutError:
                raise NetworkError(f"Listing timed out after {timeout:.1f}s") from None

        state = RetryState(operation=f"list {adapter.protocol.value} {request.path}")
        try:
            return await self.retry_manager.execute(attempt, policy=self.retry_policy, state=state)
        except NotFoundError as e:
            logger.info(f"Remote path not found, treating as empty: {e.message}")
            return []
        finally:
            record.retry_count = state.retries

    async def _process_file(
        self,
        config: RetrievalConfiguration,
        record: ExecutionRecord,
        file: DiscoveredFile,
        discovery_date: date,
        context: ExecutionContext,
    ) -> list[str]:
        """Mark one file and emit its notifications as a single unit."""
        created = self.ledger.try_mark_processed(
            tenant_id=config.tenant_id,
            configuration_id=config.configuration_id,
            execution_id=record.execution_id,
            filename=file.filename,
            locator=file.locator,
            discovery_date=discovery_date,
            file_size=file.size,
            last_modified=file.last_modified,
            processed_at=self.clock(),
        )
        if not created:
            return []
        record.files_processed += 1
        return await self._notify_file(config, record, file, discovery_date, context)

    async def _notify_file(
        self,
        config: RetrievalConfiguration,
        record: ExecutionRecord,
        file: DiscoveredFile,
        discovery_date: date,
        context: ExecutionContext,
    ) -> list[str]:
        """Deliver every target for one file; return failure descriptions."""
        failures = []
        for notification in build_notifications(config, record, file, discovery_date):
            try:
                await self._deliver(notification, context)
            except NotificationError as e:
                failures.append(f"{notification.address}: {e.message}")
                self.metrics.record_notification(mode=notification.mode.value, outcome="failed")
                logger.warning(f"Notification {notification.type_name} for {file.filename} failed: {e.message}")
            else:
                record.notifications_emitted += 1
                self.metrics.record_notification(mode=notification.mode.value, outcome="delivered")
        return failures

    async def _deliver(self, notification: Notification, context: ExecutionContext) -> None:
        # A file's notifications go out even when the deadline has just passed
        timeout = max(0.1, context.bound(self.delivery_timeout_s))
        try:
            await asyncio.wait_for(self.transport.deliver(notification), timeout=timeout)
        except asyncio.TimeoutError:
            raise NotificationError(
                f"Delivery timed out after {timeout:.1f}s", destination=notification.address
            ) from None
        except NotificationError:
            raise
        except (FilePollError, OSError) as e:
            raise NotificationError(str(e), destination=notification.address) from e

    def _finish(
        self,
        config: RetrievalConfiguration,
        record: ExecutionRecord,
        category: ErrorCategory | None,
        message: str | None,
        *,
        stamp_config: bool = True,
    ) -> None:
        """Stamp the configuration, move to a terminal status, persist and report."""
        if record.is_terminal:
            return

        if stamp_config and self.configurations is not None:
            try:
                self.configurations.record_execution(
                    config.tenant_id, config.configuration_id, executed_at=self.clock()
                )
            except ConcurrencyConflictError as e:
                logger.error(f"Could not stamp {config.tenant_id}/{config.configuration_id}: {e.message}")
                if category is None:
                    category, message = ErrorCategory.CONCURRENCY_CONFLICT, e.message
            except ConfigurationNotFoundError:
                logger.warning(f"Configuration {config.tenant_id}/{config.configuration_id} vanished during execution")
            except FilePollError as e:
                logger.error(f"Could not stamp {config.tenant_id}/{config.configuration_id}: {e.message}")
                if category is None:
                    category, message = ErrorCategory.INTERNAL_ERROR, e.message

        now = self.clock()
        if category is None:
            record.complete(now)
            logger.info(f"Execution {record.execution_id} completed in {record.duration_ms}ms")
        else:
            record.fail(category, message or category.value, now)
            logger.warning(f"Execution {record.execution_id} failed [{category}]: {record.error_message}")

        self._persist(record)
        self.metrics.record_execution(
            protocol=config.protocol.value,
            status=record.status.value,
            duration_s=(record.duration_ms or 0) / 1000.0,
            files_found=record.files_found,
            files_processed=record.files_processed,
            error_category=record.error_category.value if record.error_category else None,
        )
        if self.publish_summary:
            self._publish_summary(config, record)

    def _publish_summary(self, config: RetrievalConfiguration, record: ExecutionRecord) -> None:
        summary = build_summary(config, record)
        task = asyncio.get_running_loop().create_task(self._send_summary(summary))
        self._summary_tasks.add(task)
        task.add_done_callback(self._summary_tasks.discard)

    async def _send_summary(self, summary: Notification) -> None:
        try:
            await asyncio.wait_for(self.transport.deliver(summary), timeout=self.delivery_timeout_s)
        except (NotificationError, asyncio.TimeoutError, OSError) as e:
            logger.warning(f"Could not publish {summary.type_name} for {summary.payload['execution_id']}: {e}")

    def _persist(self, record: ExecutionRecord) -> None:
        try:
            self.history.update(record)
        except FilePollError as e:
            logger.error(f"Could not persist execution {record.execution_id}: {e.message}")
