"""
Background scheduler: finds due configurations and hands them to workers.

Each tick reads the due configurations from the store, skips those already
in flight, defers those that do not fit in the bounded queue, and dispatches
the rest. Dispatch never waits for an execution; a fixed pool of worker
tasks drains the queue.

Misfire policy: run once. A configuration that missed several fire times
while the service was down is due once; its next run is computed from the
time the catch-up execution finished.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from filepoll.config.settings import SchedulerSettings
from filepoll.core.models import (
    ErrorCategory,
    ExecutionRecord,
    ExecutionTrigger,
    RetrievalConfiguration,
    utcnow,
)
from filepoll.core.orchestrator import ExecutionContext, ExecutionOrchestrator
from filepoll.exceptions import FilePollError, InvalidTransitionError, TriggerRejectedError
from filepoll.observability.metrics import MetricsRegistry, get_metrics_registry
from filepoll.state.configurations import ConfigurationStore
from filepoll.state.history import ExecutionHistory
from filepoll.utils.logging import get_logger

logger = get_logger("filepoll.scheduler")


@dataclass
class Job:
    config: RetrievalConfiguration
    record: ExecutionRecord
    context: ExecutionContext = field(default_factory=ExecutionContext)

    @property
    def key(self) -> tuple[str, str]:
        return self.config.key


@dataclass
class TickResult:
    due: int = 0
    triggered: int = 0
    skipped: int = 0
    deferred: int = 0
    errors: int = 0


class SchedulerLoop:
    """
    Tick loop, worker pool and watchdog around an ExecutionOrchestrator.

    ``start()`` must be called from inside a running event loop.
    """

    def __init__(
        self,
        orchestrator: ExecutionOrchestrator,
        configurations: ConfigurationStore,
        history: ExecutionHistory,
        *,
        settings: SchedulerSettings | None = None,
        metrics: MetricsRegistry | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.orchestrator = orchestrator
        self.configurations = configurations
        self.history = history
        self.settings = settings or SchedulerSettings()
        self.metrics = metrics or get_metrics_registry()
        self.clock = clock

        self.in_flight: dict[tuple[str, str], Job] = {}
        self._queue: asyncio.Queue[Job] = asyncio.Queue(maxsize=self.settings.max_concurrent_executions)
        self._workers: list[asyncio.Task] = []
        self._background_tasks: list[asyncio.Task] = []
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return bool(self._workers) and not self._stopping.is_set()

    @property
    def queued(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._workers:
            return
        self._stopping.clear()
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"filepoll-worker-{n}")
            for n in range(self.settings.max_concurrent_executions)
        ]
        self._background_tasks = [
            asyncio.create_task(self._tick_loop(), name="filepoll-tick"),
            asyncio.create_task(self._watchdog_loop(), name="filepoll-watchdog"),
        ]
        logger.info(
            f"Scheduler started: tick every {self.settings.tick_interval_s:g}s, "
            f"{self.settings.max_concurrent_executions} worker(s)"
        )

    async def stop(self, grace_s: float | None = None) -> None:
        """
        Stop ticking, ask running executions to finish, then cancel workers.

        Executions still queued are closed as cancelled without starting.
        """
        grace_s = self.settings.shutdown_grace_s if grace_s is None else grace_s
        self._stopping.set()
        for task in self._background_tasks:
            task.cancel()
        await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks.clear()

        self._drain_queue()
        running = list(self.in_flight.values())
        for job in running:
            job.context.cancel("service shutting down")
        if running:
            logger.info(f"Waiting up to {grace_s:g}s for {len(running)} running execution(s)")
            try:
                await asyncio.wait_for(self._queue.join(), timeout=grace_s)
            except asyncio.TimeoutError:
                logger.warning(f"{len(self.in_flight)} execution(s) still running after {grace_s:g}s, cancelling")

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        await self.orchestrator.drain()
        logger.info("Scheduler stopped")

    # --- Dispatch ------------------------------------------------------------

    async def tick(self) -> TickResult:
        """Dispatch every due configuration that is idle and fits in the queue."""
        now = self.clock()
        result = TickResult()
        due = self.configurations.list_due(now, limit=self.settings.batch_size)
        result.due = len(due)
        for config in due:
            if config.key in self.in_flight:
                result.skipped += 1
                continue
            if self._queue.full():
                result.deferred += 1
                continue
            try:
                self._dispatch(config, ExecutionTrigger.SCHEDULED)
            except FilePollError as e:
                result.errors += 1
                logger.error(f"Could not dispatch {config.tenant_id}/{config.configuration_id}: {e.message}")
            else:
                result.triggered += 1

        if result.due:
            logger.info(
                f"Tick: {result.due} due, {result.triggered} triggered, "
                f"{result.skipped} skipped (in flight), {result.deferred} deferred (queue full)"
            )
        return result

    def trigger(self, config: RetrievalConfiguration) -> ExecutionRecord:
        """
        Dispatch a manual execution now.

        Raises:
            TriggerRejectedError: If the configuration is inactive, already
                in flight, or the queue is full
        """
        name = f"{config.tenant_id}/{config.configuration_id}"
        if not config.is_active:
            raise TriggerRejectedError(f"Configuration {name} is inactive")
        if self._stopping.is_set():
            raise TriggerRejectedError("Scheduler is shutting down")
        if config.key in self.in_flight:
            raise TriggerRejectedError(
                f"Configuration {name} already has execution {self.in_flight[config.key].record.execution_id} in flight"
            )
        if self._queue.full():
            raise TriggerRejectedError("Execution queue is full, try again later")
        return self._dispatch(config, ExecutionTrigger.MANUAL)

    def _dispatch(self, config: RetrievalConfiguration, trigger: ExecutionTrigger) -> ExecutionRecord:
        record = self.orchestrator.create_execution(config, trigger)
        job = Job(config=config, record=record)
        self.in_flight[config.key] = job
        self._queue.put_nowait(job)
        self.metrics.set_in_flight(len(self.in_flight))
        return record

    async def _worker(self, number: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                job.context.deadline = time.monotonic() + self.settings.execution_timeout_s
                await self.orchestrator.execute(job.config, job.record, job.context)
            except Exception:
                logger.exception(f"Worker {number} crashed on execution {job.record.execution_id}")
            finally:
                self.in_flight.pop(job.key, None)
                self.metrics.set_in_flight(len(self.in_flight))
                self._queue.task_done()

    def _drain_queue(self) -> None:
        while not self._queue.empty():
            job = self._queue.get_nowait()
            try:
                job.record.fail(ErrorCategory.CANCELLED, "Service stopped before the execution started", self.clock())
                self.history.update(job.record)
            except (InvalidTransitionError, FilePollError) as e:
                logger.warning(f"Could not close queued execution {job.record.execution_id}: {e}")
            finally:
                self.in_flight.pop(job.key, None)
                self._queue.task_done()
        self.metrics.set_in_flight(len(self.in_flight))

    # --- Background loops ----------------------------------------------------

    async def _tick_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Scheduler tick failed: {e}")
            await self._sleep(self.settings.tick_interval_s)

    async def _watchdog_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                self.close_abandoned()
            except Exception as e:
                logger.error(f"Watchdog pass failed: {e}")
            await self._sleep(self.settings.watchdog_interval_s)

    def close_abandoned(self) -> list[str]:
        """Fail open executions older than ``abandoned_after_s`` that nothing is running."""
        older_than = self.clock() - timedelta(seconds=self.settings.abandoned_after_s)
        running = [job.record.execution_id for job in self.in_flight.values()]
        return self.history.close_abandoned(older_than, exclude=running)

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "in_flight": [
                {
                    "tenant_id": job.config.tenant_id,
                    "configuration_id": job.config.configuration_id,
                    "execution_id": job.record.execution_id,
                    "status": job.record.status.value,
                }
                for job in self.in_flight.values()
            ],
            "queued": self.queued,
        }
