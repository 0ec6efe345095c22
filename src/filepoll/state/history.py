"""
Execution history and metrics.

Records are written at dispatch (``pending``), updated through the run and
frozen once terminal. Metrics are aggregated on read over a time window.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date, datetime
from typing import Any

from filepoll.core.models import (
    ErrorCategory,
    ExecutionMetrics,
    ExecutionRecord,
    ExecutionStatus,
    ExecutionTrigger,
    Page,
    utcnow,
)
from filepoll.exceptions import InvalidTransitionError
from filepoll.state.store import (
    SCHEMA,
    StateStore,
    _from_db_datetime,
    _sql_list,
    _sql_value,
    decode_token,
    encode_token,
)
from filepoll.utils.logging import get_logger

logger = get_logger("filepoll.state.history")

TABLE = f"{SCHEMA}.executions"

_COLUMNS = (
    "execution_id",
    "tenant_id",
    "configuration_id",
    "trigger",
    "status",
    "created_at",
    "started_at",
    "completed_at",
    "duration_ms",
    "files_found",
    "files_processed",
    "notifications_emitted",
    "resolved_path",
    "resolved_filename",
    "retry_count",
    "error_category",
    "error_message",
)
_OPEN_STATUSES = (ExecutionStatus.PENDING, ExecutionStatus.RUNNING)


class ExecutionHistory:
    """Persistence for ExecutionRecord rows."""

    def __init__(self, store: StateStore):
        self.store = store

    def create(self, record: ExecutionRecord) -> ExecutionRecord:
        values = [_sql_value(getattr(record, col)) for col in _COLUMNS]
        self.store.execute(f"INSERT INTO {TABLE} ({', '.join(_COLUMNS)}) VALUES ({', '.join(values)})")
        return record

    def update(self, record: ExecutionRecord) -> bool:
        """
        Persist the current state of ``record``.

        Only rows still ``pending`` or ``running`` are written. Returns False
        when the stored row is already terminal (for example closed by the
        watchdog) and leaves it untouched.
        """
        assignments = ", ".join(f"{col} = {_sql_value(getattr(record, col))}" for col in _COLUMNS[3:])
        rows = self.store.fetch(
            f"""
            UPDATE {TABLE} SET {assignments}
            WHERE execution_id = {_sql_value(record.execution_id)}
              AND status IN ({_sql_list(_OPEN_STATUSES)})
            RETURNING execution_id
            """
        )
        if not rows:
            logger.warning(f"Execution {record.execution_id} is already terminal; update to {record.status} dropped")
            return False
        return True

    def get(self, execution_id: str) -> ExecutionRecord | None:
        row = self.store.fetch_one(f"SELECT * FROM {TABLE} WHERE execution_id = {_sql_value(execution_id)}")
        return _row_to_record(row) if row else None

    def list(
        self,
        tenant_id: str,
        *,
        configuration_id: str | None = None,
        status: ExecutionStatus | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        page_size: int = 50,
        continuation_token: str | None = None,
    ) -> Page[ExecutionRecord]:
        """Executions for a tenant, newest first, keyset-paginated."""
        page_size = max(1, min(page_size, 1000))
        clauses = [f"tenant_id = {_sql_value(tenant_id)}"]
        if configuration_id:
            clauses.append(f"configuration_id = {_sql_value(configuration_id)}")
        if status:
            clauses.append(f"status = {_sql_value(status)}")
        if since:
            clauses.append(f"created_at >= {_sql_value(since)}")
        if until:
            clauses.append(f"created_at < {_sql_value(until)}")
        if continuation_token:
            pos = decode_token(continuation_token)
            ts = _sql_value(_from_db_datetime(pos.get("c")))
            last_id = _sql_value(str(pos.get("i", "")))
            clauses.append(f"(created_at < {ts} OR (created_at = {ts} AND execution_id < {last_id}))")

        rows = self.store.fetch(
            f"""
            SELECT * FROM {TABLE}
            WHERE {' AND '.join(clauses)}
            ORDER BY created_at DESC, execution_id DESC
            LIMIT {page_size + 1}
            """
        )
        items = [_row_to_record(r) for r in rows[:page_size]]
        token = None
        if len(rows) > page_size:
            last = items[-1]
            token = encode_token({"c": last.created_at.isoformat(), "i": last.execution_id})
        return Page(items=items, continuation_token=token)

    def open_executions(self, older_than: datetime) -> list[ExecutionRecord]:
        rows = self.store.fetch(
            f"""
            SELECT * FROM {TABLE}
            WHERE status IN ({_sql_list(_OPEN_STATUSES)})
              AND COALESCE(started_at, created_at) < {_sql_value(older_than)}
            ORDER BY created_at
            """
        )
        return [_row_to_record(r) for r in rows]

    def close_abandoned(self, older_than: datetime, *, exclude: Iterable[str] = ()) -> list[str]:
        """
        Fail executions stuck in ``pending``/``running`` since before ``older_than``.

        Executions whose ids are in ``exclude`` (still in flight) are left alone.
        Returns the ids that were closed.
        """
        skip = set(exclude)
        closed: list[str] = []
        now = utcnow()
        for record in self.open_executions(older_than):
            if record.execution_id in skip:
                continue
            try:
                record.fail(ErrorCategory.CANCELLED, "Execution abandoned (no progress before restart or timeout)", now)
            except InvalidTransitionError:
                continue
            if self.update(record):
                closed.append(record.execution_id)
        if closed:
            logger.warning(f"Closed {len(closed)} abandoned execution(s)")
        return closed

    def metrics(
        self,
        tenant_id: str,
        *,
        configuration_id: str | None = None,
        start: datetime,
        end: datetime,
    ) -> ExecutionMetrics:
        """Aggregate executions created in ``[start, end)``."""
        clauses = [
            f"tenant_id = {_sql_value(tenant_id)}",
            f"created_at >= {_sql_value(start)}",
            f"created_at < {_sql_value(end)}",
        ]
        if configuration_id:
            clauses.append(f"configuration_id = {_sql_value(configuration_id)}")
        where = " AND ".join(clauses)

        totals = self.store.fetch_one(
            f"""
            SELECT
                COUNT(*) AS total,
                COUNT(*) FILTER (WHERE status = 'completed') AS succeeded,
                COUNT(*) FILTER (WHERE status = 'failed') AS failed,
                AVG(duration_ms) FILTER (WHERE status IN ('completed', 'failed')) AS avg_duration,
                COALESCE(SUM(files_found), 0) AS found,
                COALESCE(SUM(files_processed), 0) AS processed
            FROM {TABLE}
            WHERE {where}
            """
        ) or {}

        per_day = self.store.fetch(
            f"""
            SELECT CAST(created_at AS DATE) AS day, COALESCE(SUM(files_found), 0) AS found
            FROM {TABLE}
            WHERE {where}
            GROUP BY day
            ORDER BY day
            """
        )
        by_category = self.store.fetch(
            f"""
            SELECT error_category, COUNT(*) AS n
            FROM {TABLE}
            WHERE {where} AND status = 'failed' AND error_category IS NOT NULL
            GROUP BY error_category
            ORDER BY error_category
            """
        )

        avg = totals.get("avg_duration")
        return ExecutionMetrics(
            start=start,
            end=end,
            total_executions=int(totals.get("total") or 0),
            successful_executions=int(totals.get("succeeded") or 0),
            failed_executions=int(totals.get("failed") or 0),
            average_duration_ms=float(avg) if avg is not None else None,
            files_discovered=int(totals.get("found") or 0),
            files_processed=int(totals.get("processed") or 0),
            files_discovered_per_day={_as_date(r["day"]): int(r["found"]) for r in per_day},
            failures_by_category={r["error_category"]: int(r["n"]) for r in by_category},
        )


def _as_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def _row_to_record(row: dict[str, Any]) -> ExecutionRecord:
    category = row.get("error_category")
    return ExecutionRecord(
        execution_id=row["execution_id"],
        tenant_id=row["tenant_id"],
        configuration_id=row["configuration_id"],
        trigger=ExecutionTrigger(row.get("trigger") or ExecutionTrigger.SCHEDULED),
        status=ExecutionStatus(row["status"]),
        created_at=_from_db_datetime(row["created_at"]),
        started_at=_from_db_datetime(row.get("started_at")),
        completed_at=_from_db_datetime(row.get("completed_at")),
        duration_ms=row.get("duration_ms"),
        files_found=int(row.get("files_found") or 0),
        files_processed=int(row.get("files_processed") or 0),
        notifications_emitted=int(row.get("notifications_emitted") or 0),
        resolved_path=row.get("resolved_path"),
        resolved_filename=row.get("resolved_filename"),
        retry_count=int(row.get("retry_count") or 0),
        error_category=ErrorCategory(category) if category else None,
        error_message=row.get("error_message"),
    )
