"""
Processed-file ledger.

One row per (tenant, configuration, locator, discovery date). Marking a file
is a single conditional insert, so two executions racing on the same file
can't both see it as new.
"""

from __future__ import annotations

from datetime import date, datetime

from filepoll.core.models import Page, ProcessedFileRecord, utcnow
from filepoll.state.store import (
    SCHEMA,
    StateStore,
    _escape_sql_string,
    _from_db_datetime,
    _sql_value,
    decode_token,
    encode_token,
)
from filepoll.utils.logging import get_logger

logger = get_logger("filepoll.state.ledger")

TABLE = f"{SCHEMA}.processed_files"


class DeduplicationLedger:
    """Records which files have already been handed to downstream consumers."""

    def __init__(self, store: StateStore):
        self.store = store

    def try_mark_processed(
        self,
        *,
        tenant_id: str,
        configuration_id: str,
        execution_id: str,
        filename: str,
        locator: str,
        discovery_date: date,
        file_size: int | None = None,
        last_modified: datetime | None = None,
        processed_at: datetime | None = None,
    ) -> bool:
        """
        Mark a file as processed for ``discovery_date``.

        Returns:
            True when this call created the mark, False when the file was
            already marked (a duplicate, not an error)

        Raises:
            StateStoreError: If the database can't be written
        """
        rows = self.store.fetch(
            f"""
            INSERT INTO {TABLE}
                (tenant_id, configuration_id, locator, discovery_date, execution_id,
                 filename, file_size, last_modified, processed_at)
            VALUES (
                {_sql_value(tenant_id)}, {_sql_value(configuration_id)}, {_sql_value(locator)},
                {_sql_value(discovery_date)}, {_sql_value(execution_id)}, {_sql_value(filename)},
                {_sql_value(file_size)}, {_sql_value(last_modified)}, {_sql_value(processed_at or utcnow())}
            )
            ON CONFLICT DO NOTHING
            RETURNING locator
            """
        )
        created = bool(rows)
        if not created:
            logger.debug(f"Already processed {locator} for {discovery_date} ({tenant_id}/{configuration_id})")
        return created

    def is_processed(self, tenant_id: str, configuration_id: str, locator: str, discovery_date: date) -> bool:
        row = self.store.fetch_one(
            f"""
            SELECT 1 AS hit FROM {TABLE}
            WHERE tenant_id = {_sql_value(tenant_id)}
              AND configuration_id = {_sql_value(configuration_id)}
              AND locator = {_sql_value(locator)}
              AND discovery_date = {_sql_value(discovery_date)}
            """
        )
        return row is not None

    def query(
        self,
        tenant_id: str,
        configuration_id: str,
        *,
        filename: str | None = None,
        execution_id: str | None = None,
        page_size: int = 50,
        continuation_token: str | None = None,
    ) -> Page[ProcessedFileRecord]:
        """Processed files for a configuration, newest first."""
        page_size = max(1, min(page_size, 1000))
        clauses = [
            f"tenant_id = {_sql_value(tenant_id)}",
            f"configuration_id = {_sql_value(configuration_id)}",
        ]
        if filename:
            pattern = _escape_sql_string(filename.lower()).replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            clauses.append(f"lower(filename) LIKE '%{pattern}%' ESCAPE '\\'")
        if execution_id:
            clauses.append(f"execution_id = {_sql_value(execution_id)}")
        if continuation_token:
            pos = decode_token(continuation_token)
            ts = _sql_value(_from_db_datetime(pos.get("p")))
            loc = _sql_value(str(pos.get("l", "")))
            clauses.append(f"(processed_at < {ts} OR (processed_at = {ts} AND locator < {loc}))")

        rows = self.store.fetch(
            f"""
            SELECT * FROM {TABLE}
            WHERE {' AND '.join(clauses)}
            ORDER BY processed_at DESC, locator DESC
            LIMIT {page_size + 1}
            """
        )
        items = [_row_to_record(r) for r in rows[:page_size]]
        token = None
        if len(rows) > page_size:
            last = items[-1]
            token = encode_token({"p": last.processed_at.isoformat(), "l": last.locator})
        return Page(items=items, continuation_token=token)

    def count(self, tenant_id: str, configuration_id: str | None = None) -> int:
        clause = f"tenant_id = {_sql_value(tenant_id)}"
        if configuration_id:
            clause += f" AND configuration_id = {_sql_value(configuration_id)}"
        row = self.store.fetch_one(f"SELECT COUNT(*) AS n FROM {TABLE} WHERE {clause}")
        return int(row["n"]) if row else 0


def _row_to_record(row: dict) -> ProcessedFileRecord:
    return ProcessedFileRecord(
        tenant_id=row["tenant_id"],
        configuration_id=row["configuration_id"],
        execution_id=row["execution_id"],
        filename=row["filename"],
        locator=row["locator"],
        discovery_date=row["discovery_date"],
        processed_at=_from_db_datetime(row["processed_at"]),
        file_size=row.get("file_size"),
        last_modified=_from_db_datetime(row.get("last_modified")),
    )
