"""
State database for configurations, execution history and the processed-file ledger.

Automatically creates the filepoll schema and tables if they don't exist.
Backed by the ibis DuckDB backend; statements are issued as raw SQL on the
underlying connection, serialised by a lock so worker threads and the event
loop can share one store.
"""

from __future__ import annotations

import base64
import json
import threading
from datetime import UTC, date, datetime
from enum import Enum
from pathlib import Path
from typing import Any

import ibis

from filepoll.exceptions import StateStoreError, ValidationError
from filepoll.utils.logging import get_logger

logger = get_logger("filepoll.state")

SCHEMA = "filepoll"


def _escape_sql_string(value: str) -> str:
    """Escape single quotes for SQL strings."""
    return value.replace("'", "''")


def _sql_value(value: Any) -> str:
    """Convert Python value to SQL string representation."""
    if value is None:
        return "NULL"
    # bool must be checked before int/float because ``isinstance(True, int)``
    # is True in Python (bool is a subclass of int).
    elif isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    elif isinstance(value, Enum):
        return f"'{_escape_sql_string(str(value.value))}'"
    elif isinstance(value, (int, float)):
        return str(value)
    elif isinstance(value, str):
        escaped = _escape_sql_string(value)
        return f"'{escaped}'"
    elif isinstance(value, datetime):
        # Stored as naive UTC
        if value.tzinfo is not None:
            value = value.astimezone(UTC).replace(tzinfo=None)
        return f"TIMESTAMP '{value.isoformat()}'"
    elif isinstance(value, date):
        return f"DATE '{value.isoformat()}'"
    else:
        escaped = _escape_sql_string(str(value))
        return f"'{escaped}'"


def _sql_list(values: Any) -> str:
    return ", ".join(_sql_value(v) for v in values)


def _from_db_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)
    return datetime.fromisoformat(str(value)).replace(tzinfo=UTC)


class StateStore:
    """Owns the DuckDB connection and the filepoll schema."""

    def __init__(self, path: str | Path | None = None, *, connection: ibis.BaseBackend | None = None):
        """
        Initialize state store.

        Args:
            path: DuckDB database file; ``None`` or ``":memory:"`` keeps state in memory
            connection: Existing ibis DuckDB backend to use instead of opening one
        """
        self.path = str(path) if path else ":memory:"
        self._connection = connection
        self._lock = threading.RLock()
        self._initialized = False

    @property
    def connection(self) -> ibis.BaseBackend:
        if self._connection is None:
            if self.path != ":memory:":
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            try:
                self._connection = ibis.duckdb.connect(database=self.path)
            except Exception as e:
                raise StateStoreError(f"Could not open state database at {self.path}: {e}") from e
        return self._connection

    def initialize(self) -> None:
        """Create filepoll schema and tables if they don't exist."""
        if self._initialized:
            return
        with self._lock:
            if self._initialized:
                return
            self._run(f"CREATE SCHEMA IF NOT EXISTS {SCHEMA}")
            self._run(
                f"""
                CREATE TABLE IF NOT EXISTS {SCHEMA}.configurations (
                    tenant_id VARCHAR NOT NULL,
                    configuration_id VARCHAR NOT NULL,
                    name VARCHAR,
                    protocol VARCHAR,
                    is_active BOOLEAN NOT NULL,
                    next_scheduled_run TIMESTAMP,
                    last_executed_at TIMESTAMP,
                    version BIGINT NOT NULL,
                    document JSON NOT NULL,
                    updated_at TIMESTAMP,
                    PRIMARY KEY (tenant_id, configuration_id)
                )
                """
            )
            self._run(
                f"""
                CREATE TABLE IF NOT EXISTS {SCHEMA}.executions (
                    execution_id VARCHAR PRIMARY KEY,
                    tenant_id VARCHAR NOT NULL,
                    configuration_id VARCHAR NOT NULL,
                    trigger VARCHAR,
                    status VARCHAR NOT NULL,
                    created_at TIMESTAMP NOT NULL,
                    started_at TIMESTAMP,
                    completed_at TIMESTAMP,
                    duration_ms BIGINT,
                    files_found INTEGER,
                    files_processed INTEGER,
                    notifications_emitted INTEGER,
                    resolved_path VARCHAR,
                    resolved_filename VARCHAR,
                    retry_count INTEGER,
                    error_category VARCHAR,
                    error_message VARCHAR
                )
                """
            )
            self._run(
                f"""
                CREATE TABLE IF NOT EXISTS {SCHEMA}.processed_files (
                    tenant_id VARCHAR NOT NULL,
                    configuration_id VARCHAR NOT NULL,
                    locator VARCHAR NOT NULL,
                    discovery_date DATE NOT NULL,
                    execution_id VARCHAR NOT NULL,
                    filename VARCHAR NOT NULL,
                    file_size BIGINT,
                    last_modified TIMESTAMP,
                    processed_at TIMESTAMP NOT NULL,
                    PRIMARY KEY (tenant_id, configuration_id, locator, discovery_date)
                )
                """
            )
            self._initialized = True
            logger.debug(f"State database ready at {self.path}")

    def _run(self, query: str) -> Any:
        try:
            return self.connection.raw_sql(query)
        except StateStoreError:
            raise
        except Exception as e:
            raise StateStoreError(f"State query failed: {e}", details={"query": query.strip()[:200]}) from e

    def execute(self, query: str) -> None:
        """Execute a statement that returns no rows."""
        self.initialize()
        with self._lock:
            self._run(query)

    def fetch(self, query: str) -> list[dict[str, Any]]:
        """Execute a query and return rows as dicts keyed by column name."""
        self.initialize()
        with self._lock:
            cursor = self._run(query)
            try:
                rows = cursor.fetchall()
                columns = [d[0] for d in cursor.description or []]
            except Exception as e:
                raise StateStoreError(f"Could not read query result: {e}") from e
        return [dict(zip(columns, row, strict=False)) for row in rows]

    def fetch_one(self, query: str) -> dict[str, Any] | None:
        rows = self.fetch(query)
        return rows[0] if rows else None

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                try:
                    self._connection.disconnect()
                except Exception as e:
                    logger.debug(f"Error closing state database: {e}")
                self._connection = None
                self._initialized = False


def encode_token(position: dict[str, Any]) -> str:
    """Opaque continuation token for keyset pagination."""
    raw = json.dumps(position, default=str, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_token(token: str) -> dict[str, Any]:
    try:
        position = json.loads(base64.urlsafe_b64decode(token.encode("ascii")))
    except (ValueError, UnicodeError) as e:
        raise ValidationError("Invalid continuation token", errors=[str(e)]) from None
    if not isinstance(position, dict):
        raise ValidationError("Invalid continuation token", errors=["token does not encode a position"])
    return position
