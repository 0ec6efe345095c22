"""
Retrieval configuration store with optimistic concurrency.

Each row keeps the full configuration document as JSON next to the columns
the scheduler filters on. Writes are conditional on the version the writer
read, so concurrent updates never silently overwrite each other.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime

from filepoll.core.models import Page, RetrievalConfiguration, utcnow
from filepoll.exceptions import (
    ConcurrencyConflictError,
    ConfigurationNotFoundError,
    ValidationError,
)
from filepoll.service.schedule import is_due, next_run
from filepoll.state.store import (
    SCHEMA,
    StateStore,
    _from_db_datetime,
    _sql_value,
    decode_token,
    encode_token,
)
from filepoll.utils.logging import get_logger

logger = get_logger("filepoll.state.configurations")

TABLE = f"{SCHEMA}.configurations"


class ConfigurationStore:
    """CRUD for RetrievalConfiguration documents."""

    def __init__(self, store: StateStore):
        self.store = store

    def create(
        self,
        config: RetrievalConfiguration,
        *,
        created_by: str | None = None,
        now: datetime | None = None,
    ) -> RetrievalConfiguration:
        """
        Validate and insert a new configuration.

        Computes ``next_scheduled_run`` and starts the version at 1.

        Raises:
            ValidationError: If the configuration is invalid or already exists
        """
        config.validate()
        now = now or utcnow()
        config = config.evolve(
            created_at=config.created_at or now,
            created_by=created_by or config.created_by,
            modified_at=now,
            modified_by=created_by or config.modified_by,
            next_scheduled_run=next_run(config.schedule.cron, config.schedule.timezone, now),
            version=1,
        )
        rows = self.store.fetch(
            f"""
            INSERT INTO {TABLE}
                (tenant_id, configuration_id, name, protocol, is_active, next_scheduled_run,
                 last_executed_at, version, document, updated_at)
            VALUES ({self._row_values(config, now)})
            ON CONFLICT DO NOTHING
            RETURNING version
            """
        )
        if not rows:
            raise ValidationError(
                "Configuration already exists",
                errors=[f"{config.tenant_id}/{config.configuration_id} is already defined"],
            )
        logger.info(f"Created configuration {config.tenant_id}/{config.configuration_id} ({config.name})")
        return config

    def get(self, tenant_id: str, configuration_id: str) -> RetrievalConfiguration:
        """Fetch one configuration, active or not."""
        row = self.store.fetch_one(
            f"""
            SELECT * FROM {TABLE}
            WHERE tenant_id = {_sql_value(tenant_id)} AND configuration_id = {_sql_value(configuration_id)}
            """
        )
        if row is None:
            raise ConfigurationNotFoundError(tenant_id, configuration_id)
        return _row_to_config(row)

    def exists(self, tenant_id: str, configuration_id: str) -> bool:
        try:
            self.get(tenant_id, configuration_id)
        except ConfigurationNotFoundError:
            return False
        return True

    def list(
        self,
        tenant_id: str | None = None,
        *,
        include_inactive: bool = False,
        page_size: int = 50,
        continuation_token: str | None = None,
    ) -> Page[RetrievalConfiguration]:
        page_size = max(1, min(page_size, 1000))
        clauses = ["1 = 1"]
        if tenant_id:
            clauses.append(f"tenant_id = {_sql_value(tenant_id)}")
        if not include_inactive:
            clauses.append("is_active")
        if continuation_token:
            pos = decode_token(continuation_token)
            t, c = _sql_value(str(pos.get("t", ""))), _sql_value(str(pos.get("c", "")))
            clauses.append(f"(tenant_id > {t} OR (tenant_id = {t} AND configuration_id > {c}))")

        rows = self.store.fetch(
            f"""
            SELECT * FROM {TABLE}
            WHERE {' AND '.join(clauses)}
            ORDER BY tenant_id, configuration_id
            LIMIT {page_size + 1}
            """
        )
        items = [_row_to_config(r) for r in rows[:page_size]]
        token = None
        if len(rows) > page_size:
            token = encode_token({"t": items[-1].tenant_id, "c": items[-1].configuration_id})
        return Page(items=items, continuation_token=token)

    def list_due(self, now: datetime, limit: int | None = None) -> list[RetrievalConfiguration]:
        """
        Active configurations whose next run is at or before ``now``.

        Rows without a computed next run are checked against their schedule.
        """
        limit_sql = f"LIMIT {int(limit)}" if limit else ""
        rows = self.store.fetch(
            f"""
            SELECT * FROM {TABLE}
            WHERE is_active
              AND (next_scheduled_run IS NULL OR next_scheduled_run <= {_sql_value(now)})
            ORDER BY next_scheduled_run NULLS FIRST, tenant_id, configuration_id
            {limit_sql}
            """
        )
        due: list[RetrievalConfiguration] = []
        for row in rows:
            config = _row_to_config(row)
            if config.next_scheduled_run is None:
                try:
                    if not is_due(config.schedule.cron, config.schedule.timezone, config.last_executed_at, now):
                        continue
                except ValueError as e:
                    logger.warning(f"Skipping {config.tenant_id}/{config.configuration_id}: bad schedule ({e})")
                    continue
            due.append(config)
        return due

    def replace(
        self,
        config: RetrievalConfiguration,
        expected_version: int,
        *,
        now: datetime | None = None,
    ) -> RetrievalConfiguration:
        """
        Overwrite a configuration if its stored version is still ``expected_version``.

        Raises:
            ConfigurationNotFoundError: If the configuration does not exist
            ConcurrencyConflictError: If another writer got there first
        """
        config.validate()
        now = now or utcnow()
        updated = config.evolve(version=expected_version + 1, modified_at=config.modified_at or now)
        rows = self.store.fetch(
            f"""
            UPDATE {TABLE} SET
                name = {_sql_value(updated.name)},
                protocol = {_sql_value(updated.protocol)},
                is_active = {_sql_value(updated.is_active)},
                next_scheduled_run = {_sql_value(updated.next_scheduled_run)},
                last_executed_at = {_sql_value(updated.last_executed_at)},
                version = {_sql_value(updated.version)},
                document = {_sql_value(_document(updated))},
                updated_at = {_sql_value(now)}
            WHERE tenant_id = {_sql_value(config.tenant_id)}
              AND configuration_id = {_sql_value(config.configuration_id)}
              AND version = {_sql_value(expected_version)}
            RETURNING version
            """
        )
        if not rows:
            if not self.exists(config.tenant_id, config.configuration_id):
                raise ConfigurationNotFoundError(config.tenant_id, config.configuration_id)
            raise ConcurrencyConflictError(
                f"Configuration {config.tenant_id}/{config.configuration_id} changed since version {expected_version}",
                details={"expected_version": expected_version},
            )
        return updated

    def update(
        self,
        tenant_id: str,
        configuration_id: str,
        mutate: Callable[[RetrievalConfiguration], RetrievalConfiguration],
        *,
        max_attempts: int = 3,
        modified_by: str | None = None,
    ) -> RetrievalConfiguration:
        """
        Read-modify-write with retry on version conflicts.

        ``mutate`` receives the latest stored configuration and returns the
        new one. When the schedule changes, the next run is recomputed.

        Raises:
            ConcurrencyConflictError: If every attempt lost a race
        """
        last_error: ConcurrencyConflictError | None = None
        for attempt in range(max_attempts):
            current = self.get(tenant_id, configuration_id)
            now = utcnow()
            changed = mutate(current)
            changed = changed.evolve(modified_at=now, modified_by=modified_by or changed.modified_by)
            if changed.schedule != current.schedule:
                changed = changed.evolve(
                    next_scheduled_run=next_run(changed.schedule.cron, changed.schedule.timezone, now)
                )
            try:
                return self.replace(changed, current.version, now=now)
            except ConcurrencyConflictError as e:
                last_error = e
                logger.debug(
                    f"Version conflict updating {tenant_id}/{configuration_id} (attempt {attempt + 1}/{max_attempts})"
                )
        raise ConcurrencyConflictError(
            f"Gave up updating {tenant_id}/{configuration_id} after {max_attempts} conflicting attempts",
            details={"attempts": max_attempts},
        ) from last_error

    def record_execution(
        self,
        tenant_id: str,
        configuration_id: str,
        *,
        executed_at: datetime,
        next_scheduled_run: datetime | None = None,
        max_attempts: int = 3,
    ) -> RetrievalConfiguration:
        """Stamp the last execution time and advance the next scheduled run."""

        def stamp(config: RetrievalConfiguration) -> RetrievalConfiguration:
            upcoming = next_scheduled_run or next_run(config.schedule.cron, config.schedule.timezone, executed_at)
            return config.evolve(last_executed_at=executed_at, next_scheduled_run=upcoming)

        return self.update(tenant_id, configuration_id, stamp, max_attempts=max_attempts, modified_by="scheduler")

    def deactivate(self, tenant_id: str, configuration_id: str, *, modified_by: str | None = None) -> RetrievalConfiguration:
        """Soft delete: the configuration stays readable but is never scheduled."""
        config = self.update(
            tenant_id, configuration_id, lambda c: c.evolve(is_active=False), modified_by=modified_by
        )
        logger.info(f"Deactivated configuration {tenant_id}/{configuration_id}")
        return config

    def upsert(self, config: RetrievalConfiguration, *, modified_by: str | None = None) -> RetrievalConfiguration:
        """Create the configuration, or replace its definition while keeping run state."""
        if not self.exists(config.tenant_id, config.configuration_id):
            return self.create(config, created_by=modified_by)

        def redefine(current: RetrievalConfiguration) -> RetrievalConfiguration:
            return config.evolve(
                created_at=current.created_at,
                created_by=current.created_by,
                last_executed_at=current.last_executed_at,
                next_scheduled_run=current.next_scheduled_run,
                version=current.version,
            )

        return self.update(config.tenant_id, config.configuration_id, redefine, modified_by=modified_by)

    def _row_values(self, config: RetrievalConfiguration, now: datetime) -> str:
        values = [
            config.tenant_id,
            config.configuration_id,
            config.name,
            config.protocol,
            config.is_active,
            config.next_scheduled_run,
            config.last_executed_at,
            config.version,
            _document(config),
            now,
        ]
        return ", ".join(_sql_value(v) for v in values)


def _document(config: RetrievalConfiguration) -> str:
    return json.dumps(config.to_dict(), default=str)


def _row_to_config(row: dict) -> RetrievalConfiguration:
    document = row["document"]
    data = json.loads(document) if isinstance(document, str) else dict(document)
    config = RetrievalConfiguration.from_dict(data)
    # Columns are authoritative over the embedded document
    return config.evolve(
        is_active=bool(row["is_active"]),
        next_scheduled_run=_from_db_datetime(row.get("next_scheduled_run")),
        last_executed_at=_from_db_datetime(row.get("last_executed_at")),
        version=int(row["version"]),
    )


def parse_configurations(entries: list[dict]) -> list[RetrievalConfiguration]:
    """
    Build and validate configurations from plain dicts (config.yaml seeds).

    Seeds must carry their own ``configuration_id`` so that loading the same
    file twice redefines the configurations instead of duplicating them.

    Raises:
        ValidationError: Listing the problems of every invalid entry
    """
    parsed: list[RetrievalConfiguration] = []
    errors: list[str] = []
    for i, entry in enumerate(entries):
        if not isinstance(entry, dict):
            errors.append(f"#{i + 1}: entry must be a mapping")
            continue
        label = entry.get("configuration_id") or entry.get("name") or f"#{i + 1}"
        if not entry.get("configuration_id"):
            errors.append(f"{label}: configuration_id is required")
            continue
        try:
            config = RetrievalConfiguration.from_dict(entry)
            config.validate()
        except ValidationError as e:
            errors.extend(f"{label}: {problem}" for problem in e.details.get("errors") or [e.message])
            continue
        except (TypeError, ValueError) as e:
            errors.append(f"{label}: {e}")
            continue
        parsed.append(config)
    if errors:
        raise ValidationError(f"{len(errors)} problem(s) in configuration entries", errors=errors)
    return parsed
