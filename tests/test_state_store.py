"""
Tests for the DuckDB-backed state: SQL helpers, the processed-file ledger,
execution history and the configuration store.
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, date, datetime, timedelta

import pytest
from helpers import make_config

from filepoll.core.models import (
    ErrorCategory,
    ExecutionRecord,
    ExecutionStatus,
    ExecutionTrigger,
    Schedule,
)
from filepoll.exceptions import (
    ConcurrencyConflictError,
    ConfigurationNotFoundError,
    ValidationError,
)
from filepoll.state.configurations import parse_configurations
from filepoll.state.store import StateStore, _sql_value, decode_token, encode_token

T0 = datetime(2026, 2, 23, 5, 0, tzinfo=UTC)
DAY = date(2026, 2, 23)


class TestSqlHelpers:
    """Tests for SQL value rendering."""

    def test_bool_before_int(self):
        assert _sql_value(True) == "TRUE"
        assert _sql_value(False) == "FALSE"
        assert _sql_value(0) == "0"

    def test_strings_are_escaped(self):
        assert _sql_value("O'Brien") == "'O''Brien'"

    def test_none(self):
        assert _sql_value(None) == "NULL"

    def test_enum_uses_value(self):
        assert _sql_value(ExecutionStatus.RUNNING) == "'running'"

    def test_aware_datetime_stored_as_utc(self):
        value = datetime(2026, 2, 23, 7, 0, tzinfo=UTC)
        assert _sql_value(value) == "TIMESTAMP '2026-02-23T07:00:00'"

    def test_date(self):
        assert _sql_value(DAY) == "DATE '2026-02-23'"


class TestContinuationTokens:
    def test_round_trip(self):
        assert decode_token(encode_token({"c": "2026-02-23", "i": "x"})) == {"c": "2026-02-23", "i": "x"}

    def test_garbage_token(self):
        with pytest.raises(ValidationError, match="Invalid continuation token"):
            decode_token("!!not-a-token!!")

    def test_non_mapping_token(self):
        with pytest.raises(ValidationError):
            decode_token(encode_token([1, 2]))


class TestStateStore:
    def test_initialize_is_idempotent(self, state_store):
        state_store.initialize()
        state_store.initialize()
        assert state_store.fetch("SELECT COUNT(*) AS n FROM filepoll.executions") == [{"n": 0}]

    def test_file_database_persists(self, tmp_path):
        path = tmp_path / "state" / "filepoll.duckdb"
        store = StateStore(path)
        store.execute("INSERT INTO filepoll.configurations VALUES "
                      "('t', 'c', 'n', 'web', TRUE, NULL, NULL, 1, '{}', NULL)")
        store.close()

        reopened = StateStore(path)
        try:
            assert reopened.fetch_one("SELECT tenant_id FROM filepoll.configurations") == {"tenant_id": "t"}
        finally:
            reopened.close()


def mark(ledger, locator="ftps://h:21/in/a.csv", *, discovery_date=DAY, execution_id="e1", processed_at=T0):
    return ledger.try_mark_processed(
        tenant_id="acme",
        configuration_id="daily-invoices",
        execution_id=execution_id,
        filename=locator.rsplit("/", 1)[-1],
        locator=locator,
        discovery_date=discovery_date,
        file_size=10,
        last_modified=T0,
        processed_at=processed_at,
    )


class TestDeduplicationLedger:
    """Tests for the processed-file ledger."""

    def test_first_mark_wins(self, ledger):
        assert mark(ledger) is True
        assert mark(ledger, execution_id="e2") is False
        assert ledger.count("acme") == 1

    def test_same_file_new_discovery_date(self, ledger):
        assert mark(ledger)
        assert mark(ledger, discovery_date=DAY + timedelta(days=1))
        assert ledger.count("acme", "daily-invoices") == 2

    def test_is_processed(self, ledger):
        assert not ledger.is_processed("acme", "daily-invoices", "ftps://h:21/in/a.csv", DAY)
        mark(ledger)
        assert ledger.is_processed("acme", "daily-invoices", "ftps://h:21/in/a.csv", DAY)
        assert not ledger.is_processed("other", "daily-invoices", "ftps://h:21/in/a.csv", DAY)

    def test_concurrent_marks_create_one_row(self, ledger):
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda i: mark(ledger, execution_id=f"e{i}"), range(8)))
        assert results.count(True) == 1
        assert ledger.count("acme") == 1

    def test_query_filters_and_round_trips(self, ledger):
        mark(ledger, "ftps://h:21/in/Invoice_1.csv", execution_id="e1")
        mark(ledger, "ftps://h:21/in/report_1.csv", execution_id="e1", processed_at=T0 + timedelta(minutes=1))
        mark(ledger, "ftps://h:21/in/invoice_2.csv", execution_id="e2", processed_at=T0 + timedelta(minutes=2))

        page = ledger.query("acme", "daily-invoices", filename="INVOICE")
        assert [r.filename for r in page.items] == ["invoice_2.csv", "Invoice_1.csv"]
        record = page.items[1]
        assert record.discovery_date == DAY
        assert record.processed_at == T0
        assert record.last_modified == T0
        assert record.file_size == 10

        by_execution = ledger.query("acme", "daily-invoices", execution_id="e1")
        assert len(by_execution.items) == 2

    def test_filename_filter_is_literal(self, ledger):
        mark(ledger, "ftps://h:21/in/a_b.csv")
        mark(ledger, "ftps://h:21/in/axb.csv", processed_at=T0 + timedelta(seconds=1))
        page = ledger.query("acme", "daily-invoices", filename="a_b")
        assert [r.filename for r in page.items] == ["a_b.csv"]

    def test_query_pagination(self, ledger):
        for i in range(5):
            mark(ledger, f"ftps://h:21/in/f{i}.csv", processed_at=T0 + timedelta(minutes=i))

        seen = []
        token = None
        while True:
            page = ledger.query("acme", "daily-invoices", page_size=2, continuation_token=token)
            seen.extend(r.filename for r in page.items)
            token = page.continuation_token
            if token is None:
                break
        assert seen == ["f4.csv", "f3.csv", "f2.csv", "f1.csv", "f0.csv"]


def record_at(created_at, **kwargs):
    values = dict(tenant_id="acme", configuration_id="daily-invoices", created_at=created_at)
    values.update(kwargs)
    return ExecutionRecord(**values)


class TestExecutionHistory:
    """Tests for ExecutionHistory."""

    def test_create_and_get(self, history):
        record = history.create(record_at(T0, trigger=ExecutionTrigger.MANUAL))
        stored = history.get(record.execution_id)
        assert stored.status == ExecutionStatus.PENDING
        assert stored.trigger == ExecutionTrigger.MANUAL
        assert stored.created_at == T0

    def test_get_unknown(self, history):
        assert history.get("missing") is None

    def test_update_progress(self, history):
        record = history.create(record_at(T0))
        record.start(T0)
        record.files_found = 3
        record.files_processed = 2
        record.resolved_path = "/outbound/2026/02/23"
        assert history.update(record)
        record.complete(T0 + timedelta(seconds=1))
        assert history.update(record)

        stored = history.get(record.execution_id)
        assert stored.status == ExecutionStatus.COMPLETED
        assert stored.duration_ms == 1000
        assert stored.files_found == 3
        assert stored.resolved_path == "/outbound/2026/02/23"

    def test_terminal_rows_are_frozen(self, history):
        record = history.create(record_at(T0))
        record.start(T0)
        record.fail(ErrorCategory.NETWORK_ERROR, "down", T0)
        assert history.update(record)

        late = history.get(record.execution_id)
        late.status = ExecutionStatus.RUNNING
        late.error_category = None
        assert history.update(late) is False
        assert history.get(record.execution_id).status == ExecutionStatus.FAILED

    def test_list_filters(self, history):
        history.create(record_at(T0, configuration_id="a"))
        done = record_at(T0 + timedelta(minutes=1), configuration_id="b")
        history.create(done)
        done.start(T0)
        done.complete(T0 + timedelta(minutes=2))
        history.update(done)
        history.create(record_at(T0, tenant_id="other"))

        assert len(history.list("acme").items) == 2
        assert [r.configuration_id for r in history.list("acme", configuration_id="a").items] == ["a"]
        assert [r.configuration_id for r in history.list("acme", status=ExecutionStatus.COMPLETED).items] == ["b"]
        assert len(history.list("acme", since=T0 + timedelta(seconds=30)).items) == 1
        assert len(history.list("acme", until=T0 + timedelta(seconds=30)).items) == 1

    def test_list_pagination_newest_first(self, history):
        ids = [history.create(record_at(T0 + timedelta(minutes=i))).execution_id for i in range(5)]

        first = history.list("acme", page_size=2)
        assert [r.execution_id for r in first.items] == [ids[4], ids[3]]
        second = history.list("acme", page_size=2, continuation_token=first.continuation_token)
        assert [r.execution_id for r in second.items] == [ids[2], ids[1]]
        third = history.list("acme", page_size=2, continuation_token=second.continuation_token)
        assert [r.execution_id for r in third.items] == [ids[0]]
        assert third.continuation_token is None

    def test_close_abandoned(self, history):
        stale = history.create(record_at(T0))
        running = record_at(T0)
        history.create(running)
        running.start(T0)
        history.update(running)
        in_flight = history.create(record_at(T0))
        fresh = history.create(record_at(T0 + timedelta(hours=2)))

        closed = history.close_abandoned(T0 + timedelta(hours=1), exclude=[in_flight.execution_id])

        assert set(closed) == {stale.execution_id, running.execution_id}
        record = history.get(stale.execution_id)
        assert record.status == ExecutionStatus.FAILED
        assert record.error_category == ErrorCategory.CANCELLED
        assert history.get(in_flight.execution_id).status == ExecutionStatus.PENDING
        assert history.get(fresh.execution_id).status == ExecutionStatus.PENDING

    def test_metrics(self, history):
        def finished(created_at, *, ok, duration_s, found, category=ErrorCategory.NETWORK_ERROR):
            record = history.create(record_at(created_at))
            record.start(created_at)
            record.files_found = found
            record.files_processed = found
            if ok:
                record.complete(created_at + timedelta(seconds=duration_s))
            else:
                record.fail(category, "x", created_at + timedelta(seconds=duration_s))
            history.update(record)

        finished(T0, ok=True, duration_s=1, found=2)
        finished(T0 + timedelta(hours=1), ok=False, duration_s=3, found=0)
        finished(T0 + timedelta(days=1), ok=True, duration_s=2, found=5)
        history.create(record_at(T0 + timedelta(days=1)))
        finished(T0 + timedelta(days=30), ok=True, duration_s=1, found=9)

        result = history.metrics("acme", start=T0, end=T0 + timedelta(days=7))

        assert result.total_executions == 4
        assert result.successful_executions == 2
        assert result.failed_executions == 1
        assert result.average_duration_ms == pytest.approx(2000.0)
        assert result.files_discovered == 7
        assert result.files_discovered_per_day == {DAY: 2, DAY + timedelta(days=1): 5}
        assert result.failures_by_category == {"network_error": 1}

    def test_metrics_empty_window(self, history):
        result = history.metrics("acme", start=T0, end=T0 + timedelta(days=1))
        assert result.total_executions == 0
        assert result.average_duration_ms is None
        assert result.success_rate == 0.0


class TestConfigurationStore:
    """Tests for ConfigurationStore."""

    def test_create_sets_version_and_next_run(self, configurations):
        created = configurations.create(make_config(), created_by="ops", now=T0)
        assert created.version == 1
        assert created.next_scheduled_run == datetime(2026, 2, 23, 6, 0, tzinfo=UTC)

        stored = configurations.get("acme", "daily-invoices")
        assert stored.version == 1
        assert stored.name == "Daily invoices"
        assert stored.settings == make_config().settings
        assert stored.next_scheduled_run == created.next_scheduled_run
        assert stored.created_by == "ops"

    def test_create_rejects_invalid(self, configurations):
        with pytest.raises(ValidationError):
            configurations.create(make_config(path_pattern=""))

    def test_create_rejects_duplicate(self, configurations):
        configurations.create(make_config())
        with pytest.raises(ValidationError, match="already exists"):
            configurations.create(make_config())

    def test_get_unknown(self, configurations):
        with pytest.raises(ConfigurationNotFoundError):
            configurations.get("acme", "missing")
        assert not configurations.exists("acme", "missing")

    def test_replace_with_stale_version(self, configurations):
        created = configurations.create(make_config())
        configurations.replace(created.evolve(name="Renamed"), expected_version=1)
        with pytest.raises(ConcurrencyConflictError):
            configurations.replace(created.evolve(name="Lost update"), expected_version=1)
        assert configurations.get("acme", "daily-invoices").name == "Renamed"

    def test_replace_unknown(self, configurations):
        with pytest.raises(ConfigurationNotFoundError):
            configurations.replace(make_config(), expected_version=1)

    def test_update_bumps_version(self, configurations):
        configurations.create(make_config())
        updated = configurations.update("acme", "daily-invoices", lambda c: c.evolve(description="nightly"))
        assert updated.version == 2
        assert configurations.get("acme", "daily-invoices").description == "nightly"

    def test_update_recomputes_next_run_on_schedule_change(self, configurations):
        configurations.create(make_config(), now=T0)
        updated = configurations.update(
            "acme", "daily-invoices", lambda c: c.evolve(schedule=Schedule(cron="*/5 * * * *"))
        )
        assert updated.next_scheduled_run != datetime(2026, 2, 23, 6, 0, tzinfo=UTC)
        assert updated.next_scheduled_run.minute % 5 == 0

    def test_update_retries_conflicts(self, configurations):
        configurations.create(make_config())
        calls = []

        def racing(config):
            calls.append(1)
            if len(calls) == 1:
                # Another writer bumps the version between our read and write
                configurations.replace(config.evolve(name="Other writer"), expected_version=config.version)
            return config.evolve(description="mine")

        updated = configurations.update("acme", "daily-invoices", racing)
        assert len(calls) == 2
        assert updated.version == 3
        assert updated.name == "Other writer"

    def test_update_gives_up(self, configurations):
        configurations.create(make_config())

        def always_racing(config):
            configurations.replace(config, expected_version=config.version)
            return config

        with pytest.raises(ConcurrencyConflictError, match="Gave up"):
            configurations.update("acme", "daily-invoices", always_racing, max_attempts=2)

    def test_record_execution(self, configurations):
        configurations.create(make_config(), now=T0)
        executed_at = datetime(2026, 2, 23, 6, 0, 5, tzinfo=UTC)
        stamped = configurations.record_execution("acme", "daily-invoices", executed_at=executed_at)
        assert stamped.last_executed_at == executed_at
        assert stamped.next_scheduled_run == datetime(2026, 2, 24, 6, 0, tzinfo=UTC)

    def test_list_due(self, configurations):
        configurations.create(make_config(), now=T0)
        configurations.create(make_config(configuration_id="later", schedule=Schedule(cron="0 9 * * *")), now=T0)
        configurations.create(make_config(configuration_id="inactive", is_active=False), now=T0)

        due = configurations.list_due(datetime(2026, 2, 23, 6, 0, 30, tzinfo=UTC))
        assert [c.configuration_id for c in due] == ["daily-invoices"]
        assert configurations.list_due(T0) == []

    def test_list_due_limit(self, configurations):
        for i in range(3):
            configurations.create(make_config(configuration_id=f"c{i}"), now=T0)
        assert len(configurations.list_due(T0 + timedelta(hours=2), limit=2)) == 2

    def test_deactivate(self, configurations):
        configurations.create(make_config(), now=T0)
        configurations.deactivate("acme", "daily-invoices", modified_by="ops")

        assert configurations.get("acme", "daily-invoices").is_active is False
        assert configurations.list("acme").items == []
        assert len(configurations.list("acme", include_inactive=True).items) == 1
        assert configurations.list_due(T0 + timedelta(days=1)) == []

    def test_list_pagination(self, configurations):
        for i in range(5):
            configurations.create(make_config(configuration_id=f"c{i}"))
        first = configurations.list(page_size=3)
        second = configurations.list(page_size=3, continuation_token=first.continuation_token)
        assert [c.configuration_id for c in first.items + second.items] == ["c0", "c1", "c2", "c3", "c4"]
        assert second.continuation_token is None

    def test_upsert_keeps_run_state(self, configurations):
        configurations.create(make_config(), now=T0)
        executed_at = datetime(2026, 2, 23, 6, 0, 5, tzinfo=UTC)
        configurations.record_execution("acme", "daily-invoices", executed_at=executed_at)

        redefined = configurations.upsert(make_config(name="Invoices v2"), modified_by="cli")

        assert redefined.name == "Invoices v2"
        assert redefined.last_executed_at == executed_at
        assert redefined.version == 3

    def test_upsert_creates(self, configurations):
        assert configurations.upsert(make_config()).version == 1


class TestParseConfigurations:
    def test_parses_valid_entries(self):
        entries = [make_config().to_dict(), make_config(configuration_id="second").to_dict()]
        parsed = parse_configurations(entries)
        assert [c.configuration_id for c in parsed] == ["daily-invoices", "second"]

    def test_requires_configuration_id(self):
        entry = make_config().to_dict()
        del entry["configuration_id"]
        with pytest.raises(ValidationError) as exc_info:
            parse_configurations([entry])
        assert exc_info.value.details["errors"] == ["Daily invoices: configuration_id is required"]

    def test_collects_problems_across_entries(self):
        bad = make_config(configuration_id="bad", path_pattern="").to_dict()
        with pytest.raises(ValidationError) as exc_info:
            parse_configurations([make_config().to_dict(), bad, "nonsense"])
        errors = exc_info.value.details["errors"]
        assert "bad: path_pattern is required" in errors
        assert "#3: entry must be a mapping" in errors
