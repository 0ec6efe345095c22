"""
Shared fixtures: in-memory state, transports, metrics and a fixed clock.
"""

from datetime import UTC, datetime

import pytest
from helpers import FixedClock, no_sleep

from filepoll.core.retry import RetryManager
from filepoll.core.secrets import MappingSecretResolver
from filepoll.notify.memory import InMemoryTransport
from filepoll.observability.metrics import MetricsRegistry
from filepoll.state.configurations import ConfigurationStore
from filepoll.state.history import ExecutionHistory
from filepoll.state.ledger import DeduplicationLedger
from filepoll.state.store import StateStore


@pytest.fixture
def state_store():
    store = StateStore(":memory:")
    store.initialize()
    yield store
    store.close()


@pytest.fixture
def history(state_store):
    return ExecutionHistory(state_store)


@pytest.fixture
def ledger(state_store):
    return DeduplicationLedger(state_store)


@pytest.fixture
def configurations(state_store):
    return ConfigurationStore(state_store)


@pytest.fixture
def transport():
    return InMemoryTransport()


@pytest.fixture
def secrets():
    return MappingSecretResolver({"ftp-acme": "s3cret"})


@pytest.fixture
def metrics():
    registry = MetricsRegistry()
    registry.enable()
    return registry


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 2, 23, 6, 0, 30, tzinfo=UTC))


@pytest.fixture
def retry_manager():
    return RetryManager(sleep=no_sleep)
