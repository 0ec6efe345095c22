"""
Persistent state: configurations, execution history and the processed-file ledger.
"""

from filepoll.state.configurations import ConfigurationStore
from filepoll.state.history import ExecutionHistory
from filepoll.state.ledger import DeduplicationLedger
from filepoll.state.store import StateStore

__all__ = [
    "ConfigurationStore",
    "DeduplicationLedger",
    "ExecutionHistory",
    "StateStore",
]
