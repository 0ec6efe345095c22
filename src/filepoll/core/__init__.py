"""
Core engine: domain types, date tokens, credentials and the execution
orchestrator.
"""

from filepoll.core.models import ExecutionRecord, RetrievalConfiguration
from filepoll.core.orchestrator import ExecutionContext, ExecutionOrchestrator
from filepoll.core.tokens import resolve_tokens

__all__ = [
    "ExecutionContext",
    "ExecutionOrchestrator",
    "ExecutionRecord",
    "RetrievalConfiguration",
    "resolve_tokens",
]
