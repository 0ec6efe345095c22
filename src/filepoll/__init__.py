"""
filepoll - scheduled file discovery for FTP, SFTP, HTTP and S3 sources.

Polls remote stores on cron schedules, records every newly seen file in a
deduplication ledger and announces it to downstream consumers.
"""

__version__ = "0.1.0"

from filepoll.core.models import (
    DeliveryMode,
    DiscoveredFile,
    ErrorCategory,
    ExecutionRecord,
    ExecutionStatus,
    ExecutionTrigger,
    NotificationTarget,
    ProtocolType,
    RetrievalConfiguration,
    Schedule,
)
from filepoll.core.tokens import resolve_tokens

# Exceptions
from filepoll.exceptions import (
    AdapterError,
    AuthenticationFailedError,
    ConcurrencyConflictError,
    ConfigurationError,
    ConfigurationNotFoundError,
    CredentialError,
    ExecutionCancelledError,
    ExecutionError,
    FilePollError,
    InvalidTransitionError,
    NetworkError,
    NotFoundError,
    NotificationError,
    ProtocolError,
    StateStoreError,
    TriggerRejectedError,
    ValidationError,
)

# Logging utilities
from filepoll.utils.logging import get_logger, setup_logging, setup_logging_from_config

__all__ = [
    "__version__",
    # Domain types
    "DeliveryMode",
    "DiscoveredFile",
    "ErrorCategory",
    "ExecutionRecord",
    "ExecutionStatus",
    "ExecutionTrigger",
    "NotificationTarget",
    "ProtocolType",
    "RetrievalConfiguration",
    "Schedule",
    "resolve_tokens",
    # Logging
    "get_logger",
    "setup_logging",
    "setup_logging_from_config",
    # Exceptions
    "AdapterError",
    "AuthenticationFailedError",
    "ConcurrencyConflictError",
    "ConfigurationError",
    "ConfigurationNotFoundError",
    "CredentialError",
    "ExecutionCancelledError",
    "ExecutionError",
    "FilePollError",
    "InvalidTransitionError",
    "NetworkError",
    "NotFoundError",
    "NotificationError",
    "ProtocolError",
    "StateStoreError",
    "TriggerRejectedError",
    "ValidationError",
]
