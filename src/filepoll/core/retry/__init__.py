"""
Retry framework for transient protocol failures.
"""

from filepoll.core.retry.manager import RetryManager
from filepoll.core.retry.policy import (
    LISTING_RETRY_POLICY,
    NO_RETRY_POLICY,
    RetryPolicy,
    RetryState,
)

__all__ = [
    "RetryPolicy",
    "RetryState",
    "LISTING_RETRY_POLICY",
    "NO_RETRY_POLICY",
    "RetryManager",
]
