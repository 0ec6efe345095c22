"""
filepoll exception hierarchy.

All domain-specific exceptions inherit from FilePollError, making it easy
to catch any engine error with a single base class while still allowing
fine-grained handling when needed.

Hierarchy::

    FilePollError
    ├── ConfigurationError          - service config loading, parsing, validation
    ├── ValidationError             - retrieval configuration rejected at creation
    ├── CredentialError             - secret handle could not be resolved
    ├── AdapterError                - protocol listing failures (carry a category)
    │   ├── AuthenticationFailedError
    │   ├── NotFoundError           - remote path missing (treated as zero files)
    │   ├── NetworkError            - transient, retryable
    │   └── ProtocolError           - malformed response, non-retryable
    ├── NotificationError           - transport rejected or failed a delivery
    ├── ExecutionError              - execution lifecycle problems
    │   ├── InvalidTransitionError  - illegal ExecutionRecord state change
    │   ├── ExecutionCancelledError - deadline exceeded or stop requested
    │   └── TriggerRejectedError    - manual trigger refused
    ├── ConfigurationNotFoundError  - unknown (tenant, configuration) pair
    ├── ConcurrencyConflictError    - optimistic concurrency retries exhausted
    └── StateStoreError             - state database read/write
"""

from __future__ import annotations


class FilePollError(Exception):
    """Base exception for all filepoll errors."""

    def __init__(self, message: str, *, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


# --- Configuration -----------------------------------------------------------


class ConfigurationError(FilePollError):
    """Raised when service configuration loading, parsing, or validation fails."""


class ValidationError(FilePollError):
    """Raised when a retrieval configuration fails validation.

    ``errors`` holds every problem found so callers can report them together.
    """

    def __init__(self, message: str, *, errors: list[str] | None = None) -> None:
        errors = list(errors or [])
        full = message if not errors else f"{message}: " + "; ".join(errors)
        super().__init__(full, details={"errors": errors})
        self.errors = errors


class CredentialError(FilePollError):
    """Raised when a secret handle cannot be resolved."""

    def __init__(self, handle: str, message: str | None = None) -> None:
        super().__init__(message or f"Secret handle could not be resolved: {handle}", details={"handle": handle})
        self.handle = handle


# --- Protocol adapters -------------------------------------------------------


class AdapterError(FilePollError):
    """Base class for protocol adapter failures."""

    category: str = "protocol_error"
    retryable: bool = False


class AuthenticationFailedError(AdapterError):
    """Raised when the remote store rejects the supplied credentials."""

    category = "authentication_failed"


class NotFoundError(AdapterError):
    """Raised when the resolved path does not exist on the remote store."""

    category = "not_found"


class NetworkError(AdapterError):
    """Raised on transient transport failures (timeouts, resets, 5xx)."""

    category = "network_error"
    retryable = True


class ProtocolError(AdapterError):
    """Raised when the remote store answers with something unusable."""

    category = "protocol_error"


# --- Notifications -----------------------------------------------------------


class NotificationError(FilePollError):
    """Raised when a notification could not be delivered."""

    def __init__(self, message: str, *, destination: str | None = None) -> None:
        super().__init__(message, details={"destination": destination})
        self.destination = destination


# --- Execution ---------------------------------------------------------------


class ExecutionError(FilePollError):
    """Raised when an execution cannot proceed."""


class InvalidTransitionError(ExecutionError):
    """Raised when an ExecutionRecord is moved to a state it cannot reach."""

    def __init__(self, execution_id: str, current: str, target: str) -> None:
        super().__init__(
            f"Execution '{execution_id}' cannot move from {current} to {target}",
            details={"execution_id": execution_id, "current": current, "target": target},
        )
        self.execution_id = execution_id


class ExecutionCancelledError(ExecutionError):
    """Raised inside an execution when its deadline passed or a stop was requested."""


class TriggerRejectedError(ExecutionError):
    """Raised when a manual trigger cannot be dispatched."""


# --- Configuration store -----------------------------------------------------


class ConfigurationNotFoundError(FilePollError):
    """Raised when a retrieval configuration does not exist."""

    def __init__(self, tenant_id: str, configuration_id: str) -> None:
        super().__init__(
            f"Configuration not found: {tenant_id}/{configuration_id}",
            details={"tenant_id": tenant_id, "configuration_id": configuration_id},
        )
        self.tenant_id = tenant_id
        self.configuration_id = configuration_id


class ConcurrencyConflictError(FilePollError):
    """Raised when a conditional update keeps losing to concurrent writers."""


# --- State store -------------------------------------------------------------


class StateStoreError(FilePollError):
    """Raised when the state database cannot be read or written."""
