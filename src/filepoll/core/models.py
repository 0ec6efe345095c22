"""
Domain types for the discovery engine.

Retrieval configurations (with their protocol-specific settings and
notification targets), the transient DiscoveredFile produced by a listing,
ledger records and the ExecutionRecord state machine.
"""

from __future__ import annotations

import json
import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Any, Generic, TypeVar

from filepoll.core.tokens import contains_tokens, find_invalid_tokens
from filepoll.exceptions import InvalidTransitionError, ValidationError

T = TypeVar("T")

MAX_PAYLOAD_BYTES = 10 * 1024
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_BUCKET_NAME = re.compile(r"^[a-z0-9][a-z0-9.-]{1,61}[a-z0-9]$")


class ProtocolType(StrEnum):
    FILE_TRANSFER = "file_transfer"
    WEB = "web"
    BLOB_STORE = "blob_store"


class FileTransferMode(StrEnum):
    FTP = "ftp"
    FTPS = "ftps"
    SFTP = "sftp"


class WebAuthMode(StrEnum):
    NONE = "none"
    BASIC = "basic"
    BEARER = "bearer"
    API_KEY = "api_key"


class WebListingMode(StrEnum):
    LISTING = "listing"
    PROBE = "probe"


class BlobAuthMode(StrEnum):
    AMBIENT = "ambient"
    ACCESS_KEY = "access_key"
    SESSION_TOKEN = "session_token"


class DeliveryMode(StrEnum):
    BROADCAST = "broadcast"
    DIRECTED = "directed"


class TokenTimezone(StrEnum):
    """Which calendar fills {yyyy}/{mm}/{dd}: UTC or the schedule's own zone."""

    UTC = "utc"
    SCHEDULE = "schedule"


class ExecutionStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


class ExecutionTrigger(StrEnum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"


class ErrorCategory(StrEnum):
    AUTHENTICATION_FAILED = "authentication_failed"
    NETWORK_ERROR = "network_error"
    PROTOCOL_ERROR = "protocol_error"
    NOTIFICATION_FAILED = "notification_failed"
    CANCELLED = "cancelled"
    CONCURRENCY_CONFLICT = "concurrency_conflict"
    INTERNAL_ERROR = "internal_error"


def utcnow() -> datetime:
    return datetime.now(UTC)


def _check_length(errors: list[str], name: str, value: str | None, limit: int, *, required: bool = False) -> None:
    if not value:
        if required:
            errors.append(f"{name} is required")
        return
    if len(value) > limit:
        errors.append(f"{name} must be at most {limit} characters")


def _parse_dt(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value))
    return dt if dt.tzinfo else dt.replace(tzinfo=UTC)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# --- Protocol settings -------------------------------------------------------


@dataclass(frozen=True)
class FileTransferSettings:
    """FTP / FTPS / SFTP server settings."""

    host: str
    port: int | None = None
    username: str | None = None
    mode: FileTransferMode = FileTransferMode.FTPS
    passive: bool = True
    password_handle: str | None = None
    private_key_handle: str | None = None
    timeout_s: float = 30.0

    protocol = ProtocolType.FILE_TRANSFER

    @property
    def effective_port(self) -> int:
        if self.port:
            return self.port
        return 22 if self.mode == FileTransferMode.SFTP else 21

    def validate(self) -> list[str]:
        errors: list[str] = []
        _check_length(errors, "host", self.host, 255, required=True)
        if self.host and contains_tokens(self.host):
            errors.append("host must not contain date tokens")
        if self.port is not None and not 1 <= self.port <= 65535:
            errors.append("port must be between 1 and 65535")
        _check_length(errors, "username", self.username, 100)
        if self.private_key_handle and self.mode != FileTransferMode.SFTP:
            errors.append("private_key_handle is only supported for sftp")
        if not 1 <= self.timeout_s <= 300:
            errors.append("timeout_s must be between 1 and 300")
        return errors

    def secret_handles(self) -> dict[str, str]:
        handles = {}
        if self.password_handle:
            handles["password"] = self.password_handle
        if self.private_key_handle:
            handles["private_key"] = self.private_key_handle
        return handles

    def to_dict(self) -> dict[str, Any]:
        return {
            "protocol": self.protocol.value,
            "host": self.host,
            "port": self.port,
            "username": self.username,
            "mode": self.mode.value,
            "passive": self.passive,
            "password_handle": self.password_handle,
            "private_key_handle": self.private_key_handle,
            "timeout_s": self.timeout_s,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileTransferSettings:
        return cls(
            host=str(data.get("host") or ""),
            port=int(data["port"]) if data.get("port") is not None else None,
            username=data.get("username"),
            mode=FileTransferMode(data.get("mode", FileTransferMode.FTPS)),
            passive=bool(data.get("passive", True)),
            password_handle=data.get("password_handle"),
            private_key_handle=data.get("private_key_handle"),
            timeout_s=float(data.get("timeout_s", 30.0)),
        )


@dataclass(frozen=True)
class WebSettings:
    """HTTPS endpoint settings."""

    base_url: str
    auth_mode: WebAuthMode = WebAuthMode.NONE
    username: str | None = None
    secret_handle: str | None = None
    api_key_header: str = "X-API-Key"
    listing_mode: WebListingMode = WebListingMode.LISTING
    follow_redirects: bool = True
    max_redirects: int = 5
    timeout_s: float = 30.0

    protocol = ProtocolType.WEB

    def validate(self) -> list[str]:
        errors: list[str] = []
        _check_length(errors, "base_url", self.base_url, 500, required=True)
        if self.base_url and not self.base_url.lower().startswith("https://"):
            errors.append("base_url must start with https://")
        if self.base_url and contains_tokens(self.base_url):
            errors.append("base_url must not contain date tokens")
        if self.auth_mode != WebAuthMode.NONE and not self.secret_handle:
            errors.append(f"secret_handle is required for auth_mode {self.auth_mode.value}")
        if self.auth_mode == WebAuthMode.BASIC and not self.username:
            errors.append("username is required for basic authentication")
        if not 0 <= self.max_redirects <= 10:
            errors.append("max_redirects must be between 0 and 10")
        if not 1 <= self.timeout_s <= 300:
            errors.append("timeout_s must be between 1 and 300")
        return errors

    def secret_handles(self) -> dict[str, str]:
        return {"secret": self.secret_handle} if self.secret_handle else {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "protocol": self.protocol.value,
            "base_url": self.base_url,
            "auth_mode": self.auth_mode.value,
            "username": self.username,
            "secret_handle": self.secret_handle,
            "api_key_header": self.api_key_header,
            "listing_mode": self.listing_mode.value,
            "follow_redirects": self.follow_redirects,
            "max_redirects": self.max_redirects,
            "timeout_s": self.timeout_s,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WebSettings:
        return cls(
            base_url=str(data.get("base_url") or ""),
            auth_mode=WebAuthMode(data.get("auth_mode", WebAuthMode.NONE)),
            username=data.get("username"),
            secret_handle=data.get("secret_handle"),
            api_key_header=data.get("api_key_header") or "X-API-Key",
            listing_mode=WebListingMode(data.get("listing_mode", WebListingMode.LISTING)),
            follow_redirects=bool(data.get("follow_redirects", True)),
            max_redirects=int(data.get("max_redirects", 5)),
            timeout_s=float(data.get("timeout_s", 30.0)),
        )


@dataclass(frozen=True)
class BlobStoreSettings:
    """S3-compatible object store settings."""

    container: str
    region: str | None = None
    endpoint_url: str | None = None
    prefix: str = ""
    auth_mode: BlobAuthMode = BlobAuthMode.AMBIENT
    access_key_id: str | None = None
    secret_handle: str | None = None
    session_token_handle: str | None = None
    timeout_s: float = 30.0

    protocol = ProtocolType.BLOB_STORE

    def validate(self) -> list[str]:
        errors: list[str] = []
        if not self.container:
            errors.append("container is required")
        elif not _BUCKET_NAME.match(self.container):
            errors.append("container must be 3-63 lowercase letters, digits, dots or hyphens")
        _check_length(errors, "prefix", self.prefix, 1024)
        if self.auth_mode in (BlobAuthMode.ACCESS_KEY, BlobAuthMode.SESSION_TOKEN):
            if not self.access_key_id:
                errors.append(f"access_key_id is required for auth_mode {self.auth_mode.value}")
            if not self.secret_handle:
                errors.append(f"secret_handle is required for auth_mode {self.auth_mode.value}")
        if self.auth_mode == BlobAuthMode.SESSION_TOKEN and not self.session_token_handle:
            errors.append("session_token_handle is required for auth_mode session_token")
        if not 1 <= self.timeout_s <= 300:
            errors.append("timeout_s must be between 1 and 300")
        return errors

    def secret_handles(self) -> dict[str, str]:
        handles = {}
        if self.auth_mode != BlobAuthMode.AMBIENT and self.secret_handle:
            handles["secret_access_key"] = self.secret_handle
        if self.auth_mode == BlobAuthMode.SESSION_TOKEN and self.session_token_handle:
            handles["session_token"] = self.session_token_handle
        return handles

    def to_dict(self) -> dict[str, Any]:
        return {
            "protocol": self.protocol.value,
            "container": self.container,
            "region": self.region,
            "endpoint_url": self.endpoint_url,
            "prefix": self.prefix,
            "auth_mode": self.auth_mode.value,
            "access_key_id": self.access_key_id,
            "secret_handle": self.secret_handle,
            "session_token_handle": self.session_token_handle,
            "timeout_s": self.timeout_s,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BlobStoreSettings:
        return cls(
            container=str(data.get("container") or ""),
            region=data.get("region"),
            endpoint_url=data.get("endpoint_url"),
            prefix=data.get("prefix") or "",
            auth_mode=BlobAuthMode(data.get("auth_mode", BlobAuthMode.AMBIENT)),
            access_key_id=data.get("access_key_id"),
            secret_handle=data.get("secret_handle"),
            session_token_handle=data.get("session_token_handle"),
            timeout_s=float(data.get("timeout_s", 30.0)),
        )


ProtocolSettings = FileTransferSettings | WebSettings | BlobStoreSettings

_SETTINGS_TYPES: dict[ProtocolType, type] = {
    ProtocolType.FILE_TRANSFER: FileTransferSettings,
    ProtocolType.WEB: WebSettings,
    ProtocolType.BLOB_STORE: BlobStoreSettings,
}


def settings_from_dict(data: dict[str, Any]) -> ProtocolSettings:
    """Build the settings variant named by ``data['protocol']``."""
    try:
        protocol = ProtocolType(data.get("protocol"))
    except ValueError:
        raise ValidationError("Invalid protocol settings", errors=[f"unknown protocol {data.get('protocol')!r}"]) from None
    return _SETTINGS_TYPES[protocol].from_dict(data)


# --- Configuration -----------------------------------------------------------


@dataclass(frozen=True)
class Schedule:
    cron: str
    timezone: str = "UTC"


@dataclass(frozen=True)
class NotificationTarget:
    """A broadcast notification or directed command emitted per new file."""

    mode: DeliveryMode
    type_name: str
    destination: str | None = None
    payload: dict[str, Any] | None = None

    def validate(self) -> list[str]:
        errors: list[str] = []
        _check_length(errors, "notification type_name", self.type_name, 200, required=True)
        if self.mode == DeliveryMode.DIRECTED:
            _check_length(errors, "command destination", self.destination, 200, required=True)
        if self.payload is not None:
            if not isinstance(self.payload, dict):
                errors.append("notification payload must be a JSON object")
            else:
                try:
                    size = len(json.dumps(self.payload).encode("utf-8"))
                except (TypeError, ValueError):
                    errors.append("notification payload must be JSON serialisable")
                else:
                    if size > MAX_PAYLOAD_BYTES:
                        errors.append(f"notification payload exceeds {MAX_PAYLOAD_BYTES} bytes")
        return errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "type_name": self.type_name,
            "destination": self.destination,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NotificationTarget:
        return cls(
            mode=DeliveryMode(data.get("mode", DeliveryMode.BROADCAST)),
            type_name=str(data.get("type_name") or ""),
            destination=data.get("destination"),
            payload=data.get("payload"),
        )


@dataclass(frozen=True)
class RetrievalConfiguration:
    """One tenant-defined polling job."""

    tenant_id: str
    name: str
    protocol: ProtocolType
    settings: ProtocolSettings
    path_pattern: str
    filename_pattern: str
    schedule: Schedule
    notifications: tuple[NotificationTarget, ...]
    configuration_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    description: str = ""
    extension: str | None = None
    is_active: bool = True
    token_timezone: TokenTimezone = TokenTimezone.UTC
    created_at: datetime | None = None
    created_by: str | None = None
    modified_at: datetime | None = None
    modified_by: str | None = None
    last_executed_at: datetime | None = None
    next_scheduled_run: datetime | None = None
    version: int = 0

    @property
    def key(self) -> tuple[str, str]:
        return (self.tenant_id, self.configuration_id)

    def validate(self) -> None:
        """Raise ValidationError listing every problem with this configuration."""
        from filepoll.service.schedule import validate_schedule

        errors: list[str] = []
        _check_length(errors, "tenant_id", self.tenant_id, 50, required=True)
        _check_length(errors, "configuration_id", self.configuration_id, 100, required=True)
        _check_length(errors, "name", self.name, 200, required=True)
        _check_length(errors, "description", self.description, 1000)

        if getattr(self.settings, "protocol", None) != self.protocol:
            errors.append(
                f"settings of type {type(self.settings).__name__} do not match protocol {self.protocol.value}"
            )
        else:
            errors.extend(self.settings.validate())

        for label, pattern, limit in (
            ("path_pattern", self.path_pattern, 500),
            ("filename_pattern", self.filename_pattern, 200),
        ):
            _check_length(errors, label, pattern, limit, required=True)
            if pattern and _CONTROL_CHARS.search(pattern):
                errors.append(f"{label} must not contain control characters")
            if pattern:
                for token in find_invalid_tokens(pattern):
                    errors.append(f"{label} contains unrecognised token {token}")

        if self.extension:
            ext = self.extension.lstrip(".")
            _check_length(errors, "extension", ext, 10)
            if not ext.isalnum():
                errors.append("extension must be alphanumeric")

        errors.extend(validate_schedule(self.schedule.cron, self.schedule.timezone))

        if not self.notifications:
            errors.append("at least one notification target is required")
        for target in self.notifications:
            errors.extend(target.validate())

        if errors:
            raise ValidationError(f"Invalid configuration '{self.name or self.configuration_id}'", errors=errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "configuration_id": self.configuration_id,
            "name": self.name,
            "description": self.description,
            "protocol": self.protocol.value,
            "settings": self.settings.to_dict(),
            "path_pattern": self.path_pattern,
            "filename_pattern": self.filename_pattern,
            "extension": self.extension,
            "schedule": {"cron": self.schedule.cron, "timezone": self.schedule.timezone},
            "notifications": [n.to_dict() for n in self.notifications],
            "is_active": self.is_active,
            "token_timezone": self.token_timezone.value,
            "created_at": _iso(self.created_at),
            "created_by": self.created_by,
            "modified_at": _iso(self.modified_at),
            "modified_by": self.modified_by,
            "last_executed_at": _iso(self.last_executed_at),
            "next_scheduled_run": _iso(self.next_scheduled_run),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetrievalConfiguration:
        """Build a configuration from a stored document or a config.yaml entry."""
        try:
            protocol = ProtocolType(data.get("protocol"))
        except ValueError:
            raise ValidationError("Invalid configuration", errors=[f"unknown protocol {data.get('protocol')!r}"]) from None

        settings_data = dict(data.get("settings") or {})
        settings_data.setdefault("protocol", protocol.value)
        schedule = data.get("schedule") or {}
        if isinstance(schedule, str):
            schedule = {"cron": schedule}

        kwargs: dict[str, Any] = {}
        if data.get("configuration_id"):
            kwargs["configuration_id"] = str(data["configuration_id"])

        return cls(
            tenant_id=str(data.get("tenant_id") or ""),
            name=str(data.get("name") or ""),
            description=str(data.get("description") or ""),
            protocol=protocol,
            settings=settings_from_dict(settings_data),
            path_pattern=str(data.get("path_pattern") or ""),
            filename_pattern=str(data.get("filename_pattern") or "*"),
            extension=data.get("extension") or None,
            schedule=Schedule(cron=str(schedule.get("cron") or ""), timezone=str(schedule.get("timezone") or "UTC")),
            notifications=tuple(NotificationTarget.from_dict(n) for n in data.get("notifications") or []),
            is_active=bool(data.get("is_active", True)),
            token_timezone=TokenTimezone(data.get("token_timezone", TokenTimezone.UTC)),
            created_at=_parse_dt(data.get("created_at")),
            created_by=data.get("created_by"),
            modified_at=_parse_dt(data.get("modified_at")),
            modified_by=data.get("modified_by"),
            last_executed_at=_parse_dt(data.get("last_executed_at")),
            next_scheduled_run=_parse_dt(data.get("next_scheduled_run")),
            version=int(data.get("version") or 0),
            **kwargs,
        )

    def evolve(self, **changes: Any) -> RetrievalConfiguration:
        return replace(self, **changes)


# --- Discovery ---------------------------------------------------------------


@dataclass(frozen=True)
class DiscoveredFile:
    """One remote file returned by a protocol listing. Never persisted."""

    filename: str
    locator: str
    size: int | None = None
    last_modified: datetime | None = None
    discovered_at: datetime = field(default_factory=utcnow)
    content_type: str | None = None
    etag: str | None = None


@dataclass(frozen=True)
class ProcessedFileRecord:
    tenant_id: str
    configuration_id: str
    execution_id: str
    filename: str
    locator: str
    discovery_date: date
    processed_at: datetime
    file_size: int | None = None
    last_modified: datetime | None = None


# --- Execution history -------------------------------------------------------


_ALLOWED_TRANSITIONS = {
    ExecutionStatus.PENDING: {ExecutionStatus.RUNNING, ExecutionStatus.FAILED},
    ExecutionStatus.RUNNING: {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED},
    ExecutionStatus.COMPLETED: set(),
    ExecutionStatus.FAILED: set(),
}


@dataclass
class ExecutionRecord:
    """
    Outcome of one discovery cycle for one configuration.

    Created ``pending`` at dispatch, moved to ``running`` and then to
    ``completed`` or ``failed``. Terminal records are frozen; the transition
    methods raise InvalidTransitionError rather than overwrite them.
    """

    tenant_id: str
    configuration_id: str
    execution_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    trigger: ExecutionTrigger = ExecutionTrigger.SCHEDULED
    status: ExecutionStatus = ExecutionStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    files_found: int = 0
    files_processed: int = 0
    notifications_emitted: int = 0
    resolved_path: str | None = None
    resolved_filename: str | None = None
    retry_count: int = 0
    error_category: ErrorCategory | None = None
    error_message: str | None = None

    def _move(self, target: ExecutionStatus) -> None:
        if target not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.execution_id, self.status.value, target.value)
        self.status = target

    def start(self, now: datetime | None = None) -> None:
        self._move(ExecutionStatus.RUNNING)
        self.started_at = now or utcnow()

    def complete(self, now: datetime | None = None) -> None:
        self._move(ExecutionStatus.COMPLETED)
        self._finish(now)

    def fail(self, category: ErrorCategory, message: str, now: datetime | None = None) -> None:
        self._move(ExecutionStatus.FAILED)
        self.error_category = category
        self.error_message = message[:2000]
        self._finish(now)

    def _finish(self, now: datetime | None) -> None:
        self.completed_at = now or utcnow()
        started = self.started_at or self.created_at
        self.duration_ms = max(0, int((self.completed_at - started).total_seconds() * 1000))

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "tenant_id": self.tenant_id,
            "configuration_id": self.configuration_id,
            "trigger": self.trigger.value,
            "status": self.status.value,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "duration_ms": self.duration_ms,
            "files_found": self.files_found,
            "files_processed": self.files_processed,
            "notifications_emitted": self.notifications_emitted,
            "resolved_path": self.resolved_path,
            "resolved_filename": self.resolved_filename,
            "retry_count": self.retry_count,
            "error_category": self.error_category.value if self.error_category else None,
            "error_message": self.error_message,
        }


@dataclass
class ExecutionMetrics:
    """Aggregates over a window of execution history, computed on read."""

    start: datetime
    end: datetime
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    average_duration_ms: float | None = None
    files_discovered: int = 0
    files_processed: int = 0
    files_discovered_per_day: dict[date, int] = field(default_factory=dict)
    failures_by_category: dict[str, int] = field(default_factory=dict)

    @property
    def success_rate(self) -> float:
        finished = self.successful_executions + self.failed_executions
        return self.successful_executions / finished if finished else 0.0


@dataclass
class Page(Generic[T]):
    items: list[T]
    continuation_token: str | None = None
