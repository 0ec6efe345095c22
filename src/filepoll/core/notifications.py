"""
Notification payload construction.

One Notification is built per (new file, notification target). The
idempotency key is stable for a file on a discovery date, so a redelivered
notification carries the same key as the original.
"""

from __future__ import annotations

import re
from datetime import date
from typing import Any

from filepoll.core.models import (
    DeliveryMode,
    DiscoveredFile,
    ExecutionRecord,
    NotificationTarget,
    RetrievalConfiguration,
)
from filepoll.notify.base import Notification

SUMMARY_TYPE = "FileCheckCompleted"

_PLACEHOLDER = re.compile(r"\{([a-z_]+)\}")


def idempotency_key(
    config: RetrievalConfiguration,
    file: DiscoveredFile,
    discovery_date: date,
    target: NotificationTarget | None = None,
) -> str:
    key = f"{config.tenant_id}:{config.configuration_id}:{file.locator}:{discovery_date.isoformat()}"
    if target is not None and target.mode == DeliveryMode.DIRECTED:
        key += f":cmd:{target.type_name}"
    return key


def file_fields(file: DiscoveredFile) -> dict[str, Any]:
    return {
        "filename": file.filename,
        "locator": file.locator,
        "size": file.size,
        "last_modified": file.last_modified.isoformat() if file.last_modified else None,
        "discovered_at": file.discovered_at.isoformat(),
        "content_type": file.content_type,
    }


def substitute(value: Any, variables: dict[str, Any]) -> Any:
    """Replace ``{name}`` placeholders in every string of a JSON-like value."""
    if isinstance(value, str):

        def replace(match: re.Match) -> str:
            name = match.group(1)
            if name not in variables:
                # Unknown placeholders stay literal
                return match.group(0)
            found = variables[name]
            return "" if found is None else str(found)

        return _PLACEHOLDER.sub(replace, value)
    if isinstance(value, dict):
        return {k: substitute(v, variables) for k, v in value.items()}
    if isinstance(value, list):
        return [substitute(v, variables) for v in value]
    return value


def build_notifications(
    config: RetrievalConfiguration,
    record: ExecutionRecord,
    file: DiscoveredFile,
    discovery_date: date,
) -> list[Notification]:
    """Every notification and command to emit for one newly discovered file."""
    described = file_fields(file)
    variables = {
        **described,
        "discovery_date": discovery_date.isoformat(),
        "execution_id": record.execution_id,
        "configuration_id": config.configuration_id,
        "tenant_id": config.tenant_id,
    }

    notifications = []
    for target in config.notifications:
        key = idempotency_key(config, file, discovery_date, target)
        payload = {
            "tenant_id": config.tenant_id,
            "configuration_id": config.configuration_id,
            "configuration_name": config.name,
            "execution_id": record.execution_id,
            "protocol": config.protocol.value,
            "file": described,
            "discovery_date": discovery_date.isoformat(),
            "idempotency_key": key,
            "data": substitute(target.payload or {}, variables),
        }
        notifications.append(
            Notification(
                mode=target.mode,
                type_name=target.type_name,
                destination=target.destination,
                payload=payload,
                idempotency_key=key,
            )
        )
    return notifications


def build_summary(config: RetrievalConfiguration, record: ExecutionRecord) -> Notification:
    """The FileCheckCompleted broadcast published at the end of every execution."""
    payload = {
        "tenant_id": config.tenant_id,
        "configuration_id": config.configuration_id,
        "configuration_name": config.name,
        "execution_id": record.execution_id,
        "protocol": config.protocol.value,
        "status": record.status.value,
        "started_at": record.started_at.isoformat() if record.started_at else None,
        "completed_at": record.completed_at.isoformat() if record.completed_at else None,
        "duration_ms": record.duration_ms,
        "files_found": record.files_found,
        "files_processed": record.files_processed,
        "resolved_path": record.resolved_path,
        "resolved_filename": record.resolved_filename,
        "error_category": record.error_category.value if record.error_category else None,
    }
    return Notification(
        mode=DeliveryMode.BROADCAST,
        type_name=SUMMARY_TYPE,
        payload=payload,
        idempotency_key=f"{config.tenant_id}:{config.configuration_id}:{record.execution_id}:completed",
    )
