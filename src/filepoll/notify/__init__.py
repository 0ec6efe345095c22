"""
Notification transports for broadcast notifications and directed commands.
"""

from __future__ import annotations

from filepoll.exceptions import ConfigurationError
from filepoll.notify.base import Notification, NotificationTransport
from filepoll.notify.kafka import KafkaTransport
from filepoll.notify.memory import InMemoryTransport
from filepoll.notify.webhook import WebhookTransport

__all__ = [
    "InMemoryTransport",
    "KafkaTransport",
    "Notification",
    "NotificationTransport",
    "WebhookTransport",
    "create_transport",
]


def create_transport(settings) -> NotificationTransport:
    """Build the transport named by ``NotificationSettings.transport``."""
    name = settings.transport
    if name == "memory":
        return InMemoryTransport()
    if name == "webhook":
        options = settings.webhook
        return WebhookTransport(
            endpoints=options.get("endpoints") or {},
            default_url=options.get("default_url"),
            headers=options.get("headers") or {},
            signing_secret=options.get("signing_secret"),
            timeout=settings.timeout_s,
            retry_count=int(options.get("retry_count", 2)),
        )
    if name == "kafka":
        options = dict(settings.kafka)
        return KafkaTransport(
            bootstrap_servers=options.pop("bootstrap_servers", "localhost:9092"),
            **options,
        )
    raise ConfigurationError(f"Unknown notification transport: {name}")
