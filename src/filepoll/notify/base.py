"""
Base notification transport interface.

Every new file produces one Notification per configured target. Broadcast
notifications are published to a topic named after the notification type;
directed commands are sent to a named destination. Transports are
at-least-once: consumers deduplicate on ``idempotency_key``.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from filepoll.core.models import DeliveryMode, utcnow
from filepoll.exceptions import NotificationError


@dataclass
class Notification:
    """One outgoing broadcast notification or directed command."""

    mode: DeliveryMode
    type_name: str
    payload: dict[str, Any]
    idempotency_key: str
    destination: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def address(self) -> str:
        """Topic for broadcasts, destination for directed commands."""
        if self.mode == DeliveryMode.DIRECTED:
            return self.destination or ""
        return self.type_name

    def to_message(self) -> dict[str, Any]:
        return {
            "type": self.type_name,
            "mode": self.mode.value,
            "idempotency_key": self.idempotency_key,
            "created_at": self.created_at.isoformat(),
            "payload": self.payload,
        }

    def encode(self) -> bytes:
        return json.dumps(self.to_message(), default=str, separators=(",", ":")).encode("utf-8")


class NotificationTransport(ABC):
    """
    Abstract base class for notification transports.

    Implementations provided:
    - InMemoryTransport: in-process, for tests and embedding
    - WebhookTransport: HTTP POST per notification (aiohttp)
    - KafkaTransport: Apache Kafka producer (requires aiokafka)

    Any delivery failure is raised as NotificationError.
    """

    name: str = "transport"

    @abstractmethod
    async def connect(self) -> None:
        """Establish connection to the messaging system."""
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        """Gracefully disconnect from the messaging system."""
        ...

    @abstractmethod
    async def publish(self, topic: str, notification: Notification) -> None:
        """Broadcast a notification to every subscriber of ``topic``."""
        ...

    @abstractmethod
    async def send(self, destination: str, notification: Notification) -> None:
        """Send a command to exactly one ``destination``."""
        ...

    async def deliver(self, notification: Notification) -> None:
        """Route a notification by its delivery mode."""
        if notification.mode == DeliveryMode.DIRECTED:
            if not notification.destination:
                raise NotificationError(f"Command {notification.type_name} has no destination")
            await self.send(notification.destination, notification)
        else:
            await self.publish(notification.type_name, notification)

    def delivery_budget(self, timeout_s: float) -> float:
        """Outer time limit for one ``deliver`` call, including the transport's own retries."""
        return timeout_s

    async def __aenter__(self):

        await self.connect()
        return self

    async def __aexit__(self, *exc):
        await self.disconnect()
