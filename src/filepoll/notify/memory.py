"""
In-memory notification transport.

Keeps the most recent delivered notifications per topic or destination in
process (``max_messages``, oldest dropped first). Useful for tests, for the
CLI ``trigger`` path that has no broker configured, and for embedding the
engine.

Example:
    transport = InMemoryTransport()

    async with transport:
        await transport.deliver(notification)

    transport.messages("FileDiscovered")
"""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque

from filepoll.exceptions import NotificationError
from filepoll.notify.base import Notification, NotificationTransport

DEFAULT_MAX_MESSAGES = 10_000


class InMemoryTransport(NotificationTransport):
    """
    In-memory transport for testing and development.

    ``fail_on`` names topics or destinations whose deliveries should fail,
    which lets tests exercise partial notification failures.
    """

    name = "memory"

    def __init__(
        self,
        *,
        fail_on: set[str] | None = None,
        delay_s: float = 0.0,
        max_messages: int | None = DEFAULT_MAX_MESSAGES,
    ):
        self.max_messages = max_messages
        self._topics: dict[str, deque[Notification]] = defaultdict(self._new_buffer)
        self._destinations: dict[str, deque[Notification]] = defaultdict(self._new_buffer)
        self.fail_on = set(fail_on or ())
        self.delay_s = delay_s
        self.attempts = 0
        self._connected = False

    def _new_buffer(self) -> deque[Notification]:
        return deque(maxlen=self.max_messages)

    async def connect(self) -> None:
        """No-op for in-memory transport."""
        self._connected = True

    async def disconnect(self) -> None:
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def _maybe_fail(self, address: str) -> None:
        self.attempts += 1
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if address in self.fail_on:
            raise NotificationError(f"Delivery to {address} failed", destination=address)

    async def publish(self, topic: str, notification: Notification) -> None:
        await self._maybe_fail(topic)
        self._topics[topic].append(notification)

    async def send(self, destination: str, notification: Notification) -> None:
        await self._maybe_fail(destination)
        self._destinations[destination].append(notification)

    def messages(self, topic: str) -> list[Notification]:
        """All notifications published to a topic (for testing)."""
        return list(self._topics.get(topic, []))

    def commands(self, destination: str) -> list[Notification]:
        """All commands sent to a destination (for testing)."""
        return list(self._destinations.get(destination, []))

    def all(self) -> list[Notification]:
        items = [n for ns in self._topics.values() for n in ns]
        items.extend(n for ns in self._destinations.values() for n in ns)
        return sorted(items, key=lambda n: n.created_at)

    def clear(self) -> None:
        self._topics.clear()
        self._destinations.clear()
        self.attempts = 0

    @property
    def topic_count(self) -> int:
        """Number of topics with messages."""
        return len(self._topics)
