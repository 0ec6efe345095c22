"""
Outbound webhook transport.

Delivers notifications as HTTP POST requests. Each topic (broadcast) or
destination (directed command) maps to an endpoint URL; ``default_url``
catches everything else.

Example:
    transport = WebhookTransport(
        endpoints={"FileDiscovered": "https://hooks.example.com/files"},
        signing_secret="s3cret",
    )
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import time

import aiohttp

from filepoll.exceptions import NotificationError
from filepoll.notify.base import Notification, NotificationTransport
from filepoll.utils.logging import get_logger

logger = get_logger("filepoll.notify.webhook")


class WebhookTransport(NotificationTransport):
    """
    HTTP webhook transport.

    Supports:
    - HMAC-SHA256 signatures (``X-Filepoll-Signature: sha256=<hex>`` over
      ``<timestamp>.<body>``)
    - Retry with exponential backoff on 5xx and connection errors
    - ``Idempotency-Key`` header carrying the notification's key

    Args:
        endpoints: Mapping of topic / destination names to URLs
        default_url: URL for names not in ``endpoints``
        headers: Default headers for all requests
        signing_secret: HMAC signing secret
        timeout: Request timeout in seconds
        retry_count: Number of retries on failure
    """

    name = "webhook"

    def __init__(
        self,
        endpoints: dict[str, str] | None = None,
        *,
        default_url: str | None = None,
        headers: dict[str, str] | None = None,
        signing_secret: str | None = None,
        timeout: float = 10.0,
        retry_count: int = 2,
        backoff_base: float = 0.5,
    ):
        self.endpoints = endpoints or {}
        self.default_url = default_url
        self.default_headers = headers or {}
        self.signing_secret = signing_secret
        self.timeout = timeout
        self.retry_count = retry_count
        self.backoff_base = backoff_base
        self._session: aiohttp.ClientSession | None = None

    async def connect(self) -> None:
        """Initialize HTTP session."""
        if self._session is not None:
            return
        self._session = aiohttp.ClientSession(
            headers=self.default_headers,
            timeout=aiohttp.ClientTimeout(total=self.timeout),
        )
        logger.info(f"Webhook transport initialized with {len(self.endpoints)} endpoint(s)")

    async def disconnect(self) -> None:
        """Close HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    def url_for(self, name: str) -> str:
        url = self.endpoints.get(name) or self.default_url
        if not url:
            raise NotificationError(f"No webhook endpoint configured for '{name}'", destination=name)
        return url

    async def publish(self, topic: str, notification: Notification) -> None:
        await self._post(self.url_for(topic), topic, notification)

    async def send(self, destination: str, notification: Notification) -> None:
        await self._post(self.url_for(destination), destination, notification)

    def delivery_budget(self, timeout_s: float) -> float:
        backoff = sum(self._backoff(attempt) for attempt in range(self.retry_count))
        return max(timeout_s, self.timeout) * (self.retry_count + 1) + backoff

    def _backoff(self, attempt: int) -> float:
        return min(self.backoff_base * 2**attempt, 10.0)

    def sign(self, timestamp: str, body: bytes) -> str:

        signature_payload = f"{timestamp}.".encode() + body
        digest = hmac.new(self.signing_secret.encode("utf-8"), signature_payload, hashlib.sha256).hexdigest()
        return f"sha256={digest}"

    async def _post(self, url: str, address: str, notification: Notification) -> None:
        """Send a webhook with retry logic."""
        if self._session is None:
            await self.connect()

        body = notification.encode()
        timestamp = str(int(time.time()))
        headers = {
            "Content-Type": "application/json",
            "Idempotency-Key": notification.idempotency_key,
            "X-Filepoll-Type": notification.type_name,
            "X-Filepoll-Mode": notification.mode.value,
            "X-Filepoll-Address": address,
            "X-Filepoll-Timestamp": timestamp,
            **notification.headers,
        }
        if self.signing_secret:
            headers["X-Filepoll-Signature"] = self.sign(timestamp, body)

        last_error = None
        for attempt in range(self.retry_count + 1):
            try:
                async with self._session.post(url, data=body, headers=headers) as resp:
                    if resp.status < 300:
                        logger.debug(f"Webhook sent to {url} (status={resp.status}, address={address})")
                        return
                    if resp.status < 500:
                        # Client error - don't retry
                        response_text = await resp.text()
                        raise NotificationError(
                            f"Webhook to {url} rejected (status={resp.status}): {response_text[:200]}",
                            destination=address,
                        )
                    last_error = f"HTTP {resp.status}"
                    logger.warning(
                        f"Webhook to {url} failed (status={resp.status}), attempt {attempt + 1}/{self.retry_count + 1}"
                    )
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = str(e) or type(e).__name__
                logger.warning(f"Webhook to {url} error: {last_error}, attempt {attempt + 1}/{self.retry_count + 1}")

            if attempt < self.retry_count:
                await asyncio.sleep(self._backoff(attempt))

        raise NotificationError(
            f"Webhook to {url} failed after {self.retry_count + 1} attempts: {last_error}",
            destination=address,
        )
