"""
Kafka notification transport.

Broadcasts go to the topic named after the notification type; commands go to
the destination's topic. The idempotency key is the record key, so every
duplicate of a notification lands on the same partition.
Requires: pip install aiokafka
"""

from __future__ import annotations

from typing import Any

from filepoll.exceptions import NotificationError
from filepoll.notify.base import Notification, NotificationTransport
from filepoll.utils.logging import get_logger

logger = get_logger("filepoll.notify.kafka")


class KafkaTransport(NotificationTransport):
    """
    Apache Kafka producer transport.

    Args:
        bootstrap_servers: Kafka broker addresses (comma-separated)
        client_id: Client identifier
        topic_prefix: Prefix prepended to every topic name
        security_protocol: Security protocol (PLAINTEXT, SSL, SASL_PLAINTEXT, SASL_SSL)
        sasl_mechanism: SASL mechanism (PLAIN, SCRAM-SHA-256, SCRAM-SHA-512)
        sasl_username: SASL username
        sasl_password: SASL password
        **kafka_config: Additional aiokafka producer configuration
    """

    name = "kafka"

    def __init__(
        self,
        bootstrap_servers: str = "localhost:9092",
        *,
        client_id: str = "filepoll",
        topic_prefix: str = "",
        security_protocol: str = "PLAINTEXT",
        sasl_mechanism: str | None = None,
        sasl_username: str | None = None,
        sasl_password: str | None = None,
        **kafka_config: Any,
    ) -> None:
        self.bootstrap_servers = bootstrap_servers
        self.client_id = client_id
        self.topic_prefix = topic_prefix
        self.security_protocol = security_protocol
        self.sasl_mechanism = sasl_mechanism
        self.sasl_username = sasl_username
        self.sasl_password = sasl_password
        self.kafka_config = kafka_config
        self._producer = None

    async def connect(self) -> None:
        """Connect to Kafka."""
        if self._producer is not None:
            return
        try:
            from aiokafka import AIOKafkaProducer
        except ImportError as e:
            raise ImportError(
                "aiokafka is required for Kafka notifications. Install it with: pip install 'filepoll[kafka]'"
            ) from e

        config: dict[str, Any] = {
            "bootstrap_servers": self.bootstrap_servers,
            "client_id": self.client_id,
            "security_protocol": self.security_protocol,
            "acks": "all",
            "enable_idempotence": True,
        }
        if self.sasl_mechanism:
            config["sasl_mechanism"] = self.sasl_mechanism
        if self.sasl_username:
            config["sasl_plain_username"] = self.sasl_username
        if self.sasl_password:
            config["sasl_plain_password"] = self.sasl_password
        config.update(self.kafka_config)

        self._producer = AIOKafkaProducer(**config)
        await self._producer.start()
        logger.info(f"Connected Kafka producer to {self.bootstrap_servers}")

    async def disconnect(self) -> None:
        """Disconnect from Kafka."""
        if self._producer:
            await self._producer.stop()
            self._producer = None
            logger.info("Disconnected from Kafka")

    async def publish(self, topic: str, notification: Notification) -> None:
        await self._produce(topic, notification)

    async def send(self, destination: str, notification: Notification) -> None:
        await self._produce(destination, notification)

    async def _produce(self, name: str, notification: Notification) -> None:
        if self._producer is None:
            await self.connect()

        from aiokafka.errors import KafkaError

        topic = f"{self.topic_prefix}{name}"
        headers = [
            ("type", notification.type_name.encode("utf-8")),
            ("mode", notification.mode.value.encode("utf-8")),
        ]
        headers.extend((k, v.encode("utf-8")) for k, v in notification.headers.items())
        try:
            await self._producer.send_and_wait(
                topic,
                value=notification.encode(),
                key=notification.idempotency_key.encode("utf-8"),
                headers=headers,
            )
        except KafkaError as e:
            raise NotificationError(f"Kafka delivery to {topic} failed: {e}", destination=name) from e
        logger.debug(f"Produced {notification.type_name} to {topic}")
