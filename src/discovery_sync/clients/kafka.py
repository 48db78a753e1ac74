"""Async Kafka client wrapper using aiokafka."""

import json
import logging
from typing import Any

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer, ConsumerRebalanceListener
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class SecurityConfig(BaseModel):
    """SASL/PLAIN credentials, applied to producer and consumer alike."""

    enabled: bool = Field(default=False, description="Enable SASL/PLAIN over TLS")
    username: str = Field(default="", description="SASL username")
    password: str = Field(default="", description="SASL password")

    def client_kwargs(self) -> dict[str, Any]:
        if not self.enabled:
            return {}
        return {
            "security_protocol": "SASL_SSL",
            "sasl_mechanism": "PLAIN",
            "sasl_plain_username": self.username,
            "sasl_plain_password": self.password,
        }


class ProducerConfig(BaseModel):
    """Configuration for Kafka producer."""

    bootstrap_servers: list[str] = Field(
        default=["localhost:9092"], description="Kafka bootstrap servers"
    )
    client_id: str = Field(default="discovery-sync-producer", description="Kafka client ID")
    compression_type: str = Field(default="gzip", description="Compression type")
    request_timeout_ms: int = Field(default=30000, description="Request timeout in milliseconds")
    acks: str = Field(default="all", description="Acknowledgements required per send")


class ConsumerConfig(BaseModel):
    """Configuration for Kafka consumer.

    Offsets are committed explicitly once a message reached a terminal
    outcome, so auto-commit is off by default.
    """

    bootstrap_servers: list[str] = Field(
        default=["localhost:9092"], description="Kafka bootstrap servers"
    )
    group_id: str = Field(default="digital-discovery-sync", description="Consumer group ID")
    auto_offset_reset: str = Field(default="earliest", description="Auto offset reset strategy")
    enable_auto_commit: bool = Field(default=False, description="Enable auto commit")
    session_timeout_ms: int = Field(default=45000, description="Session timeout")
    max_poll_interval_ms: int = Field(default=300000, description="Max poll interval (5 minutes)")


class KafkaClient:
    """Async Kafka client wrapper with producer and consumer management."""

    def __init__(
        self,
        bootstrap_servers: list[str] | None = None,
        producer_config: ProducerConfig | None = None,
        consumer_config: ConsumerConfig | None = None,
        security: SecurityConfig | None = None,
    ) -> None:
        """Initialize Kafka client.

        Args:
            bootstrap_servers: Kafka bootstrap servers. Overrides config if provided.
            producer_config: Producer configuration.
            consumer_config: Consumer configuration.
            security: SASL settings shared by every connection.
        """
        self._producer_config = producer_config or ProducerConfig()
        self._consumer_config = consumer_config or ConsumerConfig()
        self._security = security or SecurityConfig()

        if bootstrap_servers:
            self._producer_config.bootstrap_servers = bootstrap_servers
            self._consumer_config.bootstrap_servers = bootstrap_servers

        self._producer: AIOKafkaProducer | None = None
        self._consumers: dict[str, AIOKafkaConsumer] = {}

    @property
    def bootstrap_servers(self) -> list[str]:
        return self._consumer_config.bootstrap_servers

    async def get_producer(self) -> AIOKafkaProducer:
        """Get or create the Kafka producer.

        Returns:
            Started AIOKafkaProducer instance.
        """
        if self._producer is None:
            logger.info(f"Creating Kafka producer for {self._producer_config.bootstrap_servers}")
            producer = AIOKafkaProducer(
                bootstrap_servers=self._producer_config.bootstrap_servers,
                client_id=self._producer_config.client_id,
                compression_type=self._producer_config.compression_type,
                request_timeout_ms=self._producer_config.request_timeout_ms,
                acks=self._producer_config.acks,
                **self._security.client_kwargs(),
            )
            await producer.start()
            self._producer = producer
            logger.info("Kafka producer started")

        return self._producer

    async def create_consumer(
        self,
        topics: list[str],
        group_id: str | None = None,
        listener: ConsumerRebalanceListener | None = None,
    ) -> AIOKafkaConsumer:
        """Create, start and subscribe a consumer group member.

        Args:
            topics: Topics to subscribe to.
            group_id: Consumer group ID (uses config default if not provided).
            listener: Rebalance listener notified of partition assignment changes.

        Returns:
            Started AIOKafkaConsumer instance.
        """
        consumer_group_id = group_id or self._consumer_config.group_id
        consumer_key = self._consumer_key(topics, consumer_group_id)

        if consumer_key in self._consumers:
            logger.warning(f"Consumer for {consumer_key} already exists")
            return self._consumers[consumer_key]

        logger.info(f"Creating Kafka consumer for topics {topics} with group {consumer_group_id}")

        consumer = AIOKafkaConsumer(
            bootstrap_servers=self._consumer_config.bootstrap_servers,
            group_id=consumer_group_id,
            auto_offset_reset=self._consumer_config.auto_offset_reset,
            enable_auto_commit=self._consumer_config.enable_auto_commit,
            session_timeout_ms=self._consumer_config.session_timeout_ms,
            max_poll_interval_ms=self._consumer_config.max_poll_interval_ms,
            **self._security.client_kwargs(),
        )

        await consumer.start()
        consumer.subscribe(topics=topics, listener=listener)
        self._consumers[consumer_key] = consumer
        logger.info(f"Kafka consumer started for {consumer_key}")

        return consumer

    async def close_consumer(self, topics: list[str], group_id: str | None = None) -> None:
        """Stop one consumer, leaving the group so its partitions are reassigned."""
        consumer_key = self._consumer_key(topics, group_id or self._consumer_config.group_id)
        consumer = self._consumers.pop(consumer_key, None)
        if consumer is not None:
            await consumer.stop()
            logger.info(f"Kafka consumer stopped: {consumer_key}")

    async def send_event(
        self,
        topic: str,
        key: str | bytes | None,
        message: dict[str, Any],
        headers: list[tuple[str, bytes]] | None = None,
    ) -> None:
        """Send an event to a Kafka topic and wait for the broker acknowledgement.

        Args:
            topic: Kafka topic name.
            key: Message key for partitioning.
            message: Message payload.
            headers: Optional record headers.
        """
        producer = await self.get_producer()

        value = json.dumps(message, default=str).encode("utf-8")
        key_bytes = key.encode("utf-8") if isinstance(key, str) else key

        await producer.send_and_wait(topic, value=value, key=key_bytes, headers=headers)
        logger.debug(f"Sent message to {topic} with key {key!r}")

    async def close(self) -> None:
        """Close all producers and consumers."""
        logger.info("Closing Kafka client")

        if self._producer:
            await self._producer.stop()
            self._producer = None
            logger.info("Kafka producer stopped")

        for consumer_key, consumer in self._consumers.items():
            await consumer.stop()
            logger.info(f"Kafka consumer stopped: {consumer_key}")

        self._consumers.clear()

    @staticmethod
    def _consumer_key(topics: list[str], group_id: str) -> str:
        return f"{group_id}:{','.join(sorted(topics))}"

    async def __aenter__(self) -> "KafkaClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()
