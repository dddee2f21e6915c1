"""
Kafka/Redpanda job queue.

Invariants:
    - Producer uses acks=all and the idempotent producer by default
    - Consumer commits manually, after the job has been handled
    - Records are keyed by document so jobs for one document stay ordered

How to change safely:
    - Test with an actual Kafka/Redpanda cluster before deploying
    - Jobs are delivered at least once; never rely on exactly-once
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from typing import Any

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.errors import KafkaConnectionError, KafkaError, KafkaTimeoutError
from aiokafka.structs import OffsetAndMetadata, TopicPartition

from ..config import KafkaConfig
from .base import (
    QueueConnectionError,
    QueueError,
    QueueSerializationError,
    QueueTimeoutError,
    StreamPos,
    StreamRecord,
)

logger = logging.getLogger(__name__)


class KafkaJobQueue:
    """Kafka implementation of JobQueue using aiokafka.

    Kafka has no notion of "job still waiting", so duplicates are not
    dropped here; replication jobs are idempotent and a duplicate is a no-op.

    Example:
        >>> queue = KafkaJobQueue(KafkaConfig(brokers="localhost:9092"))
        >>> await queue.connect()
        >>> await queue.push("splitwiki-sync.privatewiki", "0:Foo", payload)
    """

    def __init__(self, config: KafkaConfig) -> None:
        self.config = config
        self._producer: AIOKafkaProducer | None = None
        self._consumer: AIOKafkaConsumer | None = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected and self._producer is not None

    def _security_settings(self) -> dict[str, Any]:
        settings: dict[str, Any] = {}
        if self.config.security_protocol != "PLAINTEXT":
            settings["security_protocol"] = self.config.security_protocol
        if self.config.sasl_mechanism:
            settings["sasl_mechanism"] = self.config.sasl_mechanism
            settings["sasl_plain_username"] = self.config.sasl_username
            settings["sasl_plain_password"] = self.config.sasl_password
        if self.config.ssl_cafile:
            settings["ssl_cafile"] = self.config.ssl_cafile
        return settings

    async def connect(self) -> None:
        """Start the producer.

        Raises:
            QueueConnectionError: If connection fails
        """
        if self._connected:
            return

        try:
            self._producer = AIOKafkaProducer(
                bootstrap_servers=self.config.brokers,
                acks=self.config.acks,
                enable_idempotence=self.config.enable_idempotence,
                linger_ms=5,
                request_timeout_ms=30000,
                retry_backoff_ms=100,
                **self._security_settings(),
            )
            await self._producer.start()
            self._connected = True
            logger.info(
                "Connected to Kafka",
                extra={
                    "brokers": self.config.brokers,
                    "acks": self.config.acks,
                    "idempotent": self.config.enable_idempotence,
                },
            )
        except KafkaError as e:
            self._connected = False
            raise QueueConnectionError(f"Failed to connect to Kafka: {e}") from e

    async def close(self) -> None:
        """Stop consumer and producer, flushing pending writes."""
        if self._consumer:
            try:
                await self._consumer.stop()
            except KafkaError as e:
                logger.warning(f"Error closing consumer: {e}")
            self._consumer = None

        if self._producer:
            try:
                await self._producer.stop()
            except KafkaError as e:
                logger.warning(f"Error closing producer: {e}")
            self._producer = None

        self._connected = False
        logger.info("Kafka connections closed")

    async def push(
        self,
        topic: str,
        key: str,
        value: bytes,
        headers: dict[str, bytes] | None = None,
    ) -> StreamPos:
        """Send a record and wait for the broker acknowledgment.

        Raises:
            QueueConnectionError: If not connected
            QueueTimeoutError: If the send times out
            QueueError: For other Kafka errors
        """
        if not self._producer:
            raise QueueConnectionError("Not connected to Kafka")

        try:
            metadata = await self._producer.send_and_wait(
                topic,
                value=value,
                key=key.encode("utf-8"),
                headers=list(headers.items()) if headers else None,
            )
        except KafkaTimeoutError as e:
            raise QueueTimeoutError(f"Kafka send timed out: {e}") from e
        except KafkaConnectionError as e:
            self._connected = False
            raise QueueConnectionError(f"Kafka connection lost: {e}") from e
        except KafkaError as e:
            raise QueueError(f"Kafka send failed: {e}") from e

        pos = StreamPos(
            topic=metadata.topic,
            partition=metadata.partition,
            offset=metadata.offset,
            timestamp_ms=metadata.timestamp or int(time.time() * 1000),
        )
        logger.debug(
            "Job pushed to Kafka",
            extra={"topic": topic, "key": key, "partition": pos.partition, "offset": pos.offset},
        )
        return pos

    async def subscribe(self, topic: str, group_id: str) -> AsyncIterator[StreamRecord]:
        """Consume a topic as a member of the consumer group.

        Raises:
            QueueConnectionError: If subscription fails
            QueueSerializationError: If a record key is not UTF-8
        """
        try:
            if self._consumer:
                await self._consumer.stop()

            self._consumer = AIOKafkaConsumer(
                topic,
                bootstrap_servers=self.config.brokers,
                group_id=group_id,
                auto_offset_reset=self.config.auto_offset_reset,
                enable_auto_commit=False,
                max_poll_records=100,
                session_timeout_ms=30000,
                heartbeat_interval_ms=10000,
                **self._security_settings(),
            )
            await self._consumer.start()
            logger.info("Subscribed to Kafka topic", extra={"topic": topic, "group_id": group_id})

            async for msg in self._consumer:
                try:
                    key = msg.key.decode("utf-8") if msg.key else ""
                except UnicodeDecodeError as e:
                    raise QueueSerializationError(
                        f"Undecodable key at {msg.topic}:{msg.partition}:{msg.offset}"
                    ) from e
                yield StreamRecord(
                    key=key,
                    value=msg.value,
                    position=StreamPos(
                        topic=msg.topic,
                        partition=msg.partition,
                        offset=msg.offset,
                        timestamp_ms=msg.timestamp or int(time.time() * 1000),
                    ),
                    headers=dict(msg.headers) if msg.headers else {},
                )

        except KafkaConnectionError as e:
            raise QueueConnectionError(f"Failed to subscribe: {e}") from e
        except KafkaError as e:
            raise QueueError(f"Consumer error: {e}") from e

    async def commit(self, record: StreamRecord) -> None:
        """Commit the offset after a handled record.

        Raises:
            QueueError: If commit fails
        """
        if not self._consumer:
            raise QueueError("No active consumer to commit")

        tp = TopicPartition(record.position.topic, record.position.partition)
        try:
            await self._consumer.commit({tp: OffsetAndMetadata(record.position.offset + 1, "")})
        except KafkaError as e:
            raise QueueError(f"Failed to commit: {e}") from e

        logger.debug(
            "Committed offset",
            extra={
                "topic": record.position.topic,
                "partition": record.position.partition,
                "offset": record.position.offset,
            },
        )
