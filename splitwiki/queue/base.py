"""
Base protocol and types for the replication job queue.

Each store consumes one topic, "<prefix>.<store_id>", carrying replication
jobs produced by its peers' triggers.

Invariants:
    - StreamPos uniquely identifies a position in a topic
    - Records with the same key are delivered in order
    - Delivery is at-least-once; consumers must be idempotent

How to change safely:
    - Protocol changes require updating all implementations
    - Keep payloads JSON so jobs stay readable from operator tooling
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import ServerConfig

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "signature"


class QueueError(Exception):
    """Base exception for queue operations."""

    pass


class QueueConnectionError(QueueError):
    """Connection to the queue backend failed."""

    pass


class QueueTimeoutError(QueueError):
    """Queue operation timed out."""

    pass


class QueueSerializationError(QueueError):
    """Failed to serialize/deserialize a queue record."""

    pass


@dataclass(frozen=True)
class StreamPos:
    """Position of a record in a topic.

    Attributes:
        topic: Topic name
        partition: Partition number
        offset: Offset within the partition
        timestamp_ms: When the record was written (milliseconds)
    """

    topic: str
    partition: int
    offset: int
    timestamp_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "partition": self.partition,
            "offset": self.offset,
            "timestamp_ms": self.timestamp_ms,
        }

    def __str__(self) -> str:
        return f"{self.topic}:{self.partition}:{self.offset}"


@dataclass
class StreamRecord:
    """A record consumed from a topic.

    Attributes:
        key: Partition key (document key of the job)
        value: JSON-encoded job
        position: Position in the topic
        headers: Record headers (the job signature among them)
    """

    key: str
    value: bytes
    position: StreamPos
    headers: dict[str, bytes] = field(default_factory=dict)

    @property
    def signature(self) -> str | None:
        raw = self.headers.get(SIGNATURE_HEADER)
        return raw.decode("utf-8") if raw else None

    def __str__(self) -> str:
        return f"StreamRecord(key={self.key}, pos={self.position})"


@runtime_checkable
class JobQueue(Protocol):
    """Protocol for job queue backends.

    Durability contract:
        push() returns only after the backend acknowledged the record.

    Ordering contract:
        Records with the same key are consumed in push order.
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the backend.

        Raises:
            QueueConnectionError: If connection fails
        """
        ...

    @abstractmethod
    async def close(self) -> None: ...

    @abstractmethod
    async def push(
        self,
        topic: str,
        key: str,
        value: bytes,
        headers: dict[str, bytes] | None = None,
    ) -> StreamPos | None:
        """Push a record.

        Returns:
            Position of the record, or None if the backend dropped it as a
            duplicate of a record not yet consumed
        """
        ...

    @abstractmethod
    def subscribe(self, topic: str, group_id: str) -> AsyncIterator[StreamRecord]:
        """Consume records in order. The caller commits each one."""
        ...

    @abstractmethod
    async def commit(self, record: StreamRecord) -> None:
        """Acknowledge a consumed record."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool: ...


def create_job_queue(config: ServerConfig) -> JobQueue:
    """Create the job queue selected by configuration.

    Raises:
        ValueError: If the backend is not supported
    """
    from ..config import QueueBackend
    from .kafka import KafkaJobQueue
    from .memory import InMemoryJobQueue

    if config.queue.backend == QueueBackend.KAFKA:
        return KafkaJobQueue(config.kafka)
    elif config.queue.backend == QueueBackend.MEMORY:
        return InMemoryJobQueue()
    else:
        raise ValueError(f"Unsupported queue backend: {config.queue.backend}")
