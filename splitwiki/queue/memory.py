"""
In-memory job queue for tests and single-process deployments.

Besides the ordering guarantees of the production backend, this queue drops
a pushed job when an identical job (same signature header) is still waiting
to be consumed on the same topic.

Invariants:
    - All data is lost on process exit
    - Records with the same key land in the same partition, in push order
    - A signature is released as soon as its record is handed to a consumer

How to change safely:
    - Keep interface compatible with the JobQueue protocol
    - Never yield to a consumer while holding the lock; consumers push
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from collections import defaultdict
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from .base import (
    SIGNATURE_HEADER,
    QueueConnectionError,
    QueueError,
    StreamPos,
    StreamRecord,
)

logger = logging.getLogger(__name__)


@dataclass
class InMemoryPartition:
    """In-memory partition storage."""

    records: list[StreamRecord] = field(default_factory=list)
    next_offset: int = 0


class InMemoryJobQueue:
    """In-memory implementation of JobQueue.

    Example:
        >>> queue = InMemoryJobQueue()
        >>> await queue.connect()
        >>> await queue.push("splitwiki-sync.privatewiki", "0:Foo", b"{...}")
        >>> async for record in queue.subscribe("splitwiki-sync.privatewiki", "worker"):
        ...     await queue.commit(record)
    """

    def __init__(self, num_partitions: int = 4) -> None:
        """Initialize the queue.

        Args:
            num_partitions: Number of partitions per topic
        """
        self.num_partitions = num_partitions
        self._topics: dict[str, dict[int, InMemoryPartition]] = defaultdict(
            lambda: {i: InMemoryPartition() for i in range(self.num_partitions)}
        )
        # (topic, group) -> partition -> next offset to consume
        self._committed: dict[tuple[str, str], dict[int, int]] = defaultdict(
            lambda: defaultdict(int)
        )
        self._active_group: dict[str, str] = {}
        self._pending_signatures: dict[str, set[str]] = defaultdict(set)
        self._connected = False
        self._lock = asyncio.Lock()
        self._new_record_events: dict[str, asyncio.Event] = defaultdict(asyncio.Event)
        self._subscribers: set[str] = set()
        self.duplicates_dropped = 0

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryJobQueue connected")

    async def close(self) -> None:
        """Stop subscribers and clear all data."""
        self._connected = False
        self._topics.clear()
        self._committed.clear()
        self._pending_signatures.clear()
        self._subscribers.clear()
        for event in self._new_record_events.values():
            event.set()
        logger.debug("InMemoryJobQueue closed")

    async def push(
        self,
        topic: str,
        key: str,
        value: bytes,
        headers: dict[str, bytes] | None = None,
    ) -> StreamPos | None:
        """Push a record, dropping it if an identical job is still waiting.

        Returns:
            StreamPos of the record, None if it was dropped as a duplicate
        """
        if not self._connected:
            raise QueueConnectionError("Not connected")

        headers = headers or {}
        raw_signature = headers.get(SIGNATURE_HEADER)
        signature = raw_signature.decode("utf-8") if raw_signature else None
        partition = self._partition_for_key(key)

        async with self._lock:
            if signature is not None:
                if signature in self._pending_signatures[topic]:
                    self.duplicates_dropped += 1
                    logger.debug(
                        "Dropped duplicate job",
                        extra={"topic": topic, "key": key, "signature": signature},
                    )
                    return None
                self._pending_signatures[topic].add(signature)

            part = self._topics[topic][partition]
            offset = part.next_offset
            pos = StreamPos(
                topic=topic,
                partition=partition,
                offset=offset,
                timestamp_ms=int(time.time() * 1000),
            )
            part.records.append(StreamRecord(key=key, value=value, position=pos, headers=headers))
            part.next_offset += 1

            self._new_record_events[topic].set()

        logger.debug(
            "Job pushed to in-memory queue",
            extra={"topic": topic, "key": key, "partition": partition, "offset": offset},
        )
        return pos

    async def subscribe(self, topic: str, group_id: str) -> AsyncIterator[StreamRecord]:
        """Consume a topic from the group's committed positions.

        Yields:
            StreamRecord for each job, partitions visited round-robin
        """
        if not self._connected:
            raise QueueConnectionError("Not connected")

        consumer_key = f"{topic}:{group_id}"
        self._subscribers.add(consumer_key)
        self._active_group[topic] = group_id

        committed = self._committed[(topic, group_id)]
        positions = {p: committed[p] for p in range(self.num_partitions)}

        try:
            while consumer_key in self._subscribers:
                event = self._new_record_events[topic]
                event.clear()

                batch: list[StreamRecord] = []
                async with self._lock:
                    for partition, part in self._topics[topic].items():
                        if positions[partition] < len(part.records):
                            record = part.records[positions[partition]]
                            positions[partition] += 1
                            if record.signature:
                                self._pending_signatures[topic].discard(record.signature)
                            batch.append(record)

                for record in batch:
                    yield record

                if not batch:
                    try:
                        await asyncio.wait_for(event.wait(), timeout=1.0)
                    except asyncio.TimeoutError:
                        pass
        finally:
            self._subscribers.discard(consumer_key)

    def unsubscribe(self, topic: str, group_id: str) -> None:
        """End a subscription after its current record."""
        self._subscribers.discard(f"{topic}:{group_id}")
        self._new_record_events[topic].set()

    async def commit(self, record: StreamRecord) -> None:
        """Commit a consumed record for the group consuming its topic."""
        topic = record.position.topic
        group_id = self._active_group.get(topic)
        if group_id is None:
            raise QueueError(f"No active consumer for topic {topic}")
        committed = self._committed[(topic, group_id)]
        committed[record.position.partition] = max(
            committed[record.position.partition], record.position.offset + 1
        )

    def _partition_for_key(self, key: str) -> int:
        """Get partition number for a key using consistent hashing."""
        hash_bytes = hashlib.md5(key.encode("utf-8")).digest()
        return int.from_bytes(hash_bytes[:4], "big") % self.num_partitions

    # Testing helpers

    def get_all_records(self, topic: str) -> list[StreamRecord]:
        """All records of a topic, partition by partition."""
        records: list[StreamRecord] = []
        if topic in self._topics:
            for partition in sorted(self._topics[topic]):
                records.extend(self._topics[topic][partition].records)
        return records

    async def drain(self, topic: str, group_id: str) -> list[StreamRecord]:
        """Records a group has not committed yet, without waiting (testing helper).

        Claims the records like subscribe() does, so their signatures are
        released and the group becomes the topic's committing consumer.
        """
        self._active_group[topic] = group_id
        committed = self._committed[(topic, group_id)]
        records: list[StreamRecord] = []
        async with self._lock:
            for partition in sorted(self._topics[topic]):
                records.extend(self._topics[topic][partition].records[committed[partition] :])
            for record in records:
                if record.signature:
                    self._pending_signatures[topic].discard(record.signature)
        return records

    def get_record_count(self, topic: str) -> int:
        if topic not in self._topics:
            return 0
        return sum(len(part.records) for part in self._topics[topic].values())

    def get_committed_count(self, topic: str, group_id: str) -> int:
        """Number of records of a topic committed by a group."""
        return sum(self._committed[(topic, group_id)].values())

    def clear_topic(self, topic: str) -> None:
        if topic in self._topics:
            for part in self._topics[topic].values():
                part.records.clear()
                part.next_offset = 0
        self._pending_signatures.pop(topic, None)

    async def wait_for_records(self, topic: str, count: int, timeout: float = 5.0) -> bool:
        """Wait until a topic holds at least count records.

        Returns:
            True if count reached, False on timeout
        """
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if self.get_record_count(topic) >= count:
                return True
            await asyncio.sleep(0.05)
        return False

    async def wait_for_commits(
        self, topic: str, group_id: str, count: int, timeout: float = 5.0
    ) -> bool:
        """Wait until a group has committed at least count records of a topic."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if self.get_committed_count(topic, group_id) >= count:
                return True
            await asyncio.sleep(0.05)
        return False
