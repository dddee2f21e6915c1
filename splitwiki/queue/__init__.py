"""
Job queue module for SplitWiki.

Replication jobs travel from a store's trigger to each peer's worker over a
queue topic per destination store.

Backends:
- memory: single process, drops jobs identical to one still waiting
- kafka: Kafka/Redpanda via aiokafka

Invariants:
    - Jobs for one document are consumed in push order
    - Delivery is at-least-once
"""

from .base import (
    SIGNATURE_HEADER,
    JobQueue,
    QueueConnectionError,
    QueueError,
    QueueSerializationError,
    QueueTimeoutError,
    StreamPos,
    StreamRecord,
    create_job_queue,
)
from .memory import InMemoryJobQueue

__all__ = [
    "SIGNATURE_HEADER",
    "JobQueue",
    "QueueConnectionError",
    "QueueError",
    "QueueSerializationError",
    "QueueTimeoutError",
    "StreamPos",
    "StreamRecord",
    "create_job_queue",
    "InMemoryJobQueue",
]
