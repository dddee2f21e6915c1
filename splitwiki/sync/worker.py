"""
Replication worker: consumes this store's job topic and runs each job.

Invariants:
    - Jobs are processed one at a time, in topic order
    - A record is committed only after its job reached a terminal state
    - Failed jobs are recorded in sync_failures and do not block the topic
    - A follow-up job is pushed after the record of a truncated batch is
      committed

How to change safely:
    - Keep job handling separate from the consumption loop (handle_record)
      so it stays testable without a queue
    - Monitor failure rows in production; nothing retries automatically
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from ..config import QueueConfig
from ..errors import InvariantViolation
from ..queue.base import SIGNATURE_HEADER, JobQueue, StreamPos, StreamRecord
from .failures import FailedJobLog
from .job import JobResult, JobState, ReplicationJob, ReplicationJobRunner

logger = logging.getLogger(__name__)


class ReplicationWorker:
    """Consumes replication jobs addressed to the local store.

    Thread safety:
        Designed to run as a single task per store.

    Example:
        >>> worker = ReplicationWorker(queue, runner, failures, QueueConfig())
        >>> task = asyncio.create_task(worker.start())
        >>> await worker.stop()
    """

    def __init__(
        self,
        queue: JobQueue,
        runner: ReplicationJobRunner,
        failures: FailedJobLog,
        queue_config: QueueConfig | None = None,
    ) -> None:
        self.queue = queue
        self.runner = runner
        self.failures = failures
        self.queue_config = queue_config or QueueConfig()

        self._running = False
        self._processed_count = 0
        self._rejected_count = 0
        self._error_count = 0
        self._applied_revisions = 0
        self._follow_ups = 0
        self._last_position: StreamPos | None = None

    @property
    def topic(self) -> str:
        return self.queue_config.topic_for(self.runner.store_id)

    @property
    def group_id(self) -> str:
        return self.queue_config.consumer_group

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Run the consumption loop until stop() is called."""
        if self._running:
            logger.warning("Replication worker already running")
            return

        self._running = True
        logger.info("Starting replication worker", extra={"topic": self.topic, "group_id": self.group_id})

        try:
            async for record in self.queue.subscribe(self.topic, self.group_id):
                if not self._running:
                    break

                await self.process_record(record)

        except asyncio.CancelledError:
            logger.info("Replication worker cancelled")
        except Exception as e:
            logger.error(f"Replication worker error: {e}", exc_info=True)
            raise
        finally:
            self._running = False

    async def stop(self) -> None:
        """Stop after the job in progress."""
        self._running = False
        logger.info("Stopping replication worker")

    async def process_record(self, record: StreamRecord) -> JobResult | None:
        """Handle a record, commit it, then queue a follow-up for a truncated batch."""
        result = await self.handle_record(record)

        await self.queue.commit(record)
        self._last_position = record.position

        if result is not None and result.more_remaining:
            await self.enqueue(result.job.follow_up())
            self._follow_ups += 1
        return result

    async def handle_record(self, record: StreamRecord) -> JobResult | None:
        """Decode and run one queued job.

        Returns:
            JobResult, or None if the payload could not be decoded
        """
        try:
            job = ReplicationJob.from_bytes(record.value)
        except InvariantViolation as e:
            self._error_count += 1
            logger.error(
                f"Undecodable replication job: {e.message}",
                extra={"position": str(record.position)},
            )
            await self.failures.record(record.value, e.code, e.message)
            return None

        try:
            result = await self.runner.run(job)
        except Exception as e:
            self._error_count += 1
            logger.error(
                f"Unexpected error running replication job: {e}",
                exc_info=True,
                extra={"job_id": job.job_id, "position": str(record.position)},
            )
            await self.failures.record(record.value, "UNEXPECTED_ERROR", str(e), job_id=job.job_id)
            return JobResult(job=job, state=JobState.FAILED, error=str(e))

        if result.state == JobState.DONE:
            self._processed_count += 1
            self._applied_revisions += result.applied
        elif result.state == JobState.REJECTED:
            self._rejected_count += 1
        else:
            self._error_count += 1
            await self.failures.record(
                record.value,
                result.error_code or "UNKNOWN",
                result.error or "",
                job_id=job.job_id,
            )
        return result

    async def enqueue(self, job: ReplicationJob) -> StreamPos | None:
        """Push a job onto this store's own topic."""
        return await self.queue.push(
            self.topic,
            job.partition_key,
            job.to_bytes(),
            headers={SIGNATURE_HEADER: job.signature.encode("utf-8")},
        )

    def get_stats(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "processed_count": self._processed_count,
            "rejected_count": self._rejected_count,
            "error_count": self._error_count,
            "applied_revisions": self._applied_revisions,
            "follow_ups": self._follow_ups,
            "last_position": str(self._last_position) if self._last_position else None,
        }
