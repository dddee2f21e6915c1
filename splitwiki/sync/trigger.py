"""
Change propagation trigger: local mutations become replication jobs.

Attached to the local store as a MutationListener. For each committed
mutation in a namespace this store broadcasts, one job per peer is pushed to
that peer's queue topic.

Invariants:
    - Only namespaces exclusive to this store or shared built-ins broadcast
    - Writes in peers' namespaces and the foreign band never broadcast, so a
      replicated write does not echo back to its source
    - Jobs carry the document identity as seen by this store

How to change safely:
    - Adding a mutation kind means adding a hook here and a job shape the
      runner understands
"""

from __future__ import annotations

import logging

from ..config import QueueConfig
from ..ownership.identity import DocumentIdentity
from ..ownership.table import OwnershipTable
from ..queue.base import SIGNATURE_HEADER, JobQueue
from .job import ForceDelete, ReplicationJob

logger = logging.getLogger(__name__)


class ChangePropagationTrigger:
    """Turns local mutation events into replication jobs for every peer.

    Example:
        >>> trigger = ChangePropagationTrigger(table, queue, QueueConfig())
        >>> store.add_listener(trigger)
    """

    def __init__(
        self,
        ownership: OwnershipTable,
        queue: JobQueue,
        queue_config: QueueConfig | None = None,
    ) -> None:
        self.ownership = ownership
        self.queue = queue
        self.queue_config = queue_config or QueueConfig()
        self.jobs_pushed = 0

    @property
    def store_id(self) -> str:
        return self.ownership.current_store

    def broadcasts(self, identity: DocumentIdentity) -> bool:
        return self.ownership.broadcasts(identity.namespace, self.store_id)

    async def on_revision_saved(self, identity: DocumentIdentity, rev_id: int) -> None:
        await self._send(identity)

    async def on_page_deleted(self, identity: DocumentIdentity, actor: str, reason: str) -> None:
        await self._send(identity, ForceDelete(actor=actor, reason=reason))

    async def on_page_moved(
        self,
        old: DocumentIdentity,
        new: DocumentIdentity,
        actor: str,
        reason: str,
    ) -> None:
        # Peers drop the old copy and copy the full history under the new name
        await self._send(old, ForceDelete(actor=actor, reason=reason))
        await self._send(new)

    async def on_page_restored(self, identity: DocumentIdentity, actor: str, reason: str) -> None:
        # Restored revisions keep ids below the peer checkpoint; peers rebuild their copy
        await self._send(identity, ForceDelete(actor=actor, reason=reason))

    async def _send(
        self, identity: DocumentIdentity, force_delete: ForceDelete | None = None
    ) -> None:
        if not self.broadcasts(identity):
            logger.debug(
                "Namespace does not broadcast",
                extra={"store": self.store_id, "document": identity.key},
            )
            return

        for peer in self.ownership.topology.peers_of(self.store_id):
            job = ReplicationJob.for_document(self.store_id, identity, force_delete)
            topic = self.queue_config.topic_for(peer.store_id)
            pos = await self.queue.push(
                topic,
                job.partition_key,
                job.to_bytes(),
                headers={SIGNATURE_HEADER: job.signature.encode("utf-8")},
            )
            if pos is not None:
                self.jobs_pushed += 1
            logger.info(
                "Queued replication job",
                extra={
                    "job_id": job.job_id,
                    "peer": peer.store_id,
                    "document": identity.key,
                    "force_delete": force_delete is not None,
                    "duplicate": pos is None,
                },
            )
