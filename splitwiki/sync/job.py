"""
Replication job: copy a document's new revisions from a peer store.

A job names a document by its identity on the source store. The runner on
the destination store translates it to the local identity, optionally
deletes the local copy first (when there is one), then pulls every source
revision newer than the local checkpoint and replays it locally.

State machine:

    PENDING -> RESOLVING -> FETCHING -> APPLYING -> DONE
    RESOLVING -> DELETING -> FETCHING (force delete)
    RESOLVING -> REJECTED (ownership mismatch, nothing written)
    any non-terminal state -> FAILED

Invariants:
    - A rejected job never writes to the local store
    - Checkpoint read, revision writes, link rows and timestamp fix-ups of
      one batch share a single transaction: a batch lands whole or not at all
    - Revisions are applied in ascending source revision order
    - Running a plain job twice applies nothing the second time
    - A forced delete that finds no local copy skips the delete and still syncs

How to change safely:
    - Keep the wire format backward compatible; workers of different
      versions may share a topic
    - Never apply outside the unit of work opened for the batch
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..config import RcVisibility, SyncConfig
from ..errors import (
    IdentityResolutionFailure,
    InvariantViolation,
    RejectedJob,
    SplitWikiError,
    TransientStoreFailure,
)
from ..links.link_store import ForeignRevisionLinkStore
from ..ownership.identity import DocumentIdentity
from ..ownership.table import OwnershipTable, is_foreign_namespace_id
from ..store.base import DocumentStore, EditFlags
from ..store.sqlite_store import SqliteDocumentStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ForceDelete:
    """Delete the local copy before syncing, attributed to actor."""

    actor: str
    reason: str


@dataclass(frozen=True)
class ReplicationJob:
    """A request to bring one document up to date from its source store.

    Attributes:
        source_store: Store the change happened on
        namespace: Namespace id on the source store
        path: Canonical path
        force_delete: Delete the local copy first
        job_id: Unique id of this job instance
        created_at_ms: Creation time (Unix ms)
    """

    source_store: str
    namespace: int
    path: str
    force_delete: ForceDelete | None = None
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex, compare=False)
    created_at_ms: int = field(default_factory=lambda: int(time.time() * 1000), compare=False)

    def __post_init__(self) -> None:
        if not self.source_store:
            raise InvariantViolation("Job has no source store")
        # Validates namespace type and path form
        DocumentIdentity(namespace=self.namespace, path=self.path)

    @classmethod
    def for_document(
        cls,
        source_store: str,
        identity: DocumentIdentity,
        force_delete: ForceDelete | None = None,
    ) -> ReplicationJob:
        return cls(
            source_store=source_store,
            namespace=identity.namespace,
            path=identity.path,
            force_delete=force_delete,
        )

    @property
    def identity(self) -> DocumentIdentity:
        """Document identity on the source store."""
        return DocumentIdentity(namespace=self.namespace, path=self.path)

    @property
    def partition_key(self) -> str:
        """Queue key; jobs for the same document stay ordered."""
        return f"{self.source_store}:{self.identity.key}"

    @property
    def signature(self) -> str:
        """Hash of the job parameters, identical for duplicate jobs."""
        params: dict[str, Any] = {
            "source_store": self.source_store,
            "namespace": self.namespace,
            "path": self.path,
        }
        if self.force_delete:
            params["force_delete"] = [self.force_delete.actor, self.force_delete.reason]
        canonical = json.dumps(params, sort_keys=True, separators=(",", ":"))
        return hashlib.sha1(canonical.encode("utf-8")).hexdigest()

    def follow_up(self) -> ReplicationJob:
        """Plain sync job for the same document."""
        return ReplicationJob(
            source_store=self.source_store, namespace=self.namespace, path=self.path
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "job_id": self.job_id,
            "source_store": self.source_store,
            "namespace": self.namespace,
            "path": self.path,
            "created_at_ms": self.created_at_ms,
        }
        if self.force_delete:
            data["force_delete"] = {
                "actor": self.force_delete.actor,
                "reason": self.force_delete.reason,
            }
        return data

    @classmethod
    def from_dict(cls, data: Any) -> ReplicationJob:
        """Create from dictionary representation.

        Raises:
            InvariantViolation: If required fields are missing or malformed
        """
        if not isinstance(data, dict):
            raise InvariantViolation(f"Job payload must be an object, got {type(data).__name__}")
        missing = [f for f in ("source_store", "namespace", "path") if f not in data]
        if missing:
            raise InvariantViolation(f"Missing required fields: {missing}")

        force_delete = None
        raw_delete = data.get("force_delete")
        if raw_delete is not None:
            if not isinstance(raw_delete, dict) or "actor" not in raw_delete:
                raise InvariantViolation("force_delete must carry an actor")
            force_delete = ForceDelete(
                actor=str(raw_delete["actor"]), reason=str(raw_delete.get("reason", ""))
            )

        extra: dict[str, Any] = {}
        if "job_id" in data:
            extra["job_id"] = str(data["job_id"])
        if "created_at_ms" in data:
            extra["created_at_ms"] = int(data["created_at_ms"])

        return cls(
            source_store=str(data["source_store"]),
            namespace=data["namespace"],
            path=data["path"],
            force_delete=force_delete,
            **extra,
        )

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict()).encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: bytes) -> ReplicationJob:
        """Decode a queue payload.

        Raises:
            InvariantViolation: If the payload is not a valid job
        """
        try:
            data = json.loads(raw.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise InvariantViolation(f"Job payload is not valid JSON: {e}") from e
        return cls.from_dict(data)

    def __str__(self) -> str:
        suffix = " (force delete)" if self.force_delete else ""
        return f"ReplicationJob({self.source_store}/{self.identity}{suffix})"


class JobState(Enum):
    PENDING = "pending"
    RESOLVING = "resolving"
    DELETING = "deleting"
    FETCHING = "fetching"
    APPLYING = "applying"
    DONE = "done"
    REJECTED = "rejected"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.DONE, JobState.REJECTED, JobState.FAILED)


_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.PENDING: frozenset({JobState.RESOLVING, JobState.FAILED}),
    JobState.RESOLVING: frozenset(
        {JobState.DELETING, JobState.FETCHING, JobState.REJECTED, JobState.FAILED}
    ),
    JobState.DELETING: frozenset({JobState.FETCHING, JobState.FAILED}),
    JobState.FETCHING: frozenset({JobState.APPLYING, JobState.DONE, JobState.FAILED}),
    JobState.APPLYING: frozenset({JobState.DONE, JobState.FAILED}),
}


@dataclass
class JobResult:
    """Outcome of running a replication job.

    Attributes:
        job: The job
        state: Terminal state (DONE, REJECTED or FAILED)
        local_identity: Document identity on this store, once resolved
        deleted: Whether the local copy was deleted
        applied: Number of revisions written
        more_remaining: The batch hit the fetch limit; the source has more
        error: Error message for REJECTED and FAILED
        error_code: Error code for REJECTED and FAILED
    """

    job: ReplicationJob
    state: JobState = JobState.PENDING
    local_identity: DocumentIdentity | None = None
    deleted: bool = False
    applied: int = 0
    more_remaining: bool = False
    error: str | None = None
    error_code: str | None = None

    def transition(self, state: JobState) -> None:
        if state not in _TRANSITIONS.get(self.state, frozenset()):
            raise InvariantViolation(f"Illegal job transition {self.state.value} -> {state.value}")
        logger.debug(
            "Job state change",
            extra={"job_id": self.job.job_id, "from": self.state.value, "to": state.value},
        )
        self.state = state

    @property
    def success(self) -> bool:
        return self.state == JobState.DONE


class ReplicationJobRunner:
    """Runs replication jobs against the local store.

    Example:
        >>> runner = ReplicationJobRunner(local, {"publicwiki": public}, links, table, SyncConfig())
        >>> result = await runner.run(ReplicationJob("publicwiki", 0, "Foo"))
        >>> result.state, result.applied
        (<JobState.DONE: 'done'>, 3)
    """

    def __init__(
        self,
        local_store: SqliteDocumentStore,
        source_stores: Mapping[str, DocumentStore],
        links: ForeignRevisionLinkStore,
        ownership: OwnershipTable,
        sync_config: SyncConfig | None = None,
    ) -> None:
        self.local_store = local_store
        self.source_stores = source_stores
        self.links = links
        self.ownership = ownership
        self.sync_config = sync_config or SyncConfig()

    @property
    def store_id(self) -> str:
        return self.local_store.store_id

    def _rc_flags(self) -> EditFlags:
        visibility = self.sync_config.rc_visibility
        if visibility == RcVisibility.HIDDEN:
            return EditFlags.SUPPRESS_RC
        if visibility == RcVisibility.BOT:
            return EditFlags.FORCE_BOT
        return EditFlags.NONE

    async def run(self, job: ReplicationJob) -> JobResult:
        """Run a job to a terminal state.

        Errors from the SplitWikiError family end the job in REJECTED or
        FAILED; anything else propagates.
        """
        result = JobResult(job=job)
        try:
            result.transition(JobState.RESOLVING)
            local_identity = self.resolve(job)
            result.local_identity = local_identity

            if job.force_delete is not None:
                result.transition(JobState.DELETING)
                result.deleted = await self._delete(job.force_delete, local_identity)

            result.transition(JobState.FETCHING)
            await self._sync(job, local_identity, result)
            result.transition(JobState.DONE)

        except RejectedJob as e:
            result.transition(JobState.REJECTED)
            result.error = e.message
            result.error_code = e.code
            logger.info(
                "Rejected replication job",
                extra={"job_id": job.job_id, "source": job.source_store, "reason": e.message},
            )
            return result
        except SplitWikiError as e:
            # The batch transaction rolled back
            result.state = JobState.FAILED
            result.applied = 0
            result.more_remaining = False
            result.error = e.message
            result.error_code = e.code
            logger.error(
                f"Replication job failed: {e.message}",
                extra={
                    "job_id": job.job_id,
                    "source": job.source_store,
                    "document": job.identity.key,
                    "error_code": e.code,
                },
            )
            return result

        logger.info(
            "Replication job done",
            extra={
                "job_id": job.job_id,
                "source": job.source_store,
                "document": job.identity.key,
                "deleted": result.deleted,
                "applied": result.applied,
                "more_remaining": result.more_remaining,
            },
        )
        return result

    def resolve(self, job: ReplicationJob) -> DocumentIdentity:
        """Translate the source identity to the local one, enforcing ownership.

        Raises:
            RejectedJob: If the source store does not own the namespace
        """
        current = self.ownership.current_store
        if job.source_store == current:
            raise RejectedJob(f"Job originates from this store ({current})")
        if job.source_store not in {s.store_id for s in self.ownership.topology.stores}:
            raise RejectedJob(f"Unknown source store: {job.source_store}")

        source_ns = job.namespace
        local_ns = self.ownership.translate_from(job.source_store, source_ns)

        if self.ownership.is_exclusive_to(local_ns, current):
            raise RejectedJob(
                f"Namespace {local_ns} is owned by {current}",
                details={"namespace": local_ns},
            )

        owned_by_source = self.ownership.is_exclusive_to(source_ns, job.source_store)
        mirrored = self.ownership.is_shared(source_ns) and is_foreign_namespace_id(local_ns)
        if not (owned_by_source or mirrored):
            raise RejectedJob(
                f"Namespace {source_ns} is not replicated from {job.source_store}",
                details={"namespace": source_ns},
            )

        return DocumentIdentity(namespace=local_ns, path=job.path)

    async def _delete(self, force_delete: ForceDelete, local_identity: DocumentIdentity) -> bool:
        """Delete the local copy.

        Returns:
            False if there was no local copy to delete
        """
        page = await self.local_store.get_page(local_identity)
        if page is None:
            logger.info(
                "No local copy to delete",
                extra={"store": self.store_id, "document": local_identity.key},
            )
            return False

        actor = await self.local_store.resolve_actor(force_delete.actor)
        if actor is None:
            raise IdentityResolutionFailure(f"Cannot resolve deleting user {force_delete.actor!r}")

        outcome = await self.local_store.delete_page(
            local_identity,
            actor,
            force_delete.reason,
            flags=EditFlags.INTERNAL | self._rc_flags(),
            tags=(self.sync_config.auto_sync_tag,),
        )
        if not outcome.ok:
            raise TransientStoreFailure(
                f"Deleting {local_identity} failed: {outcome.error}",
                details={"document": local_identity.key},
            )
        return True

    async def _sync(
        self, job: ReplicationJob, local_identity: DocumentIdentity, result: JobResult
    ) -> None:
        """Fetch revisions past the checkpoint and apply them in one transaction."""
        source = self.source_stores.get(job.source_store)
        if source is None:
            raise TransientStoreFailure(f"No connection to source store {job.source_store}")

        batch_size = self.sync_config.fetch_batch_size
        tags = (self.sync_config.auto_sync_tag,)

        async with self.local_store.unit_of_work() as uow:
            page = await self.local_store.get_page(local_identity, uow)
            checkpoint = self.links.most_recent_linked(
                page.page_id if page else 0, uow.conn, source_store=job.source_store
            )

            source_page_id = await source.page_id_for(job.identity)
            if not source_page_id:
                logger.debug(
                    "Source page does not exist",
                    extra={"source": job.source_store, "document": job.identity.key},
                )
                return

            revisions = await source.fetch_revisions_since(source_page_id, checkpoint, batch_size)
            if not revisions:
                return

            result.transition(JobState.APPLYING)
            for revision in revisions:
                actor = await self.local_store.resolve_actor(revision.author)
                if actor is None:
                    raise IdentityResolutionFailure(
                        f"Cannot resolve author {revision.author!r} of revision {revision.seq}"
                    )
                content = self.local_store.make_content(
                    revision.text, revision.content_model, revision.content_format
                )

                flags = EditFlags.INTERNAL | self._rc_flags()
                if revision.minor:
                    flags |= EditFlags.MINOR

                rev_id = await self.local_store.save_revision(
                    local_identity, content, actor, revision.comment, flags, tags, uow=uow
                )
                if not rev_id:
                    raise InvariantViolation(f"Saving revision {revision.seq} returned no id")

                self.links.record(rev_id, job.source_store, revision.seq, uow.conn)
                await self.local_store.set_revision_timestamp(rev_id, revision.timestamp, uow)

            result.applied = len(revisions)
            result.more_remaining = len(revisions) >= batch_size
