"""
Unit tests for the change propagation trigger.

Tests cover:
- Which namespaces broadcast
- Job shapes for each mutation kind
- Topic, key and signature header of pushed jobs
"""

import pytest

from splitwiki.config import QueueConfig
from splitwiki.ownership.identity import DocumentIdentity
from splitwiki.ownership.table import OwnershipTable
from splitwiki.queue.base import SIGNATURE_HEADER
from splitwiki.queue.memory import InMemoryJobQueue
from splitwiki.sync.job import ForceDelete, ReplicationJob
from splitwiki.sync.trigger import ChangePropagationTrigger

PRIVATE_TOPIC = "splitwiki-sync.privatewiki"


class TestChangePropagationTrigger:
    """Tests for ChangePropagationTrigger on the public store."""

    @pytest.fixture
    async def queue(self):
        queue = InMemoryJobQueue()
        await queue.connect()
        yield queue
        await queue.close()

    @pytest.fixture
    def trigger(self, topology, queue):
        return ChangePropagationTrigger(OwnershipTable(topology), queue, QueueConfig())

    def jobs(self, queue):
        return [ReplicationJob.from_bytes(r.value) for r in queue.get_all_records(PRIVATE_TOPIC)]

    @pytest.mark.asyncio
    async def test_edit_in_owned_namespace(self, trigger, queue):
        await trigger.on_revision_saved(DocumentIdentity(0, "Foo"), 1)

        jobs = self.jobs(queue)
        assert len(jobs) == 1
        assert jobs[0] == ReplicationJob("publicwiki", 0, "Foo")
        assert trigger.jobs_pushed == 1

    @pytest.mark.asyncio
    async def test_record_key_and_signature(self, trigger, queue):
        await trigger.on_revision_saved(DocumentIdentity(0, "Foo"), 1)

        record = queue.get_all_records(PRIVATE_TOPIC)[0]
        job = ReplicationJob.from_bytes(record.value)
        assert record.key == "publicwiki:0:Foo"
        assert record.headers[SIGNATURE_HEADER] == job.signature.encode("utf-8")

    @pytest.mark.asyncio
    async def test_edit_in_shared_namespace(self, trigger, queue):
        """User pages carry the source's own namespace id."""
        await trigger.on_revision_saved(DocumentIdentity(2, "Alice"), 1)
        assert self.jobs(queue) == [ReplicationJob("publicwiki", 2, "Alice")]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("namespace", [3000, 3001, 110002, 110003, 4])
    async def test_non_broadcast_namespaces(self, trigger, queue, namespace):
        """Peers' namespaces and the foreign band never echo back."""
        await trigger.on_revision_saved(DocumentIdentity(namespace, "Foo"), 1)
        await trigger.on_page_deleted(DocumentIdentity(namespace, "Foo"), "Admin", "x")

        assert queue.get_record_count(PRIVATE_TOPIC) == 0
        assert trigger.jobs_pushed == 0

    @pytest.mark.asyncio
    async def test_delete(self, trigger, queue):
        await trigger.on_page_deleted(DocumentIdentity(0, "Foo"), "Admin", "spam")

        (job,) = self.jobs(queue)
        assert job.force_delete == ForceDelete("Admin", "spam")

    @pytest.mark.asyncio
    async def test_move(self, trigger, queue):
        """Move deletes the old copy and syncs the new one."""
        await trigger.on_page_moved(
            DocumentIdentity(0, "Old"), DocumentIdentity(0, "New"), "Admin", "rename"
        )

        jobs = {job.path: job for job in self.jobs(queue)}
        assert jobs["Old"].force_delete == ForceDelete("Admin", "rename")
        assert jobs["New"].force_delete is None

    @pytest.mark.asyncio
    async def test_move_out_of_broadcast_namespace(self, trigger, queue):
        await trigger.on_page_moved(
            DocumentIdentity(0, "Old"), DocumentIdentity(4, "New"), "Admin", "rename"
        )

        (job,) = self.jobs(queue)
        assert job.path == "Old"
        assert job.force_delete is not None

    @pytest.mark.asyncio
    async def test_restore(self, trigger, queue):
        """Peers rebuild a restored page from scratch."""
        await trigger.on_page_restored(DocumentIdentity(1, "Foo"), "Admin", "undo")

        (job,) = self.jobs(queue)
        assert job.identity == DocumentIdentity(1, "Foo")
        assert job.force_delete == ForceDelete("Admin", "undo")

    @pytest.mark.asyncio
    async def test_repeated_edits_collapse(self, trigger, queue):
        """Edits before the peer consumes the job yield one job."""
        for rev_id in range(1, 4):
            await trigger.on_revision_saved(DocumentIdentity(0, "Foo"), rev_id)

        assert queue.get_record_count(PRIVATE_TOPIC) == 1
        assert queue.duplicates_dropped == 2
        assert trigger.jobs_pushed == 1

    @pytest.mark.asyncio
    async def test_private_side(self, topology, queue):
        trigger = ChangePropagationTrigger(
            OwnershipTable(topology.with_current("privatewiki")), queue
        )

        await trigger.on_revision_saved(DocumentIdentity(3000, "Plan"), 1)
        await trigger.on_revision_saved(DocumentIdentity(0, "Foo"), 2)

        records = queue.get_all_records("splitwiki-sync.publicwiki")
        assert [ReplicationJob.from_bytes(r.value).path for r in records] == ["Plan"]
