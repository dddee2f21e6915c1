"""
Integration tests for the replication worker.

Tests cover:
- The consumption loop against the in-memory queue
- Commits and failure records
- Undecodable and unexpected failures
"""

import asyncio

import pytest

from splitwiki.config import SyncConfig
from splitwiki.ownership.identity import DocumentIdentity
from splitwiki.queue.base import StreamPos, StreamRecord
from splitwiki.store.base import DeleteResult, EditFlags
from splitwiki.sync.job import JobState, ReplicationJob

FOO = DocumentIdentity(0, "Foo")


def raw_record(value, topic="splitwiki-sync.privatewiki"):
    return StreamRecord(
        key="garbage",
        value=value,
        position=StreamPos(topic=topic, partition=0, offset=0, timestamp_ms=0),
    )


async def edit(store, identity, text):
    actor = await store.register_actor("Alice")
    return await store.save_revision(
        identity, store.make_content(text, "wikitext", None), actor, ""
    )


class TestReplicationWorker:
    """Tests for ReplicationWorker."""

    @pytest.fixture
    def worker(self, cluster):
        return cluster.workers["privatewiki"]

    @pytest.mark.asyncio
    async def test_topic_and_group(self, worker):
        assert worker.topic == "splitwiki-sync.privatewiki"
        assert worker.group_id == "splitwiki-worker"

    @pytest.mark.asyncio
    async def test_consumption_loop(self, cluster, worker):
        """A running worker applies jobs and commits them."""
        task = asyncio.create_task(worker.start())
        try:
            await edit(cluster.public, FOO, "hello")

            assert await cluster.queue.wait_for_commits(worker.topic, worker.group_id, 1)
            assert (await cluster.private.latest_revision(FOO)).text == "hello"
            assert worker.get_stats()["processed_count"] == 1
            assert worker.get_stats()["applied_revisions"] == 1
            assert worker.is_running
        finally:
            await worker.stop()
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        assert not worker.is_running

    @pytest.mark.asyncio
    async def test_loop_handles_follow_ups(self, make_cluster):
        cluster = await make_cluster(SyncConfig(fetch_batch_size=1))
        worker = cluster.workers["privatewiki"]
        for i in range(3):
            await edit(cluster.public, FOO, f"rev {i}")

        task = asyncio.create_task(worker.start())
        try:
            # One job plus three follow-ups, the last one finding nothing
            assert await cluster.queue.wait_for_commits(worker.topic, worker.group_id, 4)
        finally:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        assert len(await cluster.private.get_revisions(FOO)) == 3

    @pytest.mark.asyncio
    async def test_failed_job_is_committed_and_recorded(self, cluster, worker, monkeypatch):
        """A failed job does not block the topic."""
        await edit(cluster.public, FOO, "one")
        await cluster.drain("privatewiki")

        async def refuse_delete(identity, actor, reason, flags=EditFlags.NONE, tags=()):
            return DeleteResult(ok=False, error="page is locked")

        monkeypatch.setattr(cluster.private, "delete_page", refuse_delete)
        job = ReplicationJob.from_dict(
            {
                "source_store": "publicwiki",
                "namespace": 0,
                "path": "Foo",
                "force_delete": {"actor": "Admin", "reason": "spam"},
            }
        )
        await worker.enqueue(job)
        await edit(cluster.public, DocumentIdentity(0, "Bar"), "other")

        results = await cluster.drain("privatewiki")

        assert sorted(r.state.value for r in results) == ["done", "failed"]
        assert cluster.queue.get_committed_count(worker.topic, worker.group_id) == 3
        (failure,) = await cluster.failures["privatewiki"].entries()
        assert failure.job_id == job.job_id
        assert worker.get_stats()["error_count"] == 1

    @pytest.mark.asyncio
    async def test_undecodable_record(self, cluster, worker):
        result = await worker.handle_record(raw_record(b"{not json"))

        assert result is None
        (failure,) = await cluster.failures["privatewiki"].entries()
        assert failure.payload == b"{not json"
        assert failure.error_code == "INVARIANT_VIOLATION"
        assert failure.job_id is None

    @pytest.mark.asyncio
    async def test_rejected_job_not_recorded(self, cluster, worker):
        job = ReplicationJob("publicwiki", 3000, "Plan")

        result = await worker.handle_record(raw_record(job.to_bytes()))

        assert result.state == JobState.REJECTED
        assert await cluster.failures["privatewiki"].entries() == []
        assert worker.get_stats()["rejected_count"] == 1

    @pytest.mark.asyncio
    async def test_unexpected_error(self, cluster, worker, monkeypatch):
        """Errors outside the taxonomy fail the job instead of killing the worker."""

        async def explode(job):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(worker.runner, "run", explode)
        job = ReplicationJob("publicwiki", 0, "Foo")

        result = await worker.handle_record(raw_record(job.to_bytes()))

        assert result.state == JobState.FAILED
        (failure,) = await cluster.failures["privatewiki"].entries()
        assert failure.error_code == "UNEXPECTED_ERROR"
        assert failure.error == "disk on fire"

    @pytest.mark.asyncio
    async def test_stats(self, cluster, worker):
        await edit(cluster.public, FOO, "hello")
        await cluster.drain("privatewiki")

        stats = worker.get_stats()
        assert stats["running"] is False
        assert stats["processed_count"] == 1
        assert stats["last_position"].startswith("splitwiki-sync.privatewiki:")
