"""
Integration tests for the admin CLI.

Tests cover:
- Manual enqueue of replication jobs
- Checkpoint and link inspection
- Listing and redriving failed jobs
- CLI exit codes
"""

import pytest
import yaml

from splitwiki.config import ServerConfig, StorageConfig
from splitwiki.errors import InvariantViolation
from splitwiki.ownership.identity import DocumentIdentity
from splitwiki.sync.job import ForceDelete, JobState, ReplicationJob
from splitwiki.tools.admin import AdminTool, build_parser, main

from ..conftest import TOPOLOGY, make_topology

FOO = DocumentIdentity(0, "Foo")


async def edit(store, identity, text):
    actor = await store.register_actor("Alice")
    return await store.save_revision(
        identity, store.make_content(text, "wikitext", None), actor, ""
    )


def admin_for(cluster, store_id):
    config = ServerConfig(
        topology=make_topology(store_id),
        storage=StorageConfig(data_dir=str(cluster.data_dir), wal_mode=False),
    )
    return AdminTool(config, queue=cluster.queue)


class TestAdminTool:
    """Tests for AdminTool against a running cluster."""

    @pytest.mark.asyncio
    async def test_parse_title(self, cluster):
        tool = admin_for(cluster, "privatewiki")
        assert tool.parse_title("User_(PublicWiki):Alice") == DocumentIdentity(110002, "Alice")

    @pytest.mark.asyncio
    async def test_enqueue(self, cluster):
        """A manually queued job replicates like a trigger-made one."""
        await edit(cluster.public, FOO, "one")
        cluster.queue.clear_topic(cluster.topic("privatewiki"))

        jobs = await admin_for(cluster, "publicwiki").enqueue("Foo")
        results = await cluster.drain("privatewiki")

        assert jobs == [ReplicationJob("publicwiki", 0, "Foo")]
        assert [r.applied for r in results] == [1]

    @pytest.mark.asyncio
    async def test_enqueue_with_delete(self, cluster):
        jobs = await admin_for(cluster, "publicwiki").enqueue(
            "Foo", delete_as="Admin", reason="cleanup"
        )
        assert jobs[0].force_delete == ForceDelete("Admin", "cleanup")

    @pytest.mark.asyncio
    async def test_enqueue_non_replicated_namespace(self, cluster):
        with pytest.raises(InvariantViolation):
            await admin_for(cluster, "publicwiki").enqueue("Secret:Plan")

    @pytest.mark.asyncio
    async def test_checkpoint(self, cluster):
        rev_id = await edit(cluster.public, FOO, "one")
        await cluster.drain("privatewiki")
        tool = admin_for(cluster, "privatewiki")

        assert await tool.checkpoint("Foo") == rev_id
        assert await tool.checkpoint("Foo", source_store="publicwiki") == rev_id
        assert await tool.checkpoint("Missing") == 0

    @pytest.mark.asyncio
    async def test_check_links(self, cluster):
        await edit(cluster.public, FOO, "one")
        await cluster.drain("privatewiki")

        assert await admin_for(cluster, "privatewiki").check_links() == []

    @pytest.mark.asyncio
    async def test_redrive(self, cluster):
        """Failed jobs go back onto the store's own topic."""
        tool = admin_for(cluster, "privatewiki")
        cluster.runner("privatewiki").source_stores = {}
        await cluster.workers["privatewiki"].enqueue(ReplicationJob("publicwiki", 0, "Foo"))
        await cluster.drain("privatewiki")
        (failure,) = await tool.list_failures()

        result = await tool.redrive()

        assert result.redriven == [failure.failure_id]
        assert result.skipped == []
        assert await tool.list_failures() == []
        (redriven,) = await tool.list_failures(include_redriven=True)
        assert redriven.redriven_at is not None

        results = await cluster.drain("privatewiki")
        assert [r.state for r in results] == [JobState.FAILED]

    @pytest.mark.asyncio
    async def test_redrive_after_fix(self, cluster):
        """Once the cause is fixed, a redriven job succeeds."""
        tool = admin_for(cluster, "privatewiki")
        runner = cluster.runner("privatewiki")
        runner.source_stores = {}
        await edit(cluster.public, FOO, "one")
        await cluster.drain("privatewiki")
        assert len(await tool.list_failures()) == 1

        runner.source_stores = {"publicwiki": cluster.public}
        await tool.redrive()
        results = await cluster.drain("privatewiki")

        assert [r.applied for r in results] == [1]
        assert (await cluster.private.latest_revision(FOO)).text == "one"

    @pytest.mark.asyncio
    async def test_redrive_skips_undecodable(self, cluster):
        tool = admin_for(cluster, "privatewiki")
        await cluster.failures["privatewiki"].record(b"garbage", "INVARIANT_VIOLATION", "bad")

        result = await tool.redrive()

        assert result.redriven == []
        assert len(result.skipped) == 1


class TestAdminCli:
    """Tests for the command line entry point."""

    def test_parser(self):
        args = build_parser().parse_args(
            ["enqueue", "Foo", "--to", "privatewiki", "--delete-as", "Admin"]
        )
        assert args.command == "enqueue"
        assert args.to == ["privatewiki"]
        assert args.delete_as == "Admin"
        assert args.reason == ""

    def test_missing_configuration(self, monkeypatch):
        monkeypatch.delenv("SPLITWIKI_TOPOLOGY_FILE", raising=False)
        with pytest.raises(SystemExit) as exc_info:
            main(["check-links"])
        assert exc_info.value.code == 2

    @pytest.fixture
    def env(self, monkeypatch, data_dir):
        path = f"{data_dir}/topology.yaml"
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(TOPOLOGY, f)
        monkeypatch.setenv("SPLITWIKI_TOPOLOGY_FILE", path)
        monkeypatch.setenv("SPLITWIKI_CURRENT_STORE", "publicwiki")
        monkeypatch.setenv("DATA_DIR", f"{data_dir}/stores")
        monkeypatch.setenv("SQLITE_WAL_MODE", "false")
        monkeypatch.setenv("QUEUE_BACKEND", "memory")

    def test_missing_store(self, env, capsys):
        """The admin tool never creates a store database."""
        with pytest.raises(SystemExit) as exc_info:
            main(["failures"])

        assert exc_info.value.code == 1
        assert "TRANSIENT_STORE_FAILURE" in capsys.readouterr().err

    def test_enqueue_to_unknown_peer(self, env, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["enqueue", "Foo", "--to", "nowhere"])

        assert exc_info.value.code == 1
        assert "CONFIG_ERROR" in capsys.readouterr().err
