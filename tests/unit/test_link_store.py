"""
Unit tests for the foreign revision link store.

Tests cover:
- Recording links inside a unit of work
- Checkpoint lookup
- Dangling link detection
"""

import tempfile
from pathlib import Path

import pytest

from splitwiki.errors import InvariantViolation
from splitwiki.links.link_store import ForeignRevisionLinkStore
from splitwiki.ownership.identity import DocumentIdentity
from splitwiki.store.base import EditFlags
from splitwiki.store.sqlite_store import SqliteDocumentStore

FOO = DocumentIdentity(0, "Foo")


class TestForeignRevisionLinkStore:
    """Tests for ForeignRevisionLinkStore."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    async def store(self, data_dir):
        store = SqliteDocumentStore("privatewiki", Path(data_dir) / "privatewiki.db", wal_mode=False)
        await store.initialize()
        return store

    @pytest.fixture
    async def links(self, store):
        links = ForeignRevisionLinkStore(store)
        await links.initialize()
        return links

    async def _replicate(self, store, links, source_rev_seq, source_store="publicwiki"):
        """Write a revision and its link in one unit of work."""
        actor = await store.resolve_actor("Alice")
        content = store.make_content(f"rev {source_rev_seq}", "wikitext", None)
        async with store.unit_of_work() as uow:
            rev_id = await store.save_revision(
                FOO, content, actor, "", EditFlags.INTERNAL, uow=uow
            )
            links.record(rev_id, source_store, source_rev_seq, uow.conn)
        return rev_id

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, links):
        await links.initialize()
        assert await links.count() == 0

    @pytest.mark.asyncio
    async def test_record_and_get(self, store, links):
        rev_id = await self._replicate(store, links, 17)

        link = await links.get(rev_id)
        assert link.local_rev_id == rev_id
        assert link.source_store == "publicwiki"
        assert link.source_rev_seq == 17
        assert link.created_at > 0
        assert link.to_dict()["source_rev_seq"] == 17

    @pytest.mark.asyncio
    async def test_checkpoint_of_missing_page(self, store, links):
        with store.connect() as conn:
            assert links.most_recent_linked(0, conn) == 0

    @pytest.mark.asyncio
    async def test_checkpoint_follows_latest_linked_revision(self, store, links):
        await self._replicate(store, links, 3)
        await self._replicate(store, links, 8)
        page_id = await store.page_id_for(FOO)

        with store.connect() as conn:
            assert links.most_recent_linked(page_id, conn) == 8

    @pytest.mark.asyncio
    async def test_checkpoint_ignores_unlinked_revisions(self, store, links):
        """Local edits without a link do not move the checkpoint."""
        await self._replicate(store, links, 5)
        actor = await store.resolve_actor("Bob")
        await store.save_revision(FOO, store.make_content("local", "wikitext", None), actor, "")

        with store.connect() as conn:
            assert links.most_recent_linked(await store.page_id_for(FOO), conn) == 5

    @pytest.mark.asyncio
    async def test_checkpoint_per_source_store(self, store, links):
        await self._replicate(store, links, 5, source_store="publicwiki")
        await self._replicate(store, links, 2, source_store="otherwiki")
        page_id = await store.page_id_for(FOO)

        with store.connect() as conn:
            assert links.most_recent_linked(page_id, conn) == 2
            assert links.most_recent_linked(page_id, conn, source_store="publicwiki") == 5

    @pytest.mark.asyncio
    async def test_record_rejects_zero_ids(self, store, links):
        with store.connect() as conn:
            with pytest.raises(InvariantViolation):
                links.record(0, "publicwiki", 1, conn)
            with pytest.raises(InvariantViolation):
                links.record(1, "publicwiki", 0, conn)

    @pytest.mark.asyncio
    async def test_record_rejects_duplicate(self, store, links):
        rev_id = await self._replicate(store, links, 3)
        with store.connect() as conn:
            with pytest.raises(InvariantViolation):
                links.record(rev_id, "publicwiki", 4, conn)

    @pytest.mark.asyncio
    async def test_link_rolls_back_with_revision(self, store, links):
        """A failed unit of work leaves neither revision nor link."""
        actor = await store.resolve_actor("Alice")
        content = store.make_content("x", "wikitext", None)

        with pytest.raises(InvariantViolation):
            async with store.unit_of_work() as uow:
                rev_id = await store.save_revision(FOO, content, actor, "", uow=uow)
                links.record(rev_id, "publicwiki", 1, uow.conn)
                links.record(rev_id, "publicwiki", 2, uow.conn)

        assert await links.count() == 0
        assert await store.get_page(FOO) is None

    @pytest.mark.asyncio
    async def test_links_for_page(self, store, links):
        await self._replicate(store, links, 1)
        await self._replicate(store, links, 2)

        page_links = await links.links_for_page(await store.page_id_for(FOO))
        assert [link.source_rev_seq for link in page_links] == [1, 2]

    @pytest.mark.asyncio
    async def test_archived_revisions_are_not_dangling(self, store, links):
        await self._replicate(store, links, 1)
        actor = await store.resolve_actor("Alice")
        await store.delete_page(FOO, actor, "cleanup")

        assert await links.dangling_links() == []

    @pytest.mark.asyncio
    async def test_dangling_links(self, store, links):
        with store.connect() as conn:
            links.record(424242, "publicwiki", 9, conn)

        dangling = await links.dangling_links()
        assert [link.local_rev_id for link in dangling] == [424242]
