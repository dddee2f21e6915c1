"""
Foreign revision link store.

Every revision written by replication gets exactly one link row naming the
source store and the source revision it copies. The link of the latest local
revision of a page is that page's replication checkpoint: the next job
fetches only source revisions newer than it.

Invariants:
    - Append only: one row per local revision, never updated or deleted
    - Rows are written in the same transaction as the revision they describe
    - Checkpoints never move backwards, because new rows always attach to
      newer local revisions carrying newer source revisions

How to change safely:
    - Never add a delete path; a missing link means the revision is
      replicated again
    - Keep reads used for checkpoints inside the caller's write transaction

Table schema:
    foreign_revision_link:
        - frl_rev_id INTEGER PRIMARY KEY (local revision id)
        - frl_foreign_wiki TEXT (source store id)
        - frl_foreign_rev_id INTEGER (source revision id)
        - frl_created_at INTEGER (Unix ms)
        - INDEX on frl_foreign_rev_id
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass
from typing import Any

from ..errors import InvariantViolation
from ..store.sqlite_store import SqliteDocumentStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ForeignRevisionLink:
    """Local revision id and the source revision it was copied from."""

    local_rev_id: int
    source_store: str
    source_rev_seq: int
    created_at: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "local_rev_id": self.local_rev_id,
            "source_store": self.source_store,
            "source_rev_seq": self.source_rev_seq,
            "created_at": self.created_at,
        }


class ForeignRevisionLinkStore:
    """Link table kept in the destination store's database file.

    Example:
        >>> links = ForeignRevisionLinkStore(store)
        >>> await links.initialize()
        >>> async with store.unit_of_work() as uow:
        ...     checkpoint = links.most_recent_linked(page_id, uow.conn)
    """

    def __init__(self, store: SqliteDocumentStore) -> None:
        self.store = store

    async def initialize(self) -> None:
        """Create the link table if it doesn't exist."""
        with self.store.connect() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS foreign_revision_link (
                    frl_rev_id INTEGER PRIMARY KEY,
                    frl_foreign_wiki TEXT NOT NULL,
                    frl_foreign_rev_id INTEGER NOT NULL,
                    frl_created_at INTEGER NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_frl_foreign_rev
                ON foreign_revision_link(frl_foreign_rev_id);
            """)

    def most_recent_linked(
        self,
        page_id: int,
        conn: sqlite3.Connection,
        source_store: str | None = None,
    ) -> int:
        """Checkpoint of a local page: source revision id linked to its newest linked revision.

        Args:
            page_id: Local page id (0 for a page that doesn't exist)
            conn: Connection of the caller's open write transaction
            source_store: Only consider links from this store

        Returns:
            Source revision id, 0 if the page has no linked revision
        """
        if not page_id:
            return 0
        query = """
            SELECT frl.frl_foreign_rev_id FROM revision r
            JOIN foreign_revision_link frl ON frl.frl_rev_id = r.rev_id
            WHERE r.rev_page = ?
        """
        params: list[Any] = [page_id]
        if source_store is not None:
            query += " AND frl.frl_foreign_wiki = ?"
            params.append(source_store)
        query += " ORDER BY r.rev_id DESC LIMIT 1"

        row = conn.execute(query, params).fetchone()
        return row[0] if row else 0

    def record(
        self,
        local_rev_id: int,
        source_store: str,
        source_rev_seq: int,
        conn: sqlite3.Connection,
    ) -> ForeignRevisionLink:
        """Append a link row inside the caller's transaction.

        Raises:
            InvariantViolation: If the local revision id is zero or already linked
        """
        if not local_rev_id:
            raise InvariantViolation("Cannot link a zero local revision id")
        if source_rev_seq <= 0:
            raise InvariantViolation(f"Invalid source revision id: {source_rev_seq}")

        created_at = int(time.time() * 1000)
        try:
            conn.execute(
                """
                INSERT INTO foreign_revision_link
                    (frl_rev_id, frl_foreign_wiki, frl_foreign_rev_id, frl_created_at)
                VALUES (?, ?, ?, ?)
                """,
                (local_rev_id, source_store, source_rev_seq, created_at),
            )
        except sqlite3.IntegrityError as e:
            raise InvariantViolation(
                f"Revision {local_rev_id} is already linked",
                details={"local_rev_id": local_rev_id, "source_store": source_store},
            ) from e

        return ForeignRevisionLink(
            local_rev_id=local_rev_id,
            source_store=source_store,
            source_rev_seq=source_rev_seq,
            created_at=created_at,
        )

    async def get(self, local_rev_id: int) -> ForeignRevisionLink | None:
        with self.store.connect() as conn:
            row = conn.execute(
                "SELECT * FROM foreign_revision_link WHERE frl_rev_id = ?", (local_rev_id,)
            ).fetchone()
            return self._row_to_link(row) if row else None

    async def links_for_page(self, page_id: int) -> list[ForeignRevisionLink]:
        """Links of a page's revisions, oldest first."""
        with self.store.connect() as conn:
            cursor = conn.execute(
                """
                SELECT frl.* FROM foreign_revision_link frl
                JOIN revision r ON r.rev_id = frl.frl_rev_id
                WHERE r.rev_page = ?
                ORDER BY frl.frl_rev_id ASC
                """,
                (page_id,),
            )
            return [self._row_to_link(row) for row in cursor.fetchall()]

    async def dangling_links(self) -> list[ForeignRevisionLink]:
        """Links whose local revision exists neither live nor archived."""
        with self.store.connect() as conn:
            cursor = conn.execute("""
                SELECT frl.* FROM foreign_revision_link frl
                WHERE NOT EXISTS (SELECT 1 FROM revision r WHERE r.rev_id = frl.frl_rev_id)
                  AND NOT EXISTS (SELECT 1 FROM archive a WHERE a.ar_rev_id = frl.frl_rev_id)
                ORDER BY frl.frl_rev_id ASC
            """)
            return [self._row_to_link(row) for row in cursor.fetchall()]

    async def count(self) -> int:
        with self.store.connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM foreign_revision_link").fetchone()[0]

    def _row_to_link(self, row: sqlite3.Row) -> ForeignRevisionLink:
        return ForeignRevisionLink(
            local_rev_id=row["frl_rev_id"],
            source_store=row["frl_foreign_wiki"],
            source_rev_seq=row["frl_foreign_rev_id"],
            created_at=row["frl_created_at"],
        )
