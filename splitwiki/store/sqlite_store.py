"""
SQLite document store for SplitWiki.

This module manages one SQLite database per store, holding:
- Pages and their revisions
- Actors (local user names)
- Archived revisions of deleted pages
- The deletion/move/restore log
- The recent changes feed and change tags

The foreign_revision_link and sync_failures tables live in the same file but
are owned by splitwiki.links and splitwiki.sync.

Invariants:
    - One SQLite file per store
    - rev_id is monotonically increasing and survives delete/restore
    - Writes go through unit_of_work() (BEGIN IMMEDIATE), which serialises
      writers on the store
    - Listeners fire only after the transaction commits

How to change safely:
    - Schema migrations must be backward compatible
    - Keep every multi-statement write inside one unit of work
    - Never rewrite rev_id; link rows point at it

Table schema:
    page:
        - page_id INTEGER PRIMARY KEY
        - page_namespace INTEGER, page_title TEXT, UNIQUE together
        - page_latest INTEGER (rev_id of the latest revision)
        - page_touched TEXT (14-digit timestamp)

    revision:
        - rev_id INTEGER PRIMARY KEY
        - rev_page INTEGER
        - rev_actor INTEGER (0 = no local account), rev_actor_text TEXT
        - rev_comment, rev_text, rev_content_model, rev_content_format TEXT
        - rev_minor_edit INTEGER, rev_deleted INTEGER (visibility bits)
        - rev_timestamp TEXT, rev_parent_id INTEGER
        - INDEX on (rev_page, rev_id)

    archive: deleted revisions, same columns prefixed ar_ plus namespace/title
    logging: log_type/log_action entries for delete, move, restore
    recentchanges: feed rows with rc_bot flag
    change_tag: tags attached to revisions, log entries and rc rows
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import AsyncIterator, Iterator, Sequence
from contextlib import AbstractContextManager, asynccontextmanager, contextmanager
from pathlib import Path
from typing import Any

from ..config import StorageConfig, StoreConfig, SyncConfig
from ..errors import (
    IdentityResolutionFailure,
    InvariantViolation,
    ProtectedNamespaceError,
    TransientStoreFailure,
)
from ..ownership.identity import DocumentIdentity
from .base import (
    Actor,
    Content,
    DeleteResult,
    EditFlags,
    MutationListener,
    Page,
    Revision,
    UnitOfWork,
    is_valid_timestamp,
    now_timestamp,
)

logger = logging.getLogger(__name__)

CONTENT_FORMATS: dict[str, tuple[str, ...]] = {
    "wikitext": ("text/x-wiki",),
    "json": ("application/json",),
    "css": ("text/css",),
    "javascript": ("text/javascript", "application/javascript"),
    "text": ("text/plain",),
}

_INVALID_USER_CHARS = set("#<>[]|{}/")


class StoreNotFoundError(TransientStoreFailure):
    """Store database does not exist."""

    pass


class SqliteDocumentStore:
    """SQLite implementation of the DocumentStore protocol.

    Thread safety:
        Each operation opens its own connection. Writers serialise on
        BEGIN IMMEDIATE; readers run concurrently under WAL mode.

    Example:
        >>> store = SqliteDocumentStore("publicwiki", "/var/lib/splitwiki/publicwiki.db")
        >>> await store.initialize()
        >>> alice = await store.register_actor("Alice")
        >>> rev_id = await store.save_revision(
        ...     DocumentIdentity(0, "Foo"),
        ...     store.make_content("Hello", "wikitext", None),
        ...     alice,
        ...     "first",
        ... )
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        store_id: str,
        db_path: str | Path,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        content_models: Sequence[str] | None = None,
        protected_namespaces: frozenset[int] = frozenset(),
    ) -> None:
        """Initialize the store.

        Args:
            store_id: Store identity (database name)
            db_path: SQLite database file
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            content_models: Content models this store can construct
            protected_namespaces: Namespaces local users cannot edit
        """
        self.store_id = store_id
        self.db_path = Path(db_path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.content_models = tuple(content_models or CONTENT_FORMATS.keys())
        self.protected_namespaces = protected_namespaces
        self._listeners: list[MutationListener] = []

    @classmethod
    def from_config(
        cls,
        store: StoreConfig,
        storage: StorageConfig,
        sync: SyncConfig | None = None,
        protected_namespaces: frozenset[int] = frozenset(),
    ) -> SqliteDocumentStore:
        return cls(
            store_id=store.store_id,
            db_path=storage.db_path(store.store_id),
            wal_mode=storage.wal_mode,
            busy_timeout_ms=storage.busy_timeout_ms,
            content_models=sync.content_models if sync else None,
            protected_namespaces=protected_namespaces,
        )

    @contextmanager
    def _get_connection(self, create: bool = False) -> Iterator[sqlite3.Connection]:
        """Get a database connection.

        Args:
            create: Whether to create the database if it does not exist

        Yields:
            SQLite connection

        Raises:
            StoreNotFoundError: If the database doesn't exist and create=False
            TransientStoreFailure: On any SQLite error
        """
        if not create and not self.db_path.exists():
            raise StoreNotFoundError(f"Store database not found: {self.store_id}")

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
            )
        except sqlite3.Error as e:
            raise TransientStoreFailure(f"Cannot open store {self.store_id}: {e}") from e
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")

            yield conn
        except sqlite3.Error as e:
            raise TransientStoreFailure(
                f"Store {self.store_id} failed: {e}", details={"store": self.store_id}
            ) from e
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create database schema."""
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS actor (
                actor_id INTEGER PRIMARY KEY AUTOINCREMENT,
                actor_name TEXT NOT NULL UNIQUE
            );

            CREATE TABLE IF NOT EXISTS page (
                page_id INTEGER PRIMARY KEY AUTOINCREMENT,
                page_namespace INTEGER NOT NULL,
                page_title TEXT NOT NULL,
                page_latest INTEGER NOT NULL DEFAULT 0,
                page_touched TEXT NOT NULL,
                UNIQUE (page_namespace, page_title)
            );

            CREATE TABLE IF NOT EXISTS revision (
                rev_id INTEGER PRIMARY KEY AUTOINCREMENT,
                rev_page INTEGER NOT NULL,
                rev_actor INTEGER NOT NULL DEFAULT 0,
                rev_actor_text TEXT NOT NULL,
                rev_comment TEXT NOT NULL DEFAULT '',
                rev_text TEXT NOT NULL,
                rev_content_model TEXT NOT NULL,
                rev_content_format TEXT NOT NULL,
                rev_minor_edit INTEGER NOT NULL DEFAULT 0,
                rev_deleted INTEGER NOT NULL DEFAULT 0,
                rev_timestamp TEXT NOT NULL,
                rev_parent_id INTEGER NOT NULL DEFAULT 0
            );

            CREATE INDEX IF NOT EXISTS idx_rev_page_id ON revision(rev_page, rev_id);

            CREATE TABLE IF NOT EXISTS archive (
                ar_id INTEGER PRIMARY KEY AUTOINCREMENT,
                ar_namespace INTEGER NOT NULL,
                ar_title TEXT NOT NULL,
                ar_rev_id INTEGER NOT NULL UNIQUE,
                ar_page_id INTEGER NOT NULL,
                ar_actor INTEGER NOT NULL DEFAULT 0,
                ar_actor_text TEXT NOT NULL,
                ar_comment TEXT NOT NULL DEFAULT '',
                ar_text TEXT NOT NULL,
                ar_content_model TEXT NOT NULL,
                ar_content_format TEXT NOT NULL,
                ar_minor_edit INTEGER NOT NULL DEFAULT 0,
                ar_deleted INTEGER NOT NULL DEFAULT 0,
                ar_timestamp TEXT NOT NULL,
                ar_parent_id INTEGER NOT NULL DEFAULT 0
            );

            CREATE INDEX IF NOT EXISTS idx_archive_name ON archive(ar_namespace, ar_title);

            CREATE TABLE IF NOT EXISTS logging (
                log_id INTEGER PRIMARY KEY AUTOINCREMENT,
                log_type TEXT NOT NULL,
                log_action TEXT NOT NULL,
                log_timestamp TEXT NOT NULL,
                log_actor_text TEXT NOT NULL,
                log_namespace INTEGER NOT NULL,
                log_title TEXT NOT NULL,
                log_page INTEGER NOT NULL DEFAULT 0,
                log_comment TEXT NOT NULL DEFAULT '',
                log_params TEXT NOT NULL DEFAULT ''
            );

            CREATE TABLE IF NOT EXISTS recentchanges (
                rc_id INTEGER PRIMARY KEY AUTOINCREMENT,
                rc_timestamp TEXT NOT NULL,
                rc_namespace INTEGER NOT NULL,
                rc_title TEXT NOT NULL,
                rc_actor_text TEXT NOT NULL,
                rc_comment TEXT NOT NULL DEFAULT '',
                rc_type TEXT NOT NULL,
                rc_minor INTEGER NOT NULL DEFAULT 0,
                rc_bot INTEGER NOT NULL DEFAULT 0,
                rc_this_oldid INTEGER NOT NULL DEFAULT 0,
                rc_last_oldid INTEGER NOT NULL DEFAULT 0,
                rc_logid INTEGER NOT NULL DEFAULT 0
            );

            CREATE INDEX IF NOT EXISTS idx_rc_timestamp ON recentchanges(rc_timestamp DESC);

            CREATE TABLE IF NOT EXISTS change_tag (
                ct_id INTEGER PRIMARY KEY AUTOINCREMENT,
                ct_rev_id INTEGER,
                ct_log_id INTEGER,
                ct_rc_id INTEGER,
                ct_tag TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_change_tag_rev ON change_tag(ct_rev_id);
            CREATE INDEX IF NOT EXISTS idx_change_tag_log ON change_tag(ct_log_id);

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    async def initialize(self) -> None:
        """Create the database file and schema if they don't exist."""
        with self._get_connection(create=True) as conn:
            self._create_schema(conn)
        logger.info("Initialized store database", extra={"store": self.store_id})

    def exists(self) -> bool:
        return self.db_path.exists()

    # Listeners

    def add_listener(self, listener: MutationListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: MutationListener) -> None:
        self._listeners.remove(listener)

    async def _dispatch(self, events: list[tuple[str, tuple[Any, ...]]]) -> None:
        for name, args in events:
            for listener in self._listeners:
                try:
                    await getattr(listener, name)(*args)
                except Exception as e:
                    logger.error(
                        f"Mutation listener failed: {e}",
                        exc_info=True,
                        extra={"store": self.store_id, "event": name},
                    )
                    raise

    # Transactions

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[UnitOfWork]:
        """Open a write transaction.

        BEGIN IMMEDIATE takes the database write lock up front, so reads
        made inside the unit of work see the latest committed state and no
        other writer can interleave.

        Yields:
            UnitOfWork whose events are dispatched after COMMIT
        """
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            uow = UnitOfWork(conn=conn)
            try:
                yield uow
                conn.execute("COMMIT")
            except Exception:
                try:
                    conn.execute("ROLLBACK")
                except sqlite3.Error as rollback_error:
                    logger.warning(f"Rollback failed: {rollback_error}")
                raise

        await self._dispatch(uow.pending_events)

    @asynccontextmanager
    async def _writing(self, uow: UnitOfWork | None) -> AsyncIterator[UnitOfWork]:
        """Join the caller's unit of work or open a new one."""
        if uow is not None:
            yield uow
        else:
            async with self.unit_of_work() as own:
                yield own

    # Actors and content

    async def register_actor(self, name: str) -> Actor:
        """Create a local account for a user name (idempotent)."""
        actor_name = self._normalize_user_name(name)
        if actor_name is None:
            raise IdentityResolutionFailure(f"Invalid user name: {name!r}")
        with self._get_connection() as conn:
            conn.execute("INSERT OR IGNORE INTO actor (actor_name) VALUES (?)", (actor_name,))
            row = conn.execute(
                "SELECT actor_id FROM actor WHERE actor_name = ?", (actor_name,)
            ).fetchone()
        return Actor(actor_id=row["actor_id"], name=actor_name)

    async def resolve_actor(self, name: str) -> Actor | None:
        """Resolve a display name to a local actor.

        Names without a local account resolve to an anonymous actor (id 0)
        that keeps the name. Returns None only for names that can never be
        user names.
        """
        actor_name = self._normalize_user_name(name)
        if actor_name is None:
            return None
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT actor_id FROM actor WHERE actor_name = ?", (actor_name,)
            ).fetchone()
        return Actor(actor_id=row["actor_id"] if row else 0, name=actor_name)

    @staticmethod
    def _normalize_user_name(name: str) -> str | None:
        if not isinstance(name, str):
            return None
        cleaned = " ".join(name.replace("_", " ").split())
        if not cleaned or any(c in _INVALID_USER_CHARS for c in cleaned):
            return None
        return cleaned[0].upper() + cleaned[1:]

    def make_content(self, text: str, model: str, fmt: str | None) -> Content:
        """Build content from serialized text, passing it through unchanged.

        Raises:
            IdentityResolutionFailure: If the model or format is unsupported
        """
        if model not in self.content_models or model not in CONTENT_FORMATS:
            raise IdentityResolutionFailure(
                f"Unsupported content model: {model!r}", details={"store": self.store_id}
            )
        formats = CONTENT_FORMATS[model]
        if not fmt:
            fmt = formats[0]
        elif fmt not in formats:
            raise IdentityResolutionFailure(
                f"Format {fmt!r} is not supported by content model {model!r}"
            )
        return Content(text=text, model=model, format=fmt)

    # Reads

    async def page_id_for(self, identity: DocumentIdentity) -> int:
        page = await self.get_page(identity)
        return page.page_id if page else 0

    async def get_page(
        self, identity: DocumentIdentity, uow: UnitOfWork | None = None
    ) -> Page | None:
        """Get a page by identity.

        Args:
            identity: Document identity
            uow: Read inside this unit of work instead of a new connection
        """
        if uow is not None:
            return self._select_page(uow.conn, identity)
        with self._get_connection() as conn:
            return self._select_page(conn, identity)

    def _select_page(self, conn: sqlite3.Connection, identity: DocumentIdentity) -> Page | None:
        row = conn.execute(
            """
            SELECT page_id, page_latest FROM page
            WHERE page_namespace = ? AND page_title = ?
            """,
            (identity.namespace, identity.path),
        ).fetchone()
        if not row:
            return None
        return Page(page_id=row["page_id"], identity=identity, latest=row["page_latest"])

    async def fetch_revisions_since(
        self, page_id: int, after_seq: int, limit: int
    ) -> list[Revision]:
        """Revisions of a page newer than after_seq, oldest first.

        Revisions with any visibility bit set are skipped.
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                SELECT * FROM revision
                WHERE rev_page = ? AND rev_id > ? AND rev_deleted = 0
                ORDER BY rev_id ASC
                LIMIT ?
                """,
                (page_id, after_seq, limit),
            )
            return [self._row_to_revision(row) for row in cursor.fetchall()]

    async def get_revisions(self, identity: DocumentIdentity) -> list[Revision]:
        """All revisions of a page, oldest first."""
        with self._get_connection() as conn:
            page = self._select_page(conn, identity)
            if page is None:
                return []
            cursor = conn.execute(
                "SELECT * FROM revision WHERE rev_page = ? ORDER BY rev_id ASC",
                (page.page_id,),
            )
            return [self._row_to_revision(row) for row in cursor.fetchall()]

    async def get_revision(self, rev_id: int) -> Revision | None:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM revision WHERE rev_id = ?", (rev_id,)).fetchone()
            return self._row_to_revision(row) if row else None

    async def latest_revision(self, identity: DocumentIdentity) -> Revision | None:
        with self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT r.* FROM revision r
                JOIN page p ON p.page_latest = r.rev_id
                WHERE p.page_namespace = ? AND p.page_title = ?
                """,
                (identity.namespace, identity.path),
            ).fetchone()
            return self._row_to_revision(row) if row else None

    async def archived_revision_count(self, identity: DocumentIdentity) -> int:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM archive WHERE ar_namespace = ? AND ar_title = ?",
                (identity.namespace, identity.path),
            ).fetchone()
            return row[0]

    async def tags_for_revision(self, rev_id: int) -> list[str]:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT ct_tag FROM change_tag WHERE ct_rev_id = ? ORDER BY ct_id", (rev_id,)
            )
            return [row[0] for row in cursor.fetchall()]

    async def recent_changes(self, limit: int = 50) -> list[dict[str, Any]]:
        """Recent changes feed, newest first."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM recentchanges ORDER BY rc_id DESC LIMIT ?", (limit,)
            )
            return [dict(row) for row in cursor.fetchall()]

    async def log_entries(self, log_type: str | None = None) -> list[dict[str, Any]]:
        with self._get_connection() as conn:
            if log_type is not None:
                cursor = conn.execute(
                    "SELECT * FROM logging WHERE log_type = ? ORDER BY log_id", (log_type,)
                )
            else:
                cursor = conn.execute("SELECT * FROM logging ORDER BY log_id")
            return [dict(row) for row in cursor.fetchall()]

    def _row_to_revision(self, row: sqlite3.Row) -> Revision:
        return Revision(
            seq=row["rev_id"],
            page_id=row["rev_page"],
            author=row["rev_actor_text"],
            comment=row["rev_comment"],
            text=row["rev_text"],
            content_model=row["rev_content_model"],
            content_format=row["rev_content_format"],
            minor=bool(row["rev_minor_edit"]),
            timestamp=row["rev_timestamp"],
            deleted=row["rev_deleted"],
        )

    # Writes

    def _check_protection(self, identity: DocumentIdentity, flags: EditFlags) -> None:
        if identity.namespace in self.protected_namespaces and not flags & EditFlags.INTERNAL:
            raise ProtectedNamespaceError(identity.namespace)

    def _add_tags(
        self,
        conn: sqlite3.Connection,
        tags: Sequence[str],
        rev_id: int | None = None,
        log_id: int | None = None,
        rc_id: int | None = None,
    ) -> None:
        for tag in tags:
            conn.execute(
                "INSERT INTO change_tag (ct_rev_id, ct_log_id, ct_rc_id, ct_tag) VALUES (?, ?, ?, ?)",
                (rev_id, log_id, rc_id, tag),
            )

    def _add_rc_row(
        self,
        conn: sqlite3.Connection,
        flags: EditFlags,
        **row: Any,
    ) -> int | None:
        if flags & EditFlags.SUPPRESS_RC:
            return None
        row["rc_bot"] = 1 if flags & EditFlags.FORCE_BOT else 0
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        cursor = conn.execute(
            f"INSERT INTO recentchanges ({columns}) VALUES ({placeholders})",
            tuple(row.values()),
        )
        return cursor.lastrowid

    async def save_revision(
        self,
        identity: DocumentIdentity,
        content: Content,
        actor: Actor,
        comment: str,
        flags: EditFlags = EditFlags.NONE,
        tags: Sequence[str] = (),
        uow: UnitOfWork | None = None,
        timestamp: str | None = None,
    ) -> int:
        """Append a revision, creating the page when it does not exist.

        Args:
            identity: Target page
            content: New content
            actor: Author
            comment: Edit summary
            flags: EditFlags (MINOR, INTERNAL, SUPPRESS_RC, FORCE_BOT)
            tags: Change tags to attach
            uow: Join this unit of work instead of committing on its own
            timestamp: Revision timestamp (defaults to now)

        Returns:
            New revision id

        Raises:
            ProtectedNamespaceError: If a non-internal edit targets a
                protected namespace
        """
        self._check_protection(identity, flags)
        ts = timestamp or now_timestamp()
        if not is_valid_timestamp(ts):
            raise InvariantViolation(f"Invalid timestamp: {ts!r}")

        async with self._writing(uow) as work:
            conn = work.conn
            page = self._select_page(conn, identity)
            if page is None:
                cursor = conn.execute(
                    """
                    INSERT INTO page (page_namespace, page_title, page_latest, page_touched)
                    VALUES (?, ?, 0, ?)
                    """,
                    (identity.namespace, identity.path, ts),
                )
                page_id = cursor.lastrowid
                parent_id = 0
            else:
                page_id = page.page_id
                parent_id = page.latest

            cursor = conn.execute(
                """
                INSERT INTO revision (rev_page, rev_actor, rev_actor_text, rev_comment,
                                      rev_text, rev_content_model, rev_content_format,
                                      rev_minor_edit, rev_timestamp, rev_parent_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    page_id,
                    actor.actor_id,
                    actor.name,
                    comment,
                    content.text,
                    content.model,
                    content.format,
                    1 if flags & EditFlags.MINOR else 0,
                    ts,
                    parent_id,
                ),
            )
            rev_id = cursor.lastrowid

            conn.execute(
                "UPDATE page SET page_latest = ?, page_touched = ? WHERE page_id = ?",
                (rev_id, ts, page_id),
            )

            rc_id = self._add_rc_row(
                conn,
                flags,
                rc_timestamp=ts,
                rc_namespace=identity.namespace,
                rc_title=identity.path,
                rc_actor_text=actor.name,
                rc_comment=comment,
                rc_type="new" if parent_id == 0 else "edit",
                rc_minor=1 if flags & EditFlags.MINOR else 0,
                rc_this_oldid=rev_id,
                rc_last_oldid=parent_id,
            )
            self._add_tags(conn, tags, rev_id=rev_id, rc_id=rc_id)
            work.pending_events.append(("on_revision_saved", (identity, rev_id)))

        logger.debug(
            "Saved revision",
            extra={"store": self.store_id, "page": identity.key, "rev_id": rev_id},
        )
        return rev_id

    async def set_revision_timestamp(
        self, rev_id: int, timestamp: str, uow: UnitOfWork | None = None
    ) -> None:
        """Overwrite the stored timestamp of a revision."""
        if not is_valid_timestamp(timestamp):
            raise InvariantViolation(f"Invalid timestamp: {timestamp!r}")
        async with self._writing(uow) as work:
            cursor = work.conn.execute(
                "UPDATE revision SET rev_timestamp = ? WHERE rev_id = ?", (timestamp, rev_id)
            )
            if cursor.rowcount == 0:
                raise InvariantViolation(f"Revision {rev_id} does not exist")

    async def set_revision_visibility(self, rev_id: int, bits: int) -> None:
        """Set the visibility bits of a revision (revision deletion)."""
        async with self.unit_of_work() as work:
            cursor = work.conn.execute(
                "UPDATE revision SET rev_deleted = ? WHERE rev_id = ?", (bits, rev_id)
            )
            if cursor.rowcount == 0:
                raise InvariantViolation(f"Revision {rev_id} does not exist")

    def _add_log(
        self,
        conn: sqlite3.Connection,
        log_type: str,
        action: str,
        actor: Actor,
        identity: DocumentIdentity,
        page_id: int,
        comment: str,
        params: str = "",
    ) -> int:
        cursor = conn.execute(
            """
            INSERT INTO logging (log_type, log_action, log_timestamp, log_actor_text,
                                 log_namespace, log_title, log_page, log_comment, log_params)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                log_type,
                action,
                now_timestamp(),
                actor.name,
                identity.namespace,
                identity.path,
                page_id,
                comment,
                params,
            ),
        )
        return cursor.lastrowid

    async def delete_page(
        self,
        identity: DocumentIdentity,
        actor: Actor,
        reason: str,
        flags: EditFlags = EditFlags.NONE,
        tags: Sequence[str] = (),
    ) -> DeleteResult:
        """Delete a page, moving its revisions to the archive.

        Returns:
            DeleteResult with ok=False if the page does not exist
        """
        self._check_protection(identity, flags)

        async with self.unit_of_work() as work:
            conn = work.conn
            page = self._select_page(conn, identity)
            if page is None:
                return DeleteResult(ok=False, error=f"cannotdelete: {identity} does not exist")

            cursor = conn.execute(
                """
                INSERT INTO archive (ar_namespace, ar_title, ar_rev_id, ar_page_id, ar_actor,
                                     ar_actor_text, ar_comment, ar_text, ar_content_model,
                                     ar_content_format, ar_minor_edit, ar_deleted,
                                     ar_timestamp, ar_parent_id)
                SELECT ?, ?, rev_id, rev_page, rev_actor, rev_actor_text, rev_comment,
                       rev_text, rev_content_model, rev_content_format, rev_minor_edit,
                       rev_deleted, rev_timestamp, rev_parent_id
                FROM revision WHERE rev_page = ?
                """,
                (identity.namespace, identity.path, page.page_id),
            )
            archived = cursor.rowcount
            conn.execute("DELETE FROM revision WHERE rev_page = ?", (page.page_id,))
            conn.execute("DELETE FROM page WHERE page_id = ?", (page.page_id,))

            log_id = self._add_log(conn, "delete", "delete", actor, identity, page.page_id, reason)
            rc_id = self._add_rc_row(
                conn,
                flags,
                rc_timestamp=now_timestamp(),
                rc_namespace=identity.namespace,
                rc_title=identity.path,
                rc_actor_text=actor.name,
                rc_comment=reason,
                rc_type="log",
                rc_logid=log_id,
            )
            self._add_tags(conn, tags, log_id=log_id, rc_id=rc_id)
            work.pending_events.append(("on_page_deleted", (identity, actor.name, reason)))

        logger.info(
            "Deleted page",
            extra={
                "store": self.store_id,
                "page": identity.key,
                "actor": actor.name,
                "archived_revisions": archived,
            },
        )
        return DeleteResult(ok=True, log_id=log_id, archived_revisions=archived)

    async def restore_page(self, identity: DocumentIdentity, actor: Actor, reason: str) -> int:
        """Undelete archived revisions of a page, keeping their revision ids.

        Returns:
            Number of restored revisions (0 if nothing was archived)
        """
        self._check_protection(identity, EditFlags.NONE)

        async with self.unit_of_work() as work:
            conn = work.conn
            rows = conn.execute(
                """
                SELECT * FROM archive WHERE ar_namespace = ? AND ar_title = ?
                ORDER BY ar_rev_id ASC
                """,
                (identity.namespace, identity.path),
            ).fetchall()
            if not rows:
                return 0

            page = self._select_page(conn, identity)
            if page is None:
                cursor = conn.execute(
                    """
                    INSERT INTO page (page_namespace, page_title, page_latest, page_touched)
                    VALUES (?, ?, 0, ?)
                    """,
                    (identity.namespace, identity.path, now_timestamp()),
                )
                page_id = cursor.lastrowid
            else:
                page_id = page.page_id

            for row in rows:
                conn.execute(
                    """
                    INSERT INTO revision (rev_id, rev_page, rev_actor, rev_actor_text,
                                          rev_comment, rev_text, rev_content_model,
                                          rev_content_format, rev_minor_edit, rev_deleted,
                                          rev_timestamp, rev_parent_id)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        row["ar_rev_id"],
                        page_id,
                        row["ar_actor"],
                        row["ar_actor_text"],
                        row["ar_comment"],
                        row["ar_text"],
                        row["ar_content_model"],
                        row["ar_content_format"],
                        row["ar_minor_edit"],
                        row["ar_deleted"],
                        row["ar_timestamp"],
                        row["ar_parent_id"],
                    ),
                )
            conn.execute(
                "DELETE FROM archive WHERE ar_namespace = ? AND ar_title = ?",
                (identity.namespace, identity.path),
            )
            conn.execute(
                """
                UPDATE page SET page_latest = (SELECT MAX(rev_id) FROM revision WHERE rev_page = ?)
                WHERE page_id = ?
                """,
                (page_id, page_id),
            )
            self._add_log(conn, "delete", "restore", actor, identity, page_id, reason)
            work.pending_events.append(("on_page_restored", (identity, actor.name, reason)))

        logger.info(
            "Restored page",
            extra={"store": self.store_id, "page": identity.key, "revisions": len(rows)},
        )
        return len(rows)

    async def move_page(
        self,
        old: DocumentIdentity,
        new: DocumentIdentity,
        actor: Actor,
        reason: str,
    ) -> None:
        """Rename a page. No redirect is left behind.

        Raises:
            InvariantViolation: If the source is missing or the target exists
        """
        self._check_protection(old, EditFlags.NONE)
        self._check_protection(new, EditFlags.NONE)

        async with self.unit_of_work() as work:
            conn = work.conn
            page = self._select_page(conn, old)
            if page is None:
                raise InvariantViolation(f"Cannot move {old}: page does not exist")
            if self._select_page(conn, new) is not None:
                raise InvariantViolation(f"Cannot move {old} to {new}: target exists")

            conn.execute(
                "UPDATE page SET page_namespace = ?, page_title = ? WHERE page_id = ?",
                (new.namespace, new.path, page.page_id),
            )
            self._add_log(
                conn, "move", "move", actor, old, page.page_id, reason, params=new.key
            )
            work.pending_events.append(("on_page_moved", (old, new, actor.name, reason)))

        logger.info(
            "Moved page",
            extra={"store": self.store_id, "from": old.key, "to": new.key},
        )

    async def get_stats(self) -> dict[str, int]:
        """Row counts of the main tables."""
        with self._get_connection() as conn:
            stats = {}
            for table in ("page", "revision", "archive", "recentchanges"):
                stats[table] = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            return stats

    def connect(self) -> AbstractContextManager[sqlite3.Connection]:
        """Connection to the store file for collaborators that keep tables in it."""
        return self._get_connection()
