"""
Base protocol and types for the document store collaborator.

This module defines the DocumentStore protocol the replication engine talks
to, the MutationListener hook protocol, and the value types exchanged across
it (revisions, actors, content, pages).

Invariants:
    - Revision ids (seq) are monotonically increasing per store
    - Revisions are immutable once written, apart from the timestamp fix-up
      applied by replication
    - Listeners are notified only after the mutation is committed

How to change safely:
    - Protocol changes require updating all implementations
    - Keep version adaptation inside implementations, never in the engine
"""

from __future__ import annotations

import time
from abc import abstractmethod
from collections.abc import Sequence
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from enum import IntFlag
from typing import Any, Protocol, runtime_checkable

from ..ownership.identity import DocumentIdentity

TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"


def now_timestamp() -> str:
    """Current UTC time as a 14-digit storage timestamp."""
    return time.strftime(TIMESTAMP_FORMAT, time.gmtime())


def is_valid_timestamp(value: str) -> bool:
    if not isinstance(value, str) or len(value) != 14 or not value.isdigit():
        return False
    try:
        time.strptime(value, TIMESTAMP_FORMAT)
    except ValueError:
        return False
    return True


class EditFlags(IntFlag):
    """Flags for save_revision and delete_page."""

    NONE = 0
    MINOR = 1
    # Machine-originated write; bypasses namespace protection
    INTERNAL = 2
    SUPPRESS_RC = 4
    FORCE_BOT = 8


@dataclass(frozen=True)
class Actor:
    """A user as known to one store.

    actor_id is 0 when the name has no local account.
    """

    actor_id: int
    name: str

    @property
    def is_anonymous(self) -> bool:
        return self.actor_id == 0


@dataclass(frozen=True)
class Content:
    """Serialized page content plus its model and format tags."""

    text: str
    model: str
    format: str


@dataclass(frozen=True)
class Revision:
    """An immutable snapshot of a document.

    Attributes:
        seq: Store-local revision id (monotonic)
        page_id: Store-local page id
        author: Display name of the author
        comment: Edit summary
        text: Serialized content
        content_model: Content model tag
        content_format: Serialization format tag
        minor: Minor edit flag
        timestamp: 14-digit UTC timestamp of authorship
        deleted: Visibility bits (0 = fully visible)
    """

    seq: int
    page_id: int
    author: str
    comment: str
    text: str
    content_model: str
    content_format: str
    minor: bool
    timestamp: str
    deleted: int = 0

    @property
    def content(self) -> Content:
        return Content(text=self.text, model=self.content_model, format=self.content_format)


@dataclass(frozen=True)
class Page:
    """A page row."""

    page_id: int
    identity: DocumentIdentity
    latest: int


@dataclass
class DeleteResult:
    """Outcome of delete_page.

    Attributes:
        ok: Whether the page was deleted
        log_id: Deletion log entry id
        archived_revisions: Number of revisions moved to the archive
        error: Reason for failure
    """

    ok: bool
    log_id: int | None = None
    archived_revisions: int = 0
    error: str | None = None


@dataclass
class UnitOfWork:
    """An open write transaction on a store.

    Mutation events raised inside the transaction are queued in
    ``pending_events`` and dispatched to listeners after commit.
    """

    conn: Any
    pending_events: list[tuple[str, tuple[Any, ...]]] = field(default_factory=list)


@runtime_checkable
class MutationListener(Protocol):
    """Receives local mutation events from a store."""

    async def on_revision_saved(self, identity: DocumentIdentity, rev_id: int) -> None: ...

    async def on_page_deleted(
        self, identity: DocumentIdentity, actor: str, reason: str
    ) -> None: ...

    async def on_page_moved(
        self,
        old: DocumentIdentity,
        new: DocumentIdentity,
        actor: str,
        reason: str,
    ) -> None: ...

    async def on_page_restored(
        self, identity: DocumentIdentity, actor: str, reason: str
    ) -> None: ...


@runtime_checkable
class DocumentStore(Protocol):
    """Protocol for document store backends.

    Read contract (source side):
        fetch_revisions_since() returns revisions of one page with id strictly
        greater than the given one, ascending, limited, skipping revisions
        whose visibility bits are set.

    Write contract (destination side):
        save_revision() returns the new revision id or raises;
        delete_page() reports success or failure in a DeleteResult.
    """

    store_id: str

    @abstractmethod
    def unit_of_work(self) -> AbstractAsyncContextManager[UnitOfWork]:
        """Open a serialised write transaction."""
        ...

    @abstractmethod
    async def page_id_for(self, identity: DocumentIdentity) -> int:
        """Page id for an identity, 0 if the page does not exist."""
        ...

    @abstractmethod
    async def get_page(
        self, identity: DocumentIdentity, uow: UnitOfWork | None = None
    ) -> Page | None: ...

    @abstractmethod
    async def fetch_revisions_since(
        self, page_id: int, after_seq: int, limit: int
    ) -> Sequence[Revision]: ...

    @abstractmethod
    async def resolve_actor(self, name: str) -> Actor | None:
        """Actor for a display name, None if the name is not a valid user name."""
        ...

    @abstractmethod
    def make_content(self, text: str, model: str, fmt: str | None) -> Content:
        """Build content without transcoding.

        Raises:
            IdentityResolutionFailure: If the model or format is unsupported
        """
        ...

    @abstractmethod
    async def save_revision(
        self,
        identity: DocumentIdentity,
        content: Content,
        actor: Actor,
        comment: str,
        flags: EditFlags = EditFlags.NONE,
        tags: Sequence[str] = (),
        uow: UnitOfWork | None = None,
    ) -> int: ...

    @abstractmethod
    async def set_revision_timestamp(
        self, rev_id: int, timestamp: str, uow: UnitOfWork | None = None
    ) -> None: ...

    @abstractmethod
    async def delete_page(
        self,
        identity: DocumentIdentity,
        actor: Actor,
        reason: str,
        flags: EditFlags = EditFlags.NONE,
        tags: Sequence[str] = (),
    ) -> DeleteResult: ...

    @abstractmethod
    def add_listener(self, listener: MutationListener) -> None: ...
