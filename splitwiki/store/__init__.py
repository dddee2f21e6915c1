"""
Document store module for SplitWiki.

This module handles:
- The DocumentStore protocol the replication engine depends on
- The SQLite implementation (pages, revisions, archive, log, recent changes)
- Mutation listener dispatch after commit

Invariants:
    - One SQLite file per store
    - Multi-statement writes run inside one unit of work
    - Listeners never observe uncommitted state

How to change safely:
    - Keep the protocol and the SQLite implementation in step
    - Test schema changes against an existing database file
"""

from .base import (
    Actor,
    Content,
    DeleteResult,
    DocumentStore,
    EditFlags,
    MutationListener,
    Page,
    Revision,
    UnitOfWork,
    is_valid_timestamp,
    now_timestamp,
)
from .sqlite_store import CONTENT_FORMATS, SqliteDocumentStore, StoreNotFoundError

__all__ = [
    "Actor",
    "Content",
    "DeleteResult",
    "DocumentStore",
    "EditFlags",
    "MutationListener",
    "Page",
    "Revision",
    "UnitOfWork",
    "is_valid_timestamp",
    "now_timestamp",
    "CONTENT_FORMATS",
    "SqliteDocumentStore",
    "StoreNotFoundError",
]
