"""
SplitWiki - one logical wiki served from a public and a private document store.

Each store is authoritative for the namespaces it owns. Content that a peer
needs to see is copied asynchronously by replication jobs:

Architecture:
    ┌─────────────┐  hook   ┌─────────────┐  push   ┌──────────────────────┐
    │ Local store │────────▶│   Trigger   │────────▶│ Job queue (per peer) │
    │  (SQLite)   │         └─────────────┘         └──────────┬───────────┘
    └─────────────┘                                            │
          ▲                                                    ▼
          │ fetch since checkpoint               ┌──────────────────────────┐
          └──────────────────────────────────────│ Peer ReplicationWorker   │
                                                 │  job → apply → link rows │
                                                 └──────────────────────────┘

Invariants:
    - A namespace is exclusive to at most one store
    - A store never accepts replicated writes into its own exclusive namespaces
    - Revisions are applied in ascending source order
    - foreign_revision_link rows are append-only and act as the checkpoint

How to change safely:
    - Keep the ownership table identical on every store
    - Never delete link rows; they are history, not cache
    - Verify idempotency with duplicate job delivery tests
"""

from ._version import __version__

__all__ = ["__version__"]
