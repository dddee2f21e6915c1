"""
Ownership module for SplitWiki - who is authoritative for a namespace.

This module handles:
- Document identity (namespace id + canonical path)
- The namespace ownership table shared by every store
- Expansion of shared built-in namespaces into per-store families
- Read-path routing to the owning store

Invariants:
    - Exclusive namespaces of all stores are disjoint
    - Foreign-band ids are read-only mirrors of a peer's namespace
"""

from .identity import DocumentIdentity, normalize_path
from .table import (
    FOREIGN_BAND_END,
    FOREIGN_BAND_START,
    FOREIGN_BAND_STRIDE,
    NamespaceLayout,
    OwnershipTable,
    ReadRoute,
    RouteKind,
    is_foreign_namespace_id,
)

__all__ = [
    "DocumentIdentity",
    "normalize_path",
    "OwnershipTable",
    "NamespaceLayout",
    "ReadRoute",
    "RouteKind",
    "is_foreign_namespace_id",
    "FOREIGN_BAND_START",
    "FOREIGN_BAND_END",
    "FOREIGN_BAND_STRIDE",
]
