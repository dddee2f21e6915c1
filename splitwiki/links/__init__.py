"""
Foreign revision links: per-document replication checkpoints.
"""

from .link_store import ForeignRevisionLink, ForeignRevisionLinkStore

__all__ = ["ForeignRevisionLink", "ForeignRevisionLinkStore"]
