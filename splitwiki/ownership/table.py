"""
Namespace ownership table for SplitWiki.

Pure functions over the immutable topology, no I/O:
- Which store owns a namespace
- Expansion of shared built-in namespaces into per-store families
- Translation of a peer's namespace id into the local id
- Read-path routing (serve locally or redirect to the owner)

Shared built-ins (User, User_talk by default) exist once per store. On store
S, the copy owned by peer P is shown read-only under

    derived = base + FOREIGN_BAND_START + FOREIGN_BAND_STRIDE * (peer_index + 1)

where peer_index is P's position among S's peers in topology order.

Invariants:
    - owner_of() of an exclusive namespace is the same on every store
    - Derived ids always fall inside [FOREIGN_BAND_START, FOREIGN_BAND_END)
    - is_foreign_namespace_id() is a pure range check, no peer lookup

How to change safely:
    - Changing the band or stride renumbers every mirrored page
    - Keep topology store order stable across deployments
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from ..config import StoreConfig, TopologyConfig
from ..errors import ConfigError, InvariantViolation
from .identity import (
    CANONICAL_NAMESPACES,
    NS_PROJECT,
    NS_PROJECT_TALK,
    DocumentIdentity,
    normalize_path,
)

logger = logging.getLogger(__name__)

FOREIGN_BAND_START = 100000
FOREIGN_BAND_END = 120000
FOREIGN_BAND_STRIDE = 10000


def is_foreign_namespace_id(namespace: int) -> bool:
    """Whether a namespace id is a read-only view of a peer's namespace."""
    return FOREIGN_BAND_START <= namespace < FOREIGN_BAND_END


class RouteKind(Enum):
    LOCAL = "local"
    REDIRECT = "redirect"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ReadRoute:
    """Where a read for a document must be served.

    Attributes:
        kind: LOCAL, REDIRECT or UNKNOWN (foreign band id with no peer)
        store_id: Store that is authoritative for the document
        url: Canonical URL on the owning peer (REDIRECT only)
    """

    kind: RouteKind
    store_id: str | None = None
    url: str | None = None


@dataclass(frozen=True)
class NamespaceLayout:
    """Namespace names and protections as seen by one store.

    Attributes:
        names: Namespace id to display name (db-key form)
        aliases: Extra names that resolve to a namespace id
        protected: Namespace ids that local users cannot edit
    """

    names: dict[int, str]
    aliases: dict[str, int] = field(default_factory=dict)
    protected: frozenset[int] = frozenset()

    def lookup(self, name: str) -> int | None:
        """Resolve a namespace name or alias (case-insensitive)."""
        wanted = name.replace(" ", "_").strip("_").casefold()
        for ns, ns_name in self.names.items():
            if ns_name and ns_name.casefold() == wanted:
                return ns
        for alias, ns in self.aliases.items():
            if alias.casefold() == wanted:
                return ns
        return None

    def parse(self, prefixed_text: str) -> DocumentIdentity:
        """Parse "Namespace:Path" into an identity.

        Text without a known namespace prefix is a main namespace path.

        Raises:
            InvariantViolation: If the text is not a valid document name
        """
        text = prefixed_text.replace(" ", "_").strip("_")
        if ":" in text:
            prefix, rest = text.split(":", 1)
            ns = self.lookup(prefix)
            if ns is not None:
                return DocumentIdentity.from_text(ns, rest)
        return DocumentIdentity.from_text(0, text)

    def prefixed(self, identity: DocumentIdentity) -> str:
        """Render an identity as "Namespace:Path"."""
        name = self.names.get(identity.namespace)
        if name is None:
            raise InvariantViolation(f"Unknown namespace id {identity.namespace}")
        return f"{name}:{identity.path}" if name else identity.path


class OwnershipTable:
    """Maps namespaces to the store that owns them.

    Built once at startup from the immutable topology and passed explicitly
    to the trigger, the job runner and the read path.

    Example:
        >>> table = OwnershipTable(topology)
        >>> table.owner_of(3000)
        'privatewiki'
        >>> table.translate_from("privatewiki", 2)
        110002
    """

    def __init__(self, topology: TopologyConfig) -> None:
        self.topology = topology
        self._exclusive_owner: dict[int, str] = {}
        for store in topology.stores:
            for ns in store.exclusive_namespaces:
                self._exclusive_owner[ns] = store.store_id
        self._shared = frozenset(topology.builtin_namespaces_to_rename)

        for ns in self._shared | {NS_PROJECT}:
            if not 0 <= ns < FOREIGN_BAND_STRIDE:
                raise ConfigError(f"Shared namespace {ns} must be in [0, {FOREIGN_BAND_STRIDE})")
        for store in topology.stores:
            peers = topology.peers_of(store.store_id)
            last = FOREIGN_BAND_START + FOREIGN_BAND_STRIDE * len(peers)
            if last + FOREIGN_BAND_STRIDE > FOREIGN_BAND_END:
                raise ConfigError(
                    f"Too many peers for store {store.store_id}: derived namespace ids "
                    f"would leave [{FOREIGN_BAND_START}, {FOREIGN_BAND_END})"
                )

    @property
    def current_store(self) -> str:
        return self.topology.current_store

    def exclusive_owner(self, namespace: int) -> str | None:
        return self._exclusive_owner.get(namespace)

    def is_exclusive_to(self, namespace: int, store_id: str) -> bool:
        return self._exclusive_owner.get(namespace) == store_id

    def is_shared(self, namespace: int) -> bool:
        """Whether the namespace is a built-in every store keeps its own copy of."""
        return namespace in self._shared

    def owner_of(self, namespace: int, current_store: str | None = None) -> str:
        """Store that is authoritative for a namespace.

        Args:
            namespace: Namespace id as seen by current_store
            current_store: Evaluating store (defaults to this table's store)

        Returns:
            Owning store id
        """
        current = current_store or self.current_store
        owner = self._exclusive_owner.get(namespace)
        if owner is not None:
            return owner
        mirrored = self.mirrors_of(namespace, current)
        if mirrored is not None:
            return mirrored[0]
        return current

    def offset_for(self, peer_id: str, current_store: str | None = None) -> int:
        """Namespace id offset used for a peer's mirrored namespaces."""
        current = current_store or self.current_store
        peers = self.topology.peers_of(current)
        for index, peer in enumerate(peers):
            if peer.store_id == peer_id:
                return FOREIGN_BAND_START + FOREIGN_BAND_STRIDE * (index + 1)
        raise ConfigError(f"{peer_id!r} is not a peer of {current!r}")

    def derived_id(self, base: int, peer_id: str, current_store: str | None = None) -> int:
        return base + self.offset_for(peer_id, current_store)

    def mirrors_of(
        self, namespace: int, current_store: str | None = None
    ) -> tuple[str, int] | None:
        """Map a foreign-band id back to (peer store id, base namespace).

        Returns:
            None if the id is outside the band or maps to no peer
        """
        if not is_foreign_namespace_id(namespace):
            return None
        current = current_store or self.current_store
        peers = self.topology.peers_of(current)
        index, base = divmod(namespace - FOREIGN_BAND_START, FOREIGN_BAND_STRIDE)
        if not 1 <= index <= len(peers):
            return None
        return peers[index - 1].store_id, base

    def translate_from(self, source_store: str, namespace: int) -> int:
        """Local namespace id for a namespace id of the source store.

        Exclusive namespaces keep their id everywhere; shared built-ins of the
        source land in the source's derived id. Anything else is returned
        unchanged and left for the caller to reject.
        """
        if namespace in self._exclusive_owner:
            return namespace
        if namespace in self._shared and source_store != self.current_store:
            return self.derived_id(namespace, source_store)
        return namespace

    def broadcasts(self, namespace: int, store_id: str | None = None) -> bool:
        """Whether edits in this namespace must be replicated to peers."""
        store = store_id or self.current_store
        return self.is_exclusive_to(namespace, store) or namespace in self._shared

    def namespace_layout(self, current_store: str | None = None) -> NamespaceLayout:
        """Namespace names, aliases and protections as seen by a store."""
        current = self.topology.store(current_store or self.current_store)
        names = dict(CANONICAL_NAMESPACES)
        names[NS_PROJECT] = current.meta_name
        names[NS_PROJECT_TALK] = f"{current.meta_name}_talk"
        for ns, name in self.topology.extra_namespaces.items():
            names[ns] = normalize_path(name)

        aliases: dict[str, int] = {}
        protected: set[int] = set()
        peers = self.topology.peers_of(current.store_id)

        for ns in self.topology.builtin_namespaces_to_rename:
            if ns not in names:
                continue
            old_name = names[ns]
            names[ns] = f"{old_name}_({current.meta_name})"
            aliases[old_name] = ns
            for peer in peers:
                derived = self.derived_id(ns, peer.store_id, current.store_id)
                names[derived] = f"{old_name}_({peer.meta_name})"
                protected.add(derived)

        for peer in peers:
            project = self.derived_id(NS_PROJECT, peer.store_id, current.store_id)
            names[project] = peer.meta_name
            protected.add(project)
            protected.update(peer.exclusive_namespaces)

        return NamespaceLayout(names=names, aliases=aliases, protected=frozenset(protected))

    def route_read(
        self, identity: DocumentIdentity, current_store: str | None = None
    ) -> ReadRoute:
        """Decide whether a read is served locally or redirected.

        A document in a peer's exclusive namespace, or in the foreign band,
        is never served from local content.
        """
        current = current_store or self.current_store
        namespace = identity.namespace

        owner = self._exclusive_owner.get(namespace)
        if owner is not None and owner != current:
            peer = self.topology.store(owner)
            return ReadRoute(RouteKind.REDIRECT, owner, self._peer_url(peer, identity))

        if is_foreign_namespace_id(namespace):
            mirrored = self.mirrors_of(namespace, current)
            if mirrored is None:
                return ReadRoute(RouteKind.UNKNOWN)
            peer_id, base = mirrored
            peer = self.topology.store(peer_id)
            target = DocumentIdentity(namespace=base, path=identity.path)
            return ReadRoute(RouteKind.REDIRECT, peer_id, self._peer_url(peer, target))

        return ReadRoute(RouteKind.LOCAL, current)

    def _peer_url(self, peer: StoreConfig, identity: DocumentIdentity) -> str:
        layout = self.namespace_layout(peer.store_id)
        return peer.url_for(layout.prefixed(identity))
