"""
Configuration management for SplitWiki.

Runtime settings come from environment variables; the store topology (which
stores exist, which namespaces each one owns, how to reach them) is shared by
every store and lives in one YAML file named by SPLITWIKI_TOPOLOGY_FILE.

Invariants:
    - All settings have sensible defaults for local development
    - Exclusive namespace sets of all stores are disjoint
    - Exactly one store is current; every other store is a peer
    - Configuration objects are immutable once loaded

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep the topology file identical on every store
    - Never renumber stores in the topology; peer offsets depend on order
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any
from urllib.parse import quote

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)


class QueueBackend(Enum):
    """Supported job queue backends."""

    MEMORY = "memory"
    KAFKA = "kafka"


class RcVisibility(Enum):
    """How replicated edits show up in the recent changes feed."""

    VISIBLE = "visible"
    BOT = "bot"
    HIDDEN = "hidden"


@dataclass(frozen=True)
class StoreConfig:
    """One document store (one wiki database).

    Attributes:
        store_id: Database name, used as the store identity everywhere
        site_name: Human readable site name
        server: Canonical server URL (scheme + host)
        article_path: URL path template, "$1" is replaced by the page name
        meta_namespace: Name of the project namespace (defaults from site_name)
        exclusive_namespaces: Namespace ids owned by this store
    """

    store_id: str
    site_name: str
    server: str = "http://localhost"
    article_path: str = "/wiki/$1"
    meta_namespace: str | None = None
    exclusive_namespaces: tuple[int, ...] = ()

    @property
    def meta_name(self) -> str:
        """Project namespace name with spaces normalised."""
        return self.meta_namespace or self.site_name.replace(" ", "_")

    def url_for(self, prefixed_text: str) -> str:
        """Canonical URL of a page on this store."""
        return self.server + self.article_path.replace("$1", quote(prefixed_text, safe=":/_()"))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StoreConfig:
        """Create from a topology file entry."""
        missing = [k for k in ("store_id", "site_name") if k not in data]
        if missing:
            raise ConfigError(f"Store entry missing required fields: {missing}")
        return cls(
            store_id=str(data["store_id"]),
            site_name=str(data["site_name"]),
            server=data.get("server", "http://localhost"),
            article_path=data.get("article_path", "/wiki/$1"),
            meta_namespace=data.get("meta_namespace"),
            exclusive_namespaces=tuple(int(n) for n in data.get("exclusive_namespaces", ())),
        )


@dataclass(frozen=True)
class TopologyConfig:
    """The set of stores and how namespaces are split between them.

    Attributes:
        stores: All stores, in a fixed order shared by every store
        current_store: Store id this process serves
        builtin_namespaces_to_rename: Built-in namespaces each store keeps its
            own copy of (mirrored to peers under an offset id)
        extra_namespaces: Custom namespace ids and their names
    """

    stores: tuple[StoreConfig, ...]
    current_store: str
    builtin_namespaces_to_rename: tuple[int, ...] = (2, 3)
    extra_namespaces: dict[int, str] = field(default_factory=dict)

    @property
    def current(self) -> StoreConfig:
        return self.store(self.current_store)

    def store(self, store_id: str) -> StoreConfig:
        for store in self.stores:
            if store.store_id == store_id:
                return store
        raise ConfigError(f"Unknown store: {store_id}")

    def peers_of(self, store_id: str) -> tuple[StoreConfig, ...]:
        """All stores except the given one, in topology order."""
        return tuple(s for s in self.stores if s.store_id != store_id)

    @property
    def peers(self) -> tuple[StoreConfig, ...]:
        return self.peers_of(self.current_store)

    def with_current(self, store_id: str) -> TopologyConfig:
        """Same topology evaluated from another store."""
        return TopologyConfig(
            stores=self.stores,
            current_store=store_id,
            builtin_namespaces_to_rename=self.builtin_namespaces_to_rename,
            extra_namespaces=dict(self.extra_namespaces),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any], current_store: str | None = None) -> TopologyConfig:
        """Create from the parsed topology document.

        Raises:
            ConfigError: If the document is invalid
        """
        stores = tuple(StoreConfig.from_dict(s) for s in data.get("stores", ()))
        current = current_store or data.get("current_store")
        if not current:
            raise ConfigError("current_store is required (SPLITWIKI_CURRENT_STORE)")

        topology = cls(
            stores=stores,
            current_store=current,
            builtin_namespaces_to_rename=tuple(
                int(n) for n in data.get("builtin_namespaces_to_rename", (2, 3))
            ),
            extra_namespaces={int(k): str(v) for k, v in (data.get("namespaces") or {}).items()},
        )
        topology.validate()
        return topology

    @classmethod
    def from_file(cls, path: str | Path, current_store: str | None = None) -> TopologyConfig:
        """Load the topology YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Topology file not found: {path}")
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data, current_store=current_store)

    def validate(self) -> None:
        """Validate topology consistency.

        Raises:
            ConfigError: If the topology is invalid
        """
        if len(self.stores) < 2:
            raise ConfigError("At least two stores are required")

        ids = [s.store_id for s in self.stores]
        if len(set(ids)) != len(ids):
            raise ConfigError(f"Duplicate store ids: {ids}")

        if self.current_store not in ids:
            raise ConfigError(f"Current store {self.current_store!r} is not in the topology")

        owners: dict[int, str] = {}
        for store in self.stores:
            for ns in store.exclusive_namespaces:
                if ns in owners:
                    raise ConfigError(
                        f"Namespace {ns} is exclusive to both {owners[ns]} and {store.store_id}"
                    )
                owners[ns] = store.store_id

        for ns in self.builtin_namespaces_to_rename:
            if ns in owners:
                raise ConfigError(f"Namespace {ns} cannot be both shared and exclusive")


@dataclass(frozen=True)
class SyncConfig:
    """Replication engine configuration.

    Attributes:
        rc_visibility: Recent changes policy for replicated edits
        fetch_batch_size: Maximum revisions fetched per job
        auto_sync_tag: Change tag put on every replicated write
        content_models: Content models this store can construct
    """

    rc_visibility: RcVisibility = RcVisibility.VISIBLE
    fetch_batch_size: int = 200
    auto_sync_tag: str = "auto-sync"
    content_models: tuple[str, ...] = ("wikitext", "json", "css", "javascript", "text")

    @classmethod
    def from_env(cls) -> SyncConfig:
        """Load configuration from environment variables."""
        visibility = os.getenv("SPLITWIKI_RC_VISIBILITY", "visible").lower()
        try:
            rc_visibility = RcVisibility(visibility)
        except ValueError:
            raise ConfigError(
                f"Invalid SPLITWIKI_RC_VISIBILITY '{visibility}'. Must be one of: visible, bot, hidden"
            )
        return cls(
            rc_visibility=rc_visibility,
            fetch_batch_size=int(os.getenv("SPLITWIKI_FETCH_BATCH_SIZE", "200")),
            auto_sync_tag=os.getenv("SPLITWIKI_AUTO_SYNC_TAG", "auto-sync"),
        )


@dataclass(frozen=True)
class KafkaConfig:
    """Kafka/Redpanda job queue configuration.

    Attributes:
        brokers: Comma-separated list of broker addresses
        security_protocol: Security protocol (PLAINTEXT, SSL, SASL_PLAINTEXT, SASL_SSL)
        sasl_mechanism: SASL authentication mechanism
        sasl_username: SASL username (if authentication enabled)
        sasl_password: SASL password (if authentication enabled)
        ssl_cafile: Path to CA certificate file
        acks: Producer acknowledgment level
        enable_idempotence: Enable idempotent producer
        auto_offset_reset: Where a new consumer group starts
    """

    brokers: str = "localhost:9092"
    security_protocol: str = "PLAINTEXT"
    sasl_mechanism: str | None = None
    sasl_username: str | None = None
    sasl_password: str | None = None
    ssl_cafile: str | None = None
    acks: str = "all"
    enable_idempotence: bool = True
    auto_offset_reset: str = "earliest"

    @classmethod
    def from_env(cls) -> KafkaConfig:
        """Load configuration from environment variables."""
        return cls(
            brokers=os.getenv("KAFKA_BROKERS", "localhost:9092"),
            security_protocol=os.getenv("KAFKA_SECURITY_PROTOCOL", "PLAINTEXT"),
            sasl_mechanism=os.getenv("KAFKA_SASL_MECHANISM"),
            sasl_username=os.getenv("KAFKA_SASL_USERNAME"),
            sasl_password=os.getenv("KAFKA_SASL_PASSWORD"),
            ssl_cafile=os.getenv("KAFKA_SSL_CAFILE"),
            acks=os.getenv("KAFKA_ACKS", "all"),
            enable_idempotence=os.getenv("KAFKA_ENABLE_IDEMPOTENCE", "true").lower() == "true",
            auto_offset_reset=os.getenv("KAFKA_AUTO_OFFSET_RESET", "earliest"),
        )


@dataclass(frozen=True)
class QueueConfig:
    """Job queue configuration.

    Attributes:
        backend: Queue transport
        topic_prefix: Prefix of per-store topics ("<prefix>.<store_id>")
        consumer_group: Consumer group of the replication worker
    """

    backend: QueueBackend = QueueBackend.MEMORY
    topic_prefix: str = "splitwiki-sync"
    consumer_group: str = "splitwiki-worker"

    def topic_for(self, store_id: str) -> str:
        return f"{self.topic_prefix}.{store_id}"

    @classmethod
    def from_env(cls) -> QueueConfig:
        """Load configuration from environment variables."""
        backend_str = os.getenv("QUEUE_BACKEND", "memory").lower()
        try:
            backend = QueueBackend(backend_str)
        except ValueError:
            raise ConfigError(f"Invalid QUEUE_BACKEND '{backend_str}'. Must be one of: memory, kafka")
        return cls(
            backend=backend,
            topic_prefix=os.getenv("QUEUE_TOPIC_PREFIX", "splitwiki-sync"),
            consumer_group=os.getenv("QUEUE_CONSUMER_GROUP", "splitwiki-worker"),
        )


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        data_dir: Directory holding one SQLite file per store
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    data_dir: str = "/var/lib/splitwiki"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    def db_path(self, store_id: str) -> Path:
        safe_id = "".join(c for c in store_id if c.isalnum() or c in "-_")
        return Path(self.data_dir) / f"{safe_id}.db"

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATA_DIR", "/var/lib/splitwiki"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class HttpConfig:
    """Read-path HTTP server configuration."""

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8080

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=os.getenv("HTTP_ENABLED", "true").lower() == "true",
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", "8080")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    Attributes:
        topology: Stores and namespace ownership
        sync: Replication settings
        queue: Job queue settings
        kafka: Kafka configuration (if queue backend is KAFKA)
        storage: Local storage configuration
        http: Read-path HTTP server
        observability: Logging configuration
    """

    topology: TopologyConfig
    sync: SyncConfig = field(default_factory=SyncConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    kafka: KafkaConfig = field(default_factory=KafkaConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ConfigError: If required configuration is missing or invalid.
        """
        topology_file = os.getenv("SPLITWIKI_TOPOLOGY_FILE")
        if not topology_file:
            raise ConfigError("SPLITWIKI_TOPOLOGY_FILE is required")

        config = cls(
            topology=TopologyConfig.from_file(
                topology_file, current_store=os.getenv("SPLITWIKI_CURRENT_STORE")
            ),
            sync=SyncConfig.from_env(),
            queue=QueueConfig.from_env(),
            kafka=KafkaConfig.from_env(),
            storage=StorageConfig.from_env(),
            http=HttpConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ConfigError: If configuration is invalid.
        """
        self.topology.validate()

        if self.sync.fetch_batch_size < 1:
            raise ConfigError("SPLITWIKI_FETCH_BATCH_SIZE must be positive")

        if self.queue.backend == QueueBackend.KAFKA and not self.kafka.brokers:
            raise ConfigError("KAFKA_BROKERS is required when QUEUE_BACKEND=kafka")

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Server configuration loaded",
            extra={
                "current_store": self.topology.current_store,
                "peers": [p.store_id for p in self.topology.peers],
                "queue_backend": self.queue.backend.value,
                "kafka_brokers": self.kafka.brokers
                if self.queue.backend == QueueBackend.KAFKA
                else None,
                "rc_visibility": self.sync.rc_visibility.value,
                "fetch_batch_size": self.sync.fetch_batch_size,
                "data_dir": self.storage.data_dir,
                "log_level": self.observability.log_level,
            },
        )
