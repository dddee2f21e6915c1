"""
SplitWiki server - Main entry point.

This module starts one store's replication process:
- Local document store (read-write) with the change propagation trigger
- Peer document stores (read-only sources for replication)
- Replication worker (this store's job topic -> local store)
- Read-path HTTP server (serve or redirect to the owning peer)

Usage:
    python -m splitwiki.main

Configuration comes from environment variables plus the topology YAML file
named by SPLITWIKI_TOPOLOGY_FILE. See config.py for all available settings.

Invariants:
    - The queue is connected before the worker or the trigger run
    - Graceful shutdown lets the job in progress finish its transaction
    - Peer stores are only read, never written

How to change safely:
    - Add new components with enable/disable flags
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any

import json_log_formatter

from .api.http_server import create_http_app, run_http_server
from .config import ServerConfig
from .errors import ConfigError
from .links.link_store import ForeignRevisionLinkStore
from .ownership.table import OwnershipTable
from .queue.base import JobQueue, create_job_queue
from .store.sqlite_store import SqliteDocumentStore
from .sync.failures import FailedJobLog
from .sync.job import ReplicationJobRunner
from .sync.trigger import ChangePropagationTrigger
from .sync.worker import ReplicationWorker

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiokafka").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


class Server:
    """SplitWiki server orchestrator.

    Attributes:
        config: Server configuration
        ownership: Ownership table as seen by the current store
        local_store: The store this process serves
        peer_stores: Peers, opened as replication sources
        queue: Job queue
        worker: Replication worker

    Example:
        >>> server = Server(config)
        >>> await server.start()  # Runs until request_shutdown()
    """

    def __init__(self, config: ServerConfig | None = None, queue: JobQueue | None = None) -> None:
        """Initialize the server.

        Args:
            config: Server configuration (loaded from env if not provided)
            queue: Job queue to use instead of the configured backend
        """
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        self.ownership = OwnershipTable(self.config.topology)
        self.queue: JobQueue | None = queue
        self.local_store: SqliteDocumentStore | None = None
        self.peer_stores: dict[str, SqliteDocumentStore] = {}
        self.links: ForeignRevisionLinkStore | None = None
        self.failures: FailedJobLog | None = None
        self.trigger: ChangePropagationTrigger | None = None
        self.worker: ReplicationWorker | None = None

        self._tasks: list[asyncio.Task[Any]] = []

    @property
    def is_running(self) -> bool:
        return self._running

    async def setup(self) -> tuple[SqliteDocumentStore, ReplicationWorker]:
        """Open stores, connect the queue and wire the replication engine.

        Returns:
            The local store and the worker consuming its topic
        """
        topology = self.config.topology
        Path(self.config.storage.data_dir).mkdir(parents=True, exist_ok=True)

        if self.queue is None:
            self.queue = create_job_queue(self.config)
        await self.queue.connect()
        logger.info("Job queue connected", extra={"backend": self.config.queue.backend.value})

        layout = self.ownership.namespace_layout()
        self.local_store = SqliteDocumentStore.from_config(
            topology.current,
            self.config.storage,
            self.config.sync,
            protected_namespaces=layout.protected,
        )
        await self.local_store.initialize()

        for peer in topology.peers:
            self.peer_stores[peer.store_id] = SqliteDocumentStore.from_config(
                peer, self.config.storage, self.config.sync
            )

        self.links = ForeignRevisionLinkStore(self.local_store)
        await self.links.initialize()
        self.failures = FailedJobLog(self.local_store)
        await self.failures.initialize()

        self.trigger = ChangePropagationTrigger(self.ownership, self.queue, self.config.queue)
        self.local_store.add_listener(self.trigger)

        runner = ReplicationJobRunner(
            local_store=self.local_store,
            source_stores=self.peer_stores,
            links=self.links,
            ownership=self.ownership,
            sync_config=self.config.sync,
        )
        self.worker = ReplicationWorker(self.queue, runner, self.failures, self.config.queue)
        return self.local_store, self.worker

    async def start(self) -> None:
        """Start the server and all components, then wait for shutdown."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting SplitWiki server", extra={"store": self.config.topology.current_store})
        self.config.log_config()

        try:
            local_store, worker = await self.setup()

            self._tasks.append(asyncio.create_task(worker.start()))

            if self.config.http.enabled:
                app = create_http_app(
                    local_store, self.ownership, health=lambda: {"worker": worker.get_stats()}
                )
                self._tasks.append(
                    asyncio.create_task(
                        run_http_server(app, self.config.http.host, self.config.http.port)
                    )
                )

            self._running = True
            logger.info("SplitWiki server started successfully")

            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            await self._teardown()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping SplitWiki server")
        await self._teardown()
        logger.info("SplitWiki server stopped")

    async def _teardown(self) -> None:
        if self.worker:
            await self.worker.stop()

        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self.local_store and self.trigger:
            self.local_store.remove_listener(self.trigger)

        if self.queue:
            await self.queue.close()

        self._running = False

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    try:
        config = ServerConfig.from_env()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    server = Server(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
