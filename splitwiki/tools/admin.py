"""
Admin CLI for SplitWiki replication.

Commands:
    enqueue       Queue a replication job for a local page to its peers
    checkpoint    Show the replication checkpoint of a local page
    check-links   Report link rows that point at no local revision
    failures      List failed replication jobs
    redrive       Push failed jobs back onto this store's topic

Usage:
    splitwiki-admin enqueue "Main Page"
    splitwiki-admin enqueue "Old title" --delete-as Admin --reason "cleanup"
    splitwiki-admin checkpoint "User_(PublicWiki):Alice" --source publicwiki
    splitwiki-admin check-links
    splitwiki-admin redrive

Configuration is read from the environment like the server (see config.py).
Queue commands need a shared backend (kafka) to reach a running worker.

Invariants:
    - Read commands never write rows; they only create missing tables
    - A redriven failure is stamped, never deleted

How to change safely:
    - Keep exit codes stable; operators script against them
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass, field

from ..config import ServerConfig
from ..errors import InvariantViolation, SplitWikiError
from ..links.link_store import ForeignRevisionLink, ForeignRevisionLinkStore
from ..ownership.identity import DocumentIdentity
from ..ownership.table import OwnershipTable
from ..queue.base import SIGNATURE_HEADER, JobQueue, create_job_queue
from ..store.sqlite_store import SqliteDocumentStore
from ..sync.failures import FailedJob, FailedJobLog
from ..sync.job import ForceDelete, ReplicationJob

logger = logging.getLogger(__name__)


@dataclass
class RedriveResult:
    """Outcome of a redrive run.

    Attributes:
        redriven: Failure ids pushed back onto the queue
        skipped: Failure ids whose payload is not a valid job
    """

    redriven: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)


class AdminTool:
    """Operator commands against the current store.

    Example:
        >>> tool = AdminTool(ServerConfig.from_env())
        >>> await tool.checkpoint("Main_Page", "publicwiki")
        42
    """

    def __init__(self, config: ServerConfig, queue: JobQueue | None = None) -> None:
        self.config = config
        self.ownership = OwnershipTable(config.topology)
        self.layout = self.ownership.namespace_layout()
        self.store = SqliteDocumentStore.from_config(
            config.topology.current,
            config.storage,
            config.sync,
            protected_namespaces=self.layout.protected,
        )
        self.links = ForeignRevisionLinkStore(self.store)
        self.failures = FailedJobLog(self.store)
        self._queue = queue

    async def _connected_queue(self) -> JobQueue:
        if self._queue is None:
            self._queue = create_job_queue(self.config)
        if not self._queue.is_connected:
            await self._queue.connect()
        return self._queue

    async def close(self) -> None:
        if self._queue is not None and self._queue.is_connected:
            await self._queue.close()

    def parse_title(self, title: str) -> DocumentIdentity:
        """Parse a prefixed title with this store's namespace names."""
        return self.layout.parse(title)

    async def _push(self, topic: str, job: ReplicationJob) -> bool:
        queue = await self._connected_queue()
        pos = await queue.push(
            topic,
            job.partition_key,
            job.to_bytes(),
            headers={SIGNATURE_HEADER: job.signature.encode("utf-8")},
        )
        return pos is not None

    async def enqueue(
        self,
        title: str,
        peers: list[str] | None = None,
        delete_as: str | None = None,
        reason: str = "",
    ) -> list[ReplicationJob]:
        """Queue jobs for a local page, as the trigger would after an edit.

        Raises:
            InvariantViolation: If the page's namespace is not replicated
        """
        identity = self.parse_title(title)
        current = self.config.topology.current_store
        if not self.ownership.broadcasts(identity.namespace, current):
            raise InvariantViolation(
                f"Namespace {identity.namespace} is not replicated from {current}"
            )

        force_delete = ForceDelete(actor=delete_as, reason=reason) if delete_as else None
        targets = peers or [p.store_id for p in self.config.topology.peers]

        jobs = []
        for peer_id in targets:
            self.config.topology.store(peer_id)
            job = ReplicationJob.for_document(current, identity, force_delete)
            await self._push(self.config.queue.topic_for(peer_id), job)
            jobs.append(job)
            logger.info("Enqueued job", extra={"job_id": job.job_id, "peer": peer_id})
        return jobs

    async def checkpoint(self, title: str, source_store: str | None = None) -> int:
        """Source revision id the next job for this page continues after."""
        identity = self.parse_title(title)
        page = await self.store.get_page(identity)
        if page is None:
            return 0
        await self.links.initialize()
        with self.store.connect() as conn:
            return self.links.most_recent_linked(page.page_id, conn, source_store=source_store)

    async def check_links(self) -> list[ForeignRevisionLink]:
        await self.links.initialize()
        return await self.links.dangling_links()

    async def list_failures(self, include_redriven: bool = False) -> list[FailedJob]:
        await self.failures.initialize()
        return await self.failures.entries(include_redriven=include_redriven)

    async def redrive(self) -> RedriveResult:
        """Push every open failure back onto this store's topic."""
        result = RedriveResult()
        topic = self.config.queue.topic_for(self.config.topology.current_store)

        for failure in await self.list_failures():
            try:
                job = ReplicationJob.from_bytes(failure.payload)
            except InvariantViolation as e:
                logger.warning(
                    f"Skipping undecodable failure {failure.failure_id}: {e.message}"
                )
                result.skipped.append(failure.failure_id)
                continue

            await self._push(topic, job)
            await self.failures.mark_redriven(failure.failure_id)
            result.redriven.append(failure.failure_id)

        return result


def _print_failures(failures: list[FailedJob]) -> None:
    if not failures:
        print("No failed jobs")
        return
    for failure in failures:
        status = "redriven" if failure.redriven_at else "open"
        print(f"  #{failure.failure_id} [{status}] {failure.error_code}: {failure.error}")


async def _run(args: argparse.Namespace, tool: AdminTool) -> int:
    if args.command == "enqueue":
        jobs = await tool.enqueue(
            args.title, peers=args.to or None, delete_as=args.delete_as, reason=args.reason
        )
        for job in jobs:
            print(f"Queued {job}")
        return 0

    if args.command == "checkpoint":
        print(await tool.checkpoint(args.title, args.source))
        return 0

    if args.command == "check-links":
        dangling = await tool.check_links()
        if not dangling:
            print("All links point at local revisions")
            return 0
        print(f"Found {len(dangling)} dangling link(s):")
        for link in dangling:
            print(f"  rev {link.local_rev_id} -> {link.source_store}@{link.source_rev_seq}")
        return 1

    if args.command == "failures":
        _print_failures(await tool.list_failures(include_redriven=args.all))
        return 0

    if args.command == "redrive":
        redrive = await tool.redrive()
        print(f"Redriven: {len(redrive.redriven)}, skipped: {len(redrive.skipped)}")
        return 0 if not redrive.skipped else 1

    raise ValueError(f"Unknown command: {args.command}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="SplitWiki replication admin tool")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    enqueue_parser = subparsers.add_parser("enqueue", help="Queue replication of a local page")
    enqueue_parser.add_argument("title", help="Prefixed page title")
    enqueue_parser.add_argument(
        "--to", action="append", help="Peer store id (repeatable, default: all peers)"
    )
    enqueue_parser.add_argument("--delete-as", help="Delete the peer copy first, as this user")
    enqueue_parser.add_argument("--reason", default="", help="Deletion reason")

    checkpoint_parser = subparsers.add_parser("checkpoint", help="Show a page's checkpoint")
    checkpoint_parser.add_argument("title", help="Prefixed page title")
    checkpoint_parser.add_argument("--source", help="Only links from this source store")

    subparsers.add_parser("check-links", help="Report dangling link rows")

    failures_parser = subparsers.add_parser("failures", help="List failed jobs")
    failures_parser.add_argument("--all", action="store_true", help="Include redriven jobs")

    subparsers.add_parser("redrive", help="Re-queue failed jobs")
    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for the admin tool."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    try:
        config = ServerConfig.from_env()
    except SplitWikiError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)

    tool = AdminTool(config)

    async def run() -> int:
        try:
            return await _run(args, tool)
        finally:
            await tool.close()

    try:
        code = asyncio.run(run())
    except SplitWikiError as e:
        print(f"Error [{e.code}]: {e.message}", file=sys.stderr)
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
