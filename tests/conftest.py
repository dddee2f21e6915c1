"""
Shared fixtures: a public/private store pair wired through an in-memory queue.
"""

import tempfile
from pathlib import Path

import pytest

from splitwiki.config import QueueConfig, SyncConfig, TopologyConfig
from splitwiki.links.link_store import ForeignRevisionLinkStore
from splitwiki.ownership.table import OwnershipTable
from splitwiki.queue.memory import InMemoryJobQueue
from splitwiki.store.sqlite_store import SqliteDocumentStore
from splitwiki.sync.failures import FailedJobLog
from splitwiki.sync.job import JobResult, ReplicationJobRunner
from splitwiki.sync.trigger import ChangePropagationTrigger
from splitwiki.sync.worker import ReplicationWorker

NS_SECRET = 3000
NS_SECRET_TALK = 3001

TOPOLOGY = {
    "stores": [
        {
            "store_id": "publicwiki",
            "site_name": "Public Wiki",
            "meta_namespace": "PublicWiki",
            "server": "https://public.example.org",
            "exclusive_namespaces": [0, 1],
        },
        {
            "store_id": "privatewiki",
            "site_name": "Private Wiki",
            "meta_namespace": "PrivateWiki",
            "server": "https://private.example.org",
            "exclusive_namespaces": [NS_SECRET, NS_SECRET_TALK],
        },
    ],
    "builtin_namespaces_to_rename": [2, 3],
    "namespaces": {NS_SECRET: "Secret", NS_SECRET_TALK: "Secret_talk"},
}


def make_topology(current_store="publicwiki"):
    return TopologyConfig.from_dict(TOPOLOGY, current_store=current_store)


class Cluster:
    """Both stores of the topology, each with its trigger, runner and worker."""

    def __init__(self, data_dir, sync_config=None):
        self.data_dir = Path(data_dir)
        self.sync_config = sync_config or SyncConfig()
        self.queue_config = QueueConfig()
        self.queue = InMemoryJobQueue()
        self.stores = {}
        self.tables = {}
        self.links = {}
        self.failures = {}
        self.triggers = {}
        self.workers = {}

    async def start(self):
        await self.queue.connect()
        base = make_topology()
        for store_config in base.stores:
            store_id = store_config.store_id
            table = OwnershipTable(base.with_current(store_id))
            store = SqliteDocumentStore(
                store_id,
                self.data_dir / f"{store_id}.db",
                wal_mode=False,
                content_models=self.sync_config.content_models,
                protected_namespaces=table.namespace_layout().protected,
            )
            await store.initialize()
            links = ForeignRevisionLinkStore(store)
            await links.initialize()
            failures = FailedJobLog(store)
            await failures.initialize()
            trigger = ChangePropagationTrigger(table, self.queue, self.queue_config)
            store.add_listener(trigger)

            self.stores[store_id] = store
            self.tables[store_id] = table
            self.links[store_id] = links
            self.failures[store_id] = failures
            self.triggers[store_id] = trigger

        for store_id, store in self.stores.items():
            sources = {sid: s for sid, s in self.stores.items() if sid != store_id}
            runner = ReplicationJobRunner(
                store, sources, self.links[store_id], self.tables[store_id], self.sync_config
            )
            self.workers[store_id] = ReplicationWorker(
                self.queue, runner, self.failures[store_id], self.queue_config
            )
        return self

    @property
    def public(self):
        return self.stores["publicwiki"]

    @property
    def private(self):
        return self.stores["privatewiki"]

    def runner(self, store_id):
        return self.workers[store_id].runner

    def topic(self, store_id):
        return self.queue_config.topic_for(store_id)

    async def drain(self, store_id) -> list[JobResult]:
        """Process queued jobs for a store until its topic is empty."""
        worker = self.workers[store_id]
        results = []
        while True:
            records = await self.queue.drain(worker.topic, worker.group_id)
            if not records:
                return results
            for record in records:
                result = await worker.process_record(record)
                if result is not None:
                    results.append(result)

    async def settle(self, rounds=5):
        """Drain every store until no store has pending jobs."""
        for _ in range(rounds):
            processed = 0
            for store_id in self.stores:
                processed += len(await self.drain(store_id))
            if not processed:
                return


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def topology():
    return make_topology()


@pytest.fixture
async def make_cluster(data_dir):
    """Factory for clusters with a custom SyncConfig."""
    started = []

    async def factory(sync_config=None):
        cluster = await Cluster(Path(data_dir) / f"cluster{len(started)}", sync_config).start()
        started.append(cluster)
        return cluster

    yield factory
    for cluster in started:
        await cluster.queue.close()


@pytest.fixture
async def cluster(make_cluster):
    return await make_cluster()
