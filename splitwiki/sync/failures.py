"""
Failed replication jobs, kept in the local store for operators.

Invariants:
    - Every job that ends FAILED on this store gets one row
    - Rows are never deleted; redriving only stamps sf_redriven_at

Table schema:
    sync_failures:
        - sf_id INTEGER PRIMARY KEY
        - sf_job_id TEXT
        - sf_payload BLOB (job as pushed on the queue)
        - sf_error_code TEXT
        - sf_error TEXT
        - sf_failed_at INTEGER (Unix ms)
        - sf_redriven_at INTEGER (Unix ms, NULL until redriven)
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from ..store.sqlite_store import SqliteDocumentStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FailedJob:
    failure_id: int
    job_id: str | None
    payload: bytes
    error_code: str
    error: str
    failed_at: int
    redriven_at: int | None = None


class FailedJobLog:
    """Record of failed jobs in the sync_failures table."""

    def __init__(self, store: SqliteDocumentStore) -> None:
        self.store = store

    async def initialize(self) -> None:
        with self.store.connect() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS sync_failures (
                    sf_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    sf_job_id TEXT,
                    sf_payload BLOB NOT NULL,
                    sf_error_code TEXT NOT NULL,
                    sf_error TEXT NOT NULL,
                    sf_failed_at INTEGER NOT NULL,
                    sf_redriven_at INTEGER
                );

                CREATE INDEX IF NOT EXISTS idx_sync_failures_open
                ON sync_failures(sf_redriven_at);
            """)

    async def record(
        self, payload: bytes, error_code: str, error: str, job_id: str | None = None
    ) -> int:
        """Store a failed job.

        Returns:
            Failure id
        """
        with self.store.connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO sync_failures (sf_job_id, sf_payload, sf_error_code, sf_error, sf_failed_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (job_id, payload, error_code, error, int(time.time() * 1000)),
            )
            failure_id = cursor.lastrowid

        logger.warning(
            "Recorded failed replication job",
            extra={"failure_id": failure_id, "job_id": job_id, "error_code": error_code},
        )
        return failure_id

    async def entries(self, include_redriven: bool = False) -> list[FailedJob]:
        """Failed jobs, oldest first."""
        query = "SELECT * FROM sync_failures"
        if not include_redriven:
            query += " WHERE sf_redriven_at IS NULL"
        query += " ORDER BY sf_id ASC"
        with self.store.connect() as conn:
            return [
                FailedJob(
                    failure_id=row["sf_id"],
                    job_id=row["sf_job_id"],
                    payload=bytes(row["sf_payload"]),
                    error_code=row["sf_error_code"],
                    error=row["sf_error"],
                    failed_at=row["sf_failed_at"],
                    redriven_at=row["sf_redriven_at"],
                )
                for row in conn.execute(query).fetchall()
            ]

    async def mark_redriven(self, failure_id: int) -> None:
        with self.store.connect() as conn:
            conn.execute(
                "UPDATE sync_failures SET sf_redriven_at = ? WHERE sf_id = ?",
                (int(time.time() * 1000), failure_id),
            )
