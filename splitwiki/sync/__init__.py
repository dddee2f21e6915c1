"""
Replication engine for SplitWiki.

This module handles:
- Replication jobs and the runner that applies them to the local store
- The trigger that turns local mutations into jobs for peers
- The worker that consumes this store's job topic
- The record of failed jobs

Invariants:
    - Jobs are idempotent: rerunning a finished job applies nothing
    - A rejected job never mutates the local store
    - Replicated writes carry the auto-sync tag

How to change safely:
    - Test idempotency by running each job twice
    - Test ownership rules from both sides of a store pair
"""

from .failures import FailedJob, FailedJobLog
from .job import (
    ForceDelete,
    JobResult,
    JobState,
    ReplicationJob,
    ReplicationJobRunner,
)
from .trigger import ChangePropagationTrigger
from .worker import ReplicationWorker

__all__ = [
    "FailedJob",
    "FailedJobLog",
    "ForceDelete",
    "JobResult",
    "JobState",
    "ReplicationJob",
    "ReplicationJobRunner",
    "ChangePropagationTrigger",
    "ReplicationWorker",
]
