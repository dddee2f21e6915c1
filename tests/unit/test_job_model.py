"""
Unit tests for the replication job model.

Tests cover:
- Job validation and wire format
- Signatures used for duplicate suppression
- The job state machine
"""

import json
import warnings
from pathlib import Path

import pytest

from splitwiki.errors import InvariantViolation
from splitwiki.ownership.identity import DocumentIdentity
from splitwiki.sync import job as job_module
from splitwiki.sync.job import ForceDelete, JobResult, JobState, ReplicationJob


class TestReplicationJob:
    """Tests for ReplicationJob."""

    def test_for_document(self):
        job = ReplicationJob.for_document("publicwiki", DocumentIdentity(2, "Alice"))
        assert job.source_store == "publicwiki"
        assert job.identity == DocumentIdentity(2, "Alice")
        assert job.force_delete is None
        assert job.partition_key == "publicwiki:2:Alice"

    def test_job_ids_are_unique(self):
        a = ReplicationJob("publicwiki", 0, "Foo")
        b = ReplicationJob("publicwiki", 0, "Foo")
        assert a.job_id != b.job_id
        # Identity fields only
        assert a == b

    def test_invalid_path(self):
        with pytest.raises(InvariantViolation):
            ReplicationJob("publicwiki", 0, "not canonical")

    def test_missing_source(self):
        with pytest.raises(InvariantViolation):
            ReplicationJob("", 0, "Foo")

    def test_signature_ignores_job_id(self):
        a = ReplicationJob("publicwiki", 0, "Foo")
        b = ReplicationJob("publicwiki", 0, "Foo")
        assert a.signature == b.signature

    def test_signature_covers_parameters(self):
        plain = ReplicationJob("publicwiki", 0, "Foo")
        signatures = {
            plain.signature,
            ReplicationJob("publicwiki", 0, "Bar").signature,
            ReplicationJob("publicwiki", 1, "Foo").signature,
            ReplicationJob("privatewiki", 0, "Foo").signature,
            ReplicationJob("publicwiki", 0, "Foo", ForceDelete("Admin", "spam")).signature,
            ReplicationJob("publicwiki", 0, "Foo", ForceDelete("Admin", "other")).signature,
        }
        assert len(signatures) == 6

    def test_follow_up_is_plain(self):
        job = ReplicationJob("publicwiki", 0, "Foo", ForceDelete("Admin", "spam"))
        follow_up = job.follow_up()

        assert follow_up.force_delete is None
        assert follow_up.identity == job.identity
        assert follow_up.job_id != job.job_id

    def test_wire_format(self):
        job = ReplicationJob("publicwiki", 3, "Alice", ForceDelete("Admin", "spam"))
        data = json.loads(job.to_bytes())

        assert data["source_store"] == "publicwiki"
        assert data["namespace"] == 3
        assert data["path"] == "Alice"
        assert data["force_delete"] == {"actor": "Admin", "reason": "spam"}
        assert data["job_id"] == job.job_id

    def test_from_bytes(self):
        job = ReplicationJob("publicwiki", 3, "Alice", ForceDelete("Admin", "spam"))
        decoded = ReplicationJob.from_bytes(job.to_bytes())

        assert decoded == job
        assert decoded.job_id == job.job_id
        assert decoded.created_at_ms == job.created_at_ms
        assert decoded.signature == job.signature

    def test_from_dict_minimal(self):
        job = ReplicationJob.from_dict({"source_store": "publicwiki", "namespace": 0, "path": "Foo"})
        assert job.identity == DocumentIdentity(0, "Foo")
        assert job.job_id

    @pytest.mark.parametrize(
        "raw",
        [
            b"not json",
            b"\xff\xfe",
            b"[1, 2]",
            b'{"source_store": "publicwiki", "namespace": 0}',
            b'{"source_store": "publicwiki", "namespace": "0", "path": "Foo"}',
            b'{"source_store": "publicwiki", "namespace": 0, "path": "Foo", "force_delete": "x"}',
        ],
    )
    def test_invalid_payload(self, raw):
        with pytest.raises(InvariantViolation):
            ReplicationJob.from_bytes(raw)

    def test_str(self):
        job = ReplicationJob("publicwiki", 0, "Foo", ForceDelete("Admin", ""))
        assert str(job) == "ReplicationJob(publicwiki/0:Foo (force delete))"


class TestJobResult:
    """Tests for the job state machine."""

    @pytest.fixture
    def result(self):
        return JobResult(job=ReplicationJob("publicwiki", 0, "Foo"))

    def test_happy_path(self, result):
        for state in (JobState.RESOLVING, JobState.FETCHING, JobState.APPLYING, JobState.DONE):
            result.transition(state)
        assert result.success
        assert result.state.is_terminal

    def test_delete_path(self, result):
        for state in (JobState.RESOLVING, JobState.DELETING, JobState.FETCHING, JobState.DONE):
            result.transition(state)
        assert result.success

    def test_rejected_only_from_resolving(self, result):
        result.transition(JobState.RESOLVING)
        result.transition(JobState.FETCHING)
        with pytest.raises(InvariantViolation):
            result.transition(JobState.REJECTED)

    def test_terminal_states_are_final(self, result):
        result.transition(JobState.RESOLVING)
        result.transition(JobState.REJECTED)
        with pytest.raises(InvariantViolation):
            result.transition(JobState.FETCHING)
        assert not result.success

    def test_pending_is_not_terminal(self):
        assert not JobState.PENDING.is_terminal
        assert JobState.FAILED.is_terminal


class TestJobModule:
    """Tests for the job module source."""

    def test_compiles_without_warnings(self):
        """Docstring diagrams must not contain invalid escape sequences."""
        path = Path(job_module.__file__)
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            compile(path.read_text(encoding="utf-8"), str(path), "exec")
