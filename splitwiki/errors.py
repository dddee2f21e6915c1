"""
Error types for SplitWiki.

This module defines the failure taxonomy shared by the replication engine:
- SplitWikiError: Base exception
- RejectedJob: Ownership mismatch, dropped without retry
- TransientStoreFailure: Read/write failure in either store, safe to redeliver
- IdentityResolutionFailure: Actor name or content model cannot be resolved
- InvariantViolation: Malformed data, needs a data fix before retrying
- ConfigError: Invalid configuration at startup

Invariants:
    - All errors inherit from SplitWikiError
    - Errors include context for debugging
    - Only RejectedJob is considered "not a fault"
"""

from __future__ import annotations

from typing import Any


class SplitWikiError(Exception):
    """Base exception for all SplitWiki errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    code = "SPLITWIKI_ERROR"
    retryable = False

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class RejectedJob(SplitWikiError):
    """Job names a namespace the source store does not own.

    Raised when:
    - The namespace is exclusive to the destination store
    - The namespace is neither exclusive to the source nor a mirrored built-in
    """

    code = "REJECTED_JOB"


class TransientStoreFailure(SplitWikiError):
    """A store read or write failed; the job may be redelivered."""

    code = "TRANSIENT_STORE_FAILURE"
    retryable = True


class IdentityResolutionFailure(SplitWikiError):
    """Actor name or content model could not be resolved locally."""

    code = "IDENTITY_RESOLUTION_FAILURE"


class InvariantViolation(SplitWikiError):
    """Data breaks a structural invariant (bad identity, zero revision id)."""

    code = "INVARIANT_VIOLATION"


class ProtectedNamespaceError(SplitWikiError):
    """A direct edit targeted a namespace that is read-only on this store."""

    code = "PROTECTED_NAMESPACE"

    def __init__(self, namespace: int, message: str | None = None) -> None:
        self.namespace = namespace
        super().__init__(
            message or f"Namespace {namespace} is read-only on this store",
            details={"namespace": namespace},
        )


class ConfigError(SplitWikiError):
    """Configuration is missing or inconsistent."""

    code = "CONFIG_ERROR"
