"""
Error taxonomy for the import pipeline.

Stage errors are raised by the Stage Transition Engine and surfaced to the
caller with the stored job left unchanged. Geocoding errors carry a machine
readable ``code`` and a ``retryable`` flag so that callers can decide whether
a later attempt may succeed.
"""

from __future__ import annotations

from typing import Any


class EventImportError(Exception):
    """Base class for all pipeline errors."""


class JobNotFoundError(EventImportError):
    """Raised when an import job id does not resolve to a stored job."""

    def __init__(self, job_id: str):
        super().__init__(f"Import job '{job_id}' not found")
        self.job_id = job_id


# ============================================================================
# STAGE TRANSITIONS
# ============================================================================


class StageTransitionError(EventImportError):
    """Raised when a requested stage change is not an edge of the stage graph."""

    def __init__(self, message: str, *, job_id: str | None = None, from_stage: str | None = None, to_stage: str | None = None):
        super().__init__(message)
        self.job_id = job_id
        self.from_stage = from_stage
        self.to_stage = to_stage


class TerminalStateViolation(StageTransitionError):
    """Raised on any non-override attempt to change a completed job."""


class InvalidRecoveryStage(StageTransitionError):
    """Raised when recovering a failed job into a stage outside the recovery set."""


class ApprovalStateError(StageTransitionError):
    """Raised when an approval is issued for a job that is not awaiting approval."""


class PolicyDenied(EventImportError):
    """Raised when an actor is not allowed to perform an action on a job."""

    def __init__(self, action: str, actor_id: str | None, reason: str):
        super().__init__(f"{action} denied for actor '{actor_id}': {reason}")
        self.action = action
        self.actor_id = actor_id
        self.reason = reason


# ============================================================================
# SCHEMA & ROWS
# ============================================================================


class SchemaIncompatible(EventImportError):
    """
    Raised when breaking schema changes cannot be resolved automatically.

    The validate-schema stage catches this error and routes the job to
    ``await-approval``; it never reaches the caller of the pipeline.
    """

    def __init__(self, reason: str, breaking_changes: list[dict[str, Any]] | None = None):
        super().__init__(reason)
        self.reason = reason
        self.breaking_changes = breaking_changes or []


class StrictValidationFailed(EventImportError):
    """Raised when strict validation is enabled and at least one row is invalid."""

    def __init__(self, errors: list[dict[str, Any]]):
        first = errors[0] if errors else {}
        super().__init__(
            f"{len(errors)} row(s) failed schema validation "
            f"(first: row {first.get('row')}: {first.get('error')})"
        )
        self.errors = errors


class UniqueKeyError(EventImportError):
    """Raised when a row does not provide the fields its id strategy needs."""


# ============================================================================
# GEOCODING
# ============================================================================


class GeocodingError(EventImportError):
    """Base geocoding failure with a code and retry hint."""

    def __init__(self, message: str, code: str = "GEOCODING_FAILED", retryable: bool = False, provider: str | None = None):
        super().__init__(message)
        self.code = code
        self.retryable = retryable
        self.provider = provider


class ProviderError(GeocodingError):
    """A single provider call failed (timeout, HTTP error, quota)."""


class ResultRejected(GeocodingError):
    """A provider answered but the result failed the acceptance checks."""


class AllProvidersFailed(GeocodingError):
    """Every enabled provider was tried without an accepted result."""

    def __init__(self, address: str, attempts: list[str] | None = None):
        super().__init__(
            f"All geocoding providers failed for address: {address}",
            code="ALL_PROVIDERS_FAILED",
            retryable=False,
        )
        self.address = address
        self.attempts = attempts or []
