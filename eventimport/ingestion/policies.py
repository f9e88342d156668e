"""
Access policies for job actions.

Policies are pure functions ``(actor, job) -> Decision``; callers enforce them
with ``require`` before asking the engine to act.
"""

from __future__ import annotations

from dataclasses import dataclass

from eventimport.errors import PolicyDenied
from eventimport.schemas.import_job import ImportJob

ADMIN = "admin"
EDITOR = "editor"


@dataclass(frozen=True)
class Actor:
    """A user issuing a command. ``None`` in place of an actor means the system itself."""

    id: str
    role: str = EDITOR


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str = ""

    @classmethod
    def allow(cls) -> "Decision":
        return cls(True)

    @classmethod
    def deny(cls, reason: str) -> "Decision":
        return cls(False, reason)


def approval_policy(actor: Actor | None, job: ImportJob) -> Decision:
    """Schema approvals need a human admin or editor."""
    if actor is None:
        return Decision.deny("schema approval requires a user")
    if actor.role not in (ADMIN, EDITOR):
        return Decision.deny(f"role '{actor.role}' cannot approve schema changes")
    return Decision.allow()


def recovery_policy(actor: Actor | None, job: ImportJob) -> Decision:
    """Recovery is open to automated retries and to admins or editors."""
    if actor is None or actor.role in (ADMIN, EDITOR):
        return Decision.allow()
    return Decision.deny(f"role '{actor.role}' cannot recover import jobs")


def override_policy(actor: Actor | None, job: ImportJob) -> Decision:
    if actor is None or actor.role != ADMIN:
        return Decision.deny("stage overrides are restricted to admins")
    return Decision.allow()


def require(decision: Decision, action: str, actor: Actor | None) -> None:
    """Raise PolicyDenied unless the decision allows the action."""
    if not decision.allowed:
        raise PolicyDenied(action, actor.id if actor else None, decision.reason)
