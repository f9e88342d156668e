"""
Automated retry of failed import jobs.

Backoff follows the same exp | fixed | none modes as the rest of the
platform; the recovery stage is derived from the stage that failed.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime, timedelta

from eventimport.configs.config import RetrySettings
from eventimport.schemas.import_job import ProcessingStage

RECOVERY_STAGES = frozenset(
    {
        ProcessingStage.ANALYZE_DUPLICATES,
        ProcessingStage.DETECT_SCHEMA,
        ProcessingStage.VALIDATE_SCHEMA,
        ProcessingStage.GEOCODE_BATCH,
    }
)

# Stages that cannot be re-entered directly restart from the closest stage that can.
_RECOVERY_MAP = {
    ProcessingStage.AWAIT_APPROVAL: ProcessingStage.VALIDATE_SCHEMA,
    ProcessingStage.CREATE_SCHEMA_VERSION: ProcessingStage.VALIDATE_SCHEMA,
    ProcessingStage.CREATE_EVENTS: ProcessingStage.GEOCODE_BATCH,
}


def default_recovery_stage(failed_stage: ProcessingStage | None) -> ProcessingStage:
    """Map the stage a job failed in to the stage an automated retry resumes from."""
    if failed_stage is None:
        return ProcessingStage.ANALYZE_DUPLICATES
    if failed_stage in RECOVERY_STAGES:
        return failed_stage
    return _RECOVERY_MAP.get(failed_stage, ProcessingStage.ANALYZE_DUPLICATES)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_mode: str = "exp"  # exp | fixed | none
    base_delay_s: float = 60.0
    max_delay_s: float = 3600.0
    jitter: float = 0.0

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            backoff_mode=settings.backoff,
            base_delay_s=settings.base_delay_s,
            max_delay_s=settings.max_delay_s,
            jitter=settings.jitter,
        )

    def compute_backoff_s(self, attempt: int) -> float:
        """
        attempt: 1..N
        """
        if self.backoff_mode == "none":
            return 0.0
        if self.backoff_mode == "fixed":
            delay = self.base_delay_s
        else:
            delay = self.base_delay_s * (2 ** max(0, attempt - 1))

        delay = min(delay, self.max_delay_s)
        if self.jitter > 0:
            delay = delay * (1.0 + (random.random() * 2 - 1) * self.jitter)  # +- jitter
        return max(0.0, delay)

    def can_retry(self, attempts_so_far: int) -> bool:
        return attempts_so_far < self.max_attempts

    def next_retry_at(self, attempts_so_far: int, now: datetime) -> datetime | None:
        """When the next automated retry is due, or None once attempts are exhausted."""
        if not self.can_retry(attempts_so_far):
            return None
        return now + timedelta(seconds=self.compute_backoff_s(attempts_so_far + 1))
