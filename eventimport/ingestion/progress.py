"""
Weighted job progress.

Each processing stage contributes a fixed share of the overall percentage;
batched stages contribute proportionally to the rows they have processed.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from eventimport.schemas.import_job import JobProgress, ProcessingStage, StageProgress, StageStatus

STAGE_WEIGHTS: dict[ProcessingStage, int] = {
    ProcessingStage.ANALYZE_DUPLICATES: 10,
    ProcessingStage.DETECT_SCHEMA: 15,
    ProcessingStage.VALIDATE_SCHEMA: 5,
    ProcessingStage.CREATE_SCHEMA_VERSION: 5,
    ProcessingStage.GEOCODE_BATCH: 35,
    ProcessingStage.CREATE_EVENTS: 30,
}


def init_progress(total_rows: int) -> JobProgress:
    return JobProgress(
        total_rows=total_rows,
        stages={stage.value: StageProgress(rows_total=total_rows) for stage in STAGE_WEIGHTS},
    )


def _stage(progress: JobProgress, stage: ProcessingStage) -> StageProgress:
    return progress.stages.setdefault(stage.value, StageProgress(rows_total=progress.total_rows))


def stage_fraction(stage_progress: StageProgress) -> float:
    if stage_progress.status in (StageStatus.COMPLETED, StageStatus.SKIPPED):
        return 1.0
    if stage_progress.status == StageStatus.PENDING or not stage_progress.rows_total:
        return 0.0
    return min(1.0, stage_progress.rows_processed / stage_progress.rows_total)


def overall_percentage(progress: JobProgress) -> float:
    total_weight = sum(STAGE_WEIGHTS.values())
    done = sum(
        weight * stage_fraction(progress.stages[stage.value])
        for stage, weight in STAGE_WEIGHTS.items()
        if stage.value in progress.stages
    )
    return round(100.0 * done / total_weight, 2)


def estimate_completion(progress: JobProgress, started_at: datetime, now: datetime) -> datetime | None:
    """Extrapolate the finish time from the progress rate so far."""
    percentage = progress.overall_percentage
    if percentage <= 0:
        return None
    if percentage >= 100:
        return now
    elapsed = (now - started_at).total_seconds()
    remaining = elapsed * (100.0 - percentage) / percentage
    return now + timedelta(seconds=remaining)


def _refresh(progress: JobProgress, started_at: datetime | None, now: datetime) -> JobProgress:
    progress.overall_percentage = overall_percentage(progress)
    if started_at is not None:
        progress.estimated_completion_time = estimate_completion(progress, started_at, now)
    return progress


def record_batch(
    progress: JobProgress,
    stage: ProcessingStage,
    rows: int,
    now: datetime,
    started_at: datetime | None = None,
) -> JobProgress:
    """Count one processed batch of a stage."""
    progress = progress.model_copy(deep=True)
    sp = _stage(progress, stage)
    if sp.status == StageStatus.PENDING:
        sp.status = StageStatus.IN_PROGRESS
        sp.started_at = now
    sp.rows_processed += rows
    sp.batches_processed += 1
    elapsed = (now - sp.started_at).total_seconds() if sp.started_at else 0
    if elapsed > 0:
        sp.rows_per_second = round(sp.rows_processed / elapsed, 2)
    return _refresh(progress, started_at, now)


def complete_stage(
    progress: JobProgress,
    stage: ProcessingStage,
    now: datetime,
    started_at: datetime | None = None,
    skipped: bool = False,
) -> JobProgress:
    progress = progress.model_copy(deep=True)
    sp = _stage(progress, stage)
    sp.status = StageStatus.SKIPPED if skipped else StageStatus.COMPLETED
    sp.started_at = sp.started_at or now
    sp.completed_at = now
    return _refresh(progress, started_at, now)


def reset_stages(progress: JobProgress, stages: list[ProcessingStage]) -> JobProgress:
    """Put stages back to pending, used when a job is recovered into an earlier stage."""
    progress = progress.model_copy(deep=True)
    for stage in stages:
        if stage in STAGE_WEIGHTS:
            progress.stages[stage.value] = StageProgress(rows_total=progress.total_rows)
    progress.overall_percentage = overall_percentage(progress)
    progress.estimated_completion_time = None
    return progress
