"""Unit tests for weighted job progress."""

from datetime import datetime, timedelta, timezone

from eventimport.ingestion.progress import (
    STAGE_WEIGHTS,
    complete_stage,
    init_progress,
    overall_percentage,
    record_batch,
    reset_stages,
)
from eventimport.schemas.import_job import ProcessingStage, StageStatus

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


class TestProgress:
    """Tests for progress accounting."""

    def test_weights_sum_to_hundred(self):
        assert sum(STAGE_WEIGHTS.values()) == 100

    def test_init(self):
        progress = init_progress(10)
        assert progress.total_rows == 10
        assert set(progress.stages) == {s.value for s in STAGE_WEIGHTS}
        assert overall_percentage(progress) == 0.0

    def test_record_batch(self):
        """A half-processed stage should contribute half its weight."""
        progress = record_batch(init_progress(10), ProcessingStage.GEOCODE_BATCH, 5, NOW)
        stage = progress.stages[ProcessingStage.GEOCODE_BATCH.value]
        assert stage.status == StageStatus.IN_PROGRESS
        assert stage.rows_processed == 5
        assert stage.batches_processed == 1
        assert progress.overall_percentage == 17.5

    def test_record_batch_does_not_mutate_input(self):
        original = init_progress(10)
        record_batch(original, ProcessingStage.DETECT_SCHEMA, 5, NOW)
        assert original.stages[ProcessingStage.DETECT_SCHEMA.value].rows_processed == 0

    def test_rows_per_second(self):
        progress = record_batch(init_progress(10), ProcessingStage.CREATE_EVENTS, 2, NOW)
        progress = record_batch(progress, ProcessingStage.CREATE_EVENTS, 2, NOW + timedelta(seconds=2))
        assert progress.stages[ProcessingStage.CREATE_EVENTS.value].rows_per_second == 2.0

    def test_complete_and_skip(self):
        """Completed and skipped stages should count fully."""
        progress = complete_stage(init_progress(10), ProcessingStage.ANALYZE_DUPLICATES, NOW)
        progress = complete_stage(progress, ProcessingStage.GEOCODE_BATCH, NOW, skipped=True)
        assert progress.stages[ProcessingStage.GEOCODE_BATCH.value].status == StageStatus.SKIPPED
        assert progress.overall_percentage == 45.0

    def test_estimated_completion(self):
        """The finish time should extrapolate from the elapsed time."""
        started = NOW - timedelta(minutes=10)
        progress = complete_stage(init_progress(10), ProcessingStage.GEOCODE_BATCH, NOW, started_at=started)
        progress = complete_stage(progress, ProcessingStage.ANALYZE_DUPLICATES, NOW, started_at=started)
        progress = complete_stage(progress, ProcessingStage.DETECT_SCHEMA, NOW, started_at=started)
        assert progress.overall_percentage == 60.0
        expected = NOW + timedelta(seconds=600 * 40 / 60)
        assert abs((progress.estimated_completion_time - expected).total_seconds()) < 1

    def test_reset_stages(self):
        """Recovered stages should go back to pending."""
        progress = complete_stage(init_progress(10), ProcessingStage.GEOCODE_BATCH, NOW)
        progress = reset_stages(progress, [ProcessingStage.GEOCODE_BATCH, ProcessingStage.COMPLETED])
        assert progress.stages[ProcessingStage.GEOCODE_BATCH.value].status == StageStatus.PENDING
        assert progress.overall_percentage == 0.0
        assert progress.estimated_completion_time is None
