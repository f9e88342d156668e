"""
Pipeline Worker.

Claims tasks from the queue and dispatches them to the registered handlers.
Stage handlers return ``StageCompleted`` events which the worker hands to the
Stage Transition Engine; a handler that raises drives its job to ``failed``
through the engine, never by writing the job itself.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import timedelta
from typing import Any

from eventimport.configs.config import Config, PipelineConfig
from eventimport.configs.settings import Settings, get_settings
from eventimport.errors import EventImportError, StrictValidationFailed
from eventimport.geocoding.cache import LocationCache
from eventimport.geocoding.providers import ProviderPool
from eventimport.geocoding.service import GeocodingService
from eventimport.ingestion.retry import RetryPolicy
from eventimport.ingestion.stage_transition import IMPORT_SOURCES_KIND, StageCompleted, StageTransitionEngine
from eventimport.ingestion.stages import MAINTENANCE_TASKS, TASK_REGISTRY, PipelineContext, TaskHandler
from eventimport.monitoring.logging import with_context
from eventimport.schemas.dataset import ImportSource
from eventimport.schemas.import_job import ImportJob, ProcessingStage, RowError
from eventimport.storage.base import DocumentTaskQueue, Task
from eventimport.storage.rows import FileRowReader
from eventimport.storage.sql import SqlDocumentStore

logger = logging.getLogger(__name__)

_STAGE_TASKS = {stage.value: stage for stage in ProcessingStage}


class PipelineWorker:
    """
    Executes queued pipeline and maintenance tasks.

    Args:
        ctx: Shared collaborators (store, queue, rows, engine, geocoder)
        registry: Task name -> handler, defaults to every registered task
    """

    def __init__(self, ctx: PipelineContext, registry: dict[str, TaskHandler] | None = None):
        self.ctx = ctx
        self.registry = registry if registry is not None else TASK_REGISTRY

    @property
    def engine(self) -> StageTransitionEngine:
        return self.ctx.engine

    # ========================================================================
    # IMPORT BOOTSTRAP
    # ========================================================================

    def start_import(self, source: ImportSource) -> list[ImportJob]:
        """Register an import source and create one job per sheet."""
        if self.ctx.store.find_by_id(IMPORT_SOURCES_KIND, source.id) is None:
            self.ctx.store.create(IMPORT_SOURCES_KIND, source.model_dump(mode="json"))

        jobs = []
        for sheet_index in source.sheets:
            total = self.ctx.rows.count_rows(source, sheet_index)
            jobs.append(self.engine.create_job(source, sheet_index, total))
        logger.info(f"Started import {source.id} with {len(jobs)} job(s)")
        return jobs

    def schedule_maintenance(self) -> None:
        for name in MAINTENANCE_TASKS:
            self.ctx.queue.enqueue(name, {})

    # ========================================================================
    # EXECUTION
    # ========================================================================

    def _fail_job(self, task: Task, error: str, retryable: bool = True, row_errors: list[RowError] | None = None) -> None:
        stage = _STAGE_TASKS.get(task.name)
        job_id = task.input.get("job_id")
        if stage is None or not job_id:
            return
        try:
            self.engine.fail(job_id, error, stage=stage, retryable=retryable, row_errors=row_errors)
        except EventImportError as e:
            logger.error(f"Could not mark job {job_id} failed: {e}")

    async def process_task(self, task: Task) -> Any:
        """
        Run one claimed task to completion.

        Returns the handler's result after the engine applied it (the updated
        job for stage tasks, a report dict for maintenance tasks).
        """
        log = with_context(logger, job_id=task.input.get("job_id"), task=task.name, batch=task.input.get("batch_number"))
        handler = self.registry.get(task.name)
        if handler is None:
            log.error(f"No handler registered for task '{task.name}'")
            self.ctx.queue.complete(task, error=f"unknown task {task.name}")
            return None

        try:
            result = handler(self.ctx, task.input)
            if inspect.isawaitable(result):
                result = await result
            if isinstance(result, StageCompleted):
                result = self.engine.advance(result)
        except StrictValidationFailed as e:
            log.error(str(e))
            row_errors = [RowError(row=err.get("row"), error=err.get("error", "")) for err in e.errors]
            self._fail_job(task, str(e), retryable=False, row_errors=row_errors)
            self.ctx.queue.complete(task, error=str(e))
            return None
        except Exception as e:
            log.error(f"Task {task.name} failed: {e}", exc_info=True)
            self._fail_job(task, str(e))
            self.ctx.queue.complete(task, error=str(e))
            return None

        self.ctx.queue.complete(task)
        return result

    async def run_once(self) -> bool:
        """Claim and run a single task; False when the queue is empty."""
        task = self.ctx.queue.claim()
        if task is None:
            return False
        await self.process_task(task)
        return True

    async def run_until_idle(self, max_tasks: int | None = None) -> int:
        """Process tasks until the queue is empty. Returns the number processed."""
        processed = 0
        while max_tasks is None or processed < max_tasks:
            if not await self.run_once():
                break
            processed += 1
        return processed

    async def run_forever(self, poll_interval_s: float = 1.0, stale_after: timedelta = timedelta(minutes=30)) -> None:
        logger.info("Worker started")
        while True:
            if hasattr(self.ctx.queue, "release_stale"):
                released = self.ctx.queue.release_stale(stale_after)
                if released:
                    logger.warning(f"Released {released} stale task(s)")
            if not await self.run_once():
                await asyncio.sleep(poll_interval_s)


def build_context(settings: Settings | None = None, config: PipelineConfig | None = None) -> PipelineContext:
    """Wire the production collaborators from settings and pipeline.yaml."""
    settings = settings or get_settings()
    config = config or Config.load_pipeline_config(settings)

    store = SqlDocumentStore(settings.DATABASE_URL)
    queue = DocumentTaskQueue(store)
    engine = StageTransitionEngine(store, queue, RetryPolicy.from_settings(config.retry))

    cache = LocationCache(store, config.geocoding.caching) if config.geocoding.caching.enabled else None
    geocoder = GeocodingService(ProviderPool.from_settings(config.geocoding, settings), cache, config.geocoding)
    return PipelineContext(
        store=store,
        queue=queue,
        rows=FileRowReader(settings.UPLOAD_DIR),
        engine=engine,
        config=config,
        geocoder=geocoder,
        cache=cache,
    )


def build_worker(settings: Settings | None = None, config: PipelineConfig | None = None) -> PipelineWorker:
    return PipelineWorker(build_context(settings, config))
