"""
eventimport.main.

FastAPI entrypoint for the event import pipeline.

Responsibilities
----------------
• Health monitoring
• Import job read surface (stage, progress, validation, duplicates, results)
• Approval, recovery and override commands, guarded by the job policies

Authentication is handled upstream; the acting user arrives in the
``X-Actor-Id`` and ``X-Actor-Role`` headers.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from eventimport import __version__
from eventimport.configs.settings import get_settings
from eventimport.errors import JobNotFoundError, PolicyDenied, StageTransitionError
from eventimport.ingestion.policies import Actor, approval_policy, override_policy, recovery_policy, require
from eventimport.ingestion.stages import PipelineContext
from eventimport.ingestion.worker import build_context
from eventimport.monitoring.logging import LoggingOptions, setup_logging
from eventimport.schemas.import_job import ProcessingStage

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# APP INITIALIZATION
# ---------------------------------------------------------------------------


@lru_cache
def get_context() -> PipelineContext:
    """Return the process-wide pipeline collaborators."""
    return build_context()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle app startup and shutdown events."""
    settings = get_settings()
    setup_logging(LoggingOptions(level=settings.LOG_LEVEL, json_logs=settings.JSON_LOGS))
    yield
    if get_context.cache_info().currsize:
        store = get_context().store
        if hasattr(store, "dispose"):
            store.dispose()


app = FastAPI(
    title="Event Import API",
    version=__version__,
    description="Progress and approval surface of the bulk event import pipeline.",
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# ERROR MAPPING
# ---------------------------------------------------------------------------


@app.exception_handler(JobNotFoundError)
async def job_not_found_handler(request: Request, exc: JobNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(PolicyDenied)
async def policy_denied_handler(request: Request, exc: PolicyDenied) -> JSONResponse:
    return JSONResponse(status_code=403, content={"detail": str(exc)})


@app.exception_handler(StageTransitionError)
async def stage_transition_handler(request: Request, exc: StageTransitionError) -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={
            "detail": str(exc),
            "error": type(exc).__name__,
            "from_stage": exc.from_stage,
            "to_stage": exc.to_stage,
        },
    )


# ---------------------------------------------------------------------------
# REQUEST MODELS
# ---------------------------------------------------------------------------


class RecoverRequest(BaseModel):
    to_stage: ProcessingStage
    reason: str | None = None


class OverrideRequest(BaseModel):
    to_stage: ProcessingStage
    reason: str = Field(..., min_length=1)


def get_actor(
    x_actor_id: str | None = Header(default=None),
    x_actor_role: str | None = Header(default=None),
) -> Actor | None:
    """Build the acting user from request headers; None when anonymous."""
    if not x_actor_id:
        return None
    return Actor(id=x_actor_id, role=x_actor_role or "viewer")


def _job_view(job) -> dict[str, Any]:
    doc = job.to_document()
    return {
        key: doc[key]
        for key in (
            "id",
            "import_source",
            "dataset",
            "sheet_index",
            "stage",
            "progress",
            "schema_validation",
            "duplicates",
            "results",
            "errors",
            "retry_attempts",
            "next_retry_at",
            "audit_log",
            "created_at",
            "updated_at",
            "completed_at",
        )
    }


# ---------------------------------------------------------------------------
# HEALTH ENDPOINT
# ---------------------------------------------------------------------------


@app.get("/health", tags=["Monitoring"])
def health_check() -> dict[str, str]:
    """
    Check API health.

    Returns
    -------
    dict
        Service status indicator.
    """
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# IMPORT JOB ENDPOINTS
# ---------------------------------------------------------------------------


@app.get("/imports/{job_id}", tags=["Imports"])
def get_import_job(job_id: str, ctx: PipelineContext = Depends(get_context)) -> dict[str, Any]:
    """Return the public read surface of an import job."""
    return _job_view(ctx.engine.get_job(job_id))


@app.post("/imports/{job_id}/approve", tags=["Imports"])
def approve_import_job(
    job_id: str,
    ctx: PipelineContext = Depends(get_context),
    actor: Actor | None = Depends(get_actor),
) -> dict[str, Any]:
    """Approve the pending schema change of a job awaiting approval."""
    job = ctx.engine.get_job(job_id)
    require(approval_policy(actor, job), "approve", actor)
    return _job_view(ctx.engine.approve(job_id, approved_by=actor.id))


@app.post("/imports/{job_id}/recover", tags=["Imports"])
def recover_import_job(
    job_id: str,
    body: RecoverRequest,
    ctx: PipelineContext = Depends(get_context),
    actor: Actor | None = Depends(get_actor),
) -> dict[str, Any]:
    """Move a failed job back into one of the recovery stages."""
    job = ctx.engine.get_job(job_id)
    if actor is None:
        raise PolicyDenied("recover", None, "manual recovery requires a user")
    require(recovery_policy(actor, job), "recover", actor)
    updated = ctx.engine.recover(job_id, body.to_stage, actor=actor.id, reason=body.reason)
    return _job_view(updated)


@app.post("/imports/{job_id}/override", tags=["Imports"])
def override_import_job(
    job_id: str,
    body: OverrideRequest,
    ctx: PipelineContext = Depends(get_context),
    actor: Actor | None = Depends(get_actor),
) -> dict[str, Any]:
    """Administrative stage override; always audited."""
    job = ctx.engine.get_job(job_id)
    require(override_policy(actor, job), "override", actor)
    return _job_view(ctx.engine.override_stage(job_id, body.to_stage, actor.id, body.reason))
