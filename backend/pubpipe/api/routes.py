"""API route handlers and Pydantic response schemas."""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request
from pydantic import BaseModel, Field

from pubpipe.db.models import StepRecord, WorkUnit
from pubpipe.orchestrator.publication import (
    PHASES,
    PublicationScheduler,
    PublishNotAllowed,
    check_publish_allowed,
)
from pubpipe.orchestrator.runtime import Runtime
from pubpipe.orchestrator.service import StepBusy, StepNotRetryable, request_step_retry
from pubpipe.orchestrator.state import UNIT_STATES
from pubpipe.services.unit_service import UnitNotFound

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# ============================================================================
# Pydantic Schemas
# ============================================================================

class EnqueueRequest(BaseModel):
    """Request schema for POST /api/units."""
    source_ref: str = Field(min_length=1, max_length=200)
    source_url: Optional[str] = None
    title: Optional[str] = None
    subtitles: Optional[list[dict]] = None


class EnqueueResponse(BaseModel):
    """Response schema for POST /api/units."""
    source_ref: str
    status: str
    created: bool
    status_url: str


class UnitSummary(BaseModel):
    """Item in list response for GET /api/units."""
    source_ref: str
    title: Optional[str] = None
    status: str
    created_at: str
    primary_publish_id: Optional[str] = None
    error_message: Optional[str] = None


class UnitDetail(BaseModel):
    """Response schema for GET /api/units/{ref}."""
    source_ref: str
    source_url: Optional[str] = None
    title: Optional[str] = None
    status: str
    status_description: str
    generated_title: Optional[str] = None
    generated_description: Optional[str] = None
    generated_tags: list[str] = []
    cover_key: Optional[str] = None
    primary_publish_id: Optional[str] = None
    primary_published_at: Optional[str] = None
    secondary_published_at: Optional[str] = None
    error_message: Optional[str] = None
    created_at: str
    updated_at: str


class StepDetail(BaseModel):
    """Step record within GET /api/units/{ref}/steps."""
    step_name: str
    step_order: int
    status: str
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    duration_ms: int = 0
    attempts: int = 0
    can_retry: bool = True
    error_message: Optional[str] = None


class ProgressResponse(BaseModel):
    """Response schema for GET /api/units/{ref}/progress."""
    source_ref: str
    total: int
    completed: int
    failed: int
    skipped: int
    current_step: Optional[str] = None
    percent: int


class RetryResponse(BaseModel):
    """Response schema for POST /api/units/{ref}/steps/{step}/retry."""
    source_ref: str
    step_name: str
    status: str


class PublishResponse(BaseModel):
    """Response schema for POST /api/units/{ref}/publish/{phase}."""
    source_ref: str
    phase: str
    status: str
    status_url: str


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _unit_summary(unit: WorkUnit) -> UnitSummary:
    return UnitSummary(
        source_ref=unit.source_ref,
        title=unit.title,
        status=unit.status,
        created_at=unit.created_at.isoformat(),
        primary_publish_id=unit.primary_publish_id,
        error_message=unit.error_message,
    )


def _step_detail(record: StepRecord) -> StepDetail:
    return StepDetail(
        step_name=record.step_name,
        step_order=record.step_order,
        status=record.status,
        start_time=_iso(record.start_time),
        end_time=_iso(record.end_time),
        duration_ms=record.duration_ms or 0,
        attempts=record.attempts or 0,
        can_retry=record.can_retry,
        error_message=record.error_message,
    )


async def _get_unit(runtime: Runtime, source_ref: str) -> WorkUnit:
    unit = await runtime.units.get(source_ref)
    if unit is None:
        raise HTTPException(status_code=404, detail="Unit not found")
    return unit


# ============================================================================
# Background Task Wrapper
# ============================================================================

async def publish_background(publication: PublicationScheduler, source_ref: str, phase: str):
    """Run a manual publication outside the request.

    The outcome is persisted on the unit by the scheduler.
    """
    try:
        await publication.publish_now(source_ref, phase)
    except Exception as e:
        logger.error(f"Background {phase} publication failed for {source_ref}: {type(e).__name__}: {str(e)}")


# ============================================================================
# Endpoint Handlers
# ============================================================================

@router.get("/health")
async def health(request: Request):
    """Liveness check with scheduler state."""
    scheduler = request.app.state.scheduler
    return {
        "status": "ok",
        "schedulers_running": bool(scheduler and scheduler.running),
    }


@router.post("/units", status_code=202, response_model=EnqueueResponse)
async def enqueue_unit(body: EnqueueRequest, request: Request):
    """Enqueue a work unit for ingestion.

    Idempotent on source_ref: an existing unit is returned unchanged.
    """
    runtime = _runtime(request)
    unit, created = await runtime.units.enqueue(
        body.source_ref,
        source_url=body.source_url,
        title=body.title,
        subtitles=body.subtitles,
    )
    return EnqueueResponse(
        source_ref=unit.source_ref,
        status=unit.status,
        created=created,
        status_url=f"/api/units/{unit.source_ref}",
    )


@router.get("/units", response_model=list[UnitSummary])
async def list_units(request: Request, status: Optional[str] = None, limit: int = 100):
    """List units, newest first, optionally filtered by lifecycle code."""
    if status is not None and status not in UNIT_STATES:
        raise HTTPException(status_code=422, detail=f"Unknown status: {status}")
    units = await _runtime(request).units.list_units(status=status, limit=max(1, min(limit, 1000)))
    return [_unit_summary(u) for u in units]


@router.get("/units/{source_ref}", response_model=UnitDetail)
async def get_unit(source_ref: str, request: Request):
    unit = await _get_unit(_runtime(request), source_ref)
    return UnitDetail(
        source_ref=unit.source_ref,
        source_url=unit.source_url,
        title=unit.title,
        status=unit.status,
        status_description=UNIT_STATES.get(unit.status, ""),
        generated_title=unit.generated_title,
        generated_description=unit.generated_description,
        generated_tags=unit.generated_tags or [],
        cover_key=unit.cover_key,
        primary_publish_id=unit.primary_publish_id,
        primary_published_at=_iso(unit.primary_published_at),
        secondary_published_at=_iso(unit.secondary_published_at),
        error_message=unit.error_message,
        created_at=unit.created_at.isoformat(),
        updated_at=unit.updated_at.isoformat(),
    )


@router.get("/units/{source_ref}/steps", response_model=list[StepDetail])
async def get_unit_steps(source_ref: str, request: Request):
    runtime = _runtime(request)
    await _get_unit(runtime, source_ref)
    return [_step_detail(r) for r in await runtime.tracker.get_steps(source_ref)]


@router.get("/units/{source_ref}/progress", response_model=ProgressResponse)
async def get_unit_progress(source_ref: str, request: Request):
    runtime = _runtime(request)
    await _get_unit(runtime, source_ref)
    progress = await runtime.tracker.get_progress(source_ref)
    return ProgressResponse(
        source_ref=source_ref,
        total=progress.total,
        completed=progress.completed,
        failed=progress.failed,
        skipped=progress.skipped,
        current_step=progress.current_step,
        percent=progress.percent,
    )


@router.post("/units/{source_ref}/steps/{step_name}/retry", status_code=202, response_model=RetryResponse)
async def retry_step(source_ref: str, step_name: str, request: Request):
    """Reset one ingestion step to pending; the ingestion scheduler re-runs it.

    Returns 400 for unknown, non-retryable or publication steps and 409 while
    the step or unit is running.
    """
    try:
        record = await request_step_retry(_runtime(request), source_ref, step_name)
    except UnitNotFound:
        raise HTTPException(status_code=404, detail="Unit not found")
    except StepNotRetryable as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StepBusy as e:
        raise HTTPException(status_code=409, detail=str(e))

    return RetryResponse(source_ref=source_ref, step_name=step_name, status=record.status)


@router.post("/units/{source_ref}/publish/{phase}", status_code=202, response_model=PublishResponse)
async def publish_unit(source_ref: str, phase: str, request: Request, background_tasks: BackgroundTasks):
    """Publish one phase now, bypassing cooldown and delay.

    Returns 409 if the unit's state does not permit it.
    """
    if phase not in PHASES:
        raise HTTPException(status_code=400, detail=f"phase must be one of {', '.join(PHASES)}")

    unit = await _get_unit(_runtime(request), source_ref)
    try:
        check_publish_allowed(unit, phase)
    except PublishNotAllowed as e:
        raise HTTPException(status_code=409, detail=str(e))

    logger.info(f"Manual {phase} publication of {source_ref} accepted")
    background_tasks.add_task(publish_background, request.app.state.publication, source_ref, phase)

    return PublishResponse(
        source_ref=source_ref,
        phase=phase,
        status=unit.status,
        status_url=f"/api/units/{source_ref}",
    )
