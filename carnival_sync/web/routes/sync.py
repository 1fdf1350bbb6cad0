"""Operator routes for triggering and inspecting ingestion runs."""

import asyncio

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from carnival_sync.core.enums import TriggerSource
from carnival_sync.ingestion.audit import AuditLogger
from carnival_sync.ingestion.scheduler import REASON_IN_PROGRESS, SyncScheduler

router = APIRouter(prefix="/api/sync", tags=["sync"])


def _scheduler(request: Request) -> SyncScheduler:
    return request.app.state.scheduler


def _audit(request: Request) -> AuditLogger:
    return request.app.state.audit


@router.post("/runs")
async def trigger_run(request: Request) -> JSONResponse:
    """
    Start a run now.

    202 when accepted, 409 when a run is already in progress,
    503 when sync is disabled or the service is shutting down.
    """
    result = await _scheduler(request).trigger_run_now(TriggerSource.MANUAL)
    if result.accepted:
        status_code = 202
    elif result.reason == REASON_IN_PROGRESS:
        status_code = 409
    else:
        status_code = 503
    return JSONResponse(result.model_dump(mode="json", by_alias=True, exclude_none=True), status_code=status_code)


@router.get("/runs")
async def list_runs(request: Request, limit: int = Query(10, ge=1, le=100)) -> JSONResponse:
    """Most recent runs, newest first."""
    runs = await asyncio.to_thread(_audit(request).list_recent, limit)
    return JSONResponse({"runs": [run.model_dump(mode="json", by_alias=True) for run in runs]})


@router.get("/runs/{correlation_id}")
async def get_run(request: Request, correlation_id: str) -> JSONResponse:
    """Counters and error summary for one run."""
    run = await asyncio.to_thread(_audit(request).get_run, correlation_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return JSONResponse(run.model_dump(mode="json", by_alias=True))


@router.get("/stats")
async def get_stats(
    request: Request,
    window_days: int = Query(30, alias="windowDays", ge=1, le=3650),
) -> JSONResponse:
    """Aggregate run statistics over a trailing window."""
    stats = await asyncio.to_thread(_audit(request).get_stats, window_days)
    return JSONResponse(stats.model_dump(mode="json", by_alias=True))


@router.get("/status")
async def get_status(request: Request) -> JSONResponse:
    """Scheduler state: enabled flag, active run and next scheduled run."""
    return JSONResponse(_scheduler(request).status().model_dump(mode="json", by_alias=True))
