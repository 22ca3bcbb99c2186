"""FastAPI routes for the gitferry API.

Endpoints:
- POST /pipeline/runs                         - Submit a run (202, runs in background)
- GET  /pipeline/runs                         - List the caller's runs (paged)
- GET  /pipeline/runs/{id}                    - Get a run
- GET  /pipeline/runs/{id}/status             - Same, for polling clients
- GET  /pipeline/stats                        - Caller's run statistics
- GET  /pipeline/stats/global                 - Statistics over all owners (admin)
- POST /pipeline/cleanup                      - Delete old finished runs (admin)
- GET  /pipeline/progress/{operation_id}      - Fetch progress as server-sent events
- POST /pipeline/progress/{operation_id}/cancel - Cancel a running fetch

Callers identify themselves with the X-Owner-Id header; authentication is
handled in front of this service.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Query, Request
from fastapi.responses import StreamingResponse

from gitferry.config import get_settings
from gitferry.errors import AuthenticationError, AuthorizationError
from gitferry.pipeline.service import PipelineService
from gitferry.schemas import (
    CancelResponse,
    CleanupRequest,
    CleanupResponse,
    PipelineRequest,
    PipelineRun,
    PipelineStats,
    RunListResponse,
    RunSubmitResponse,
)


logger = logging.getLogger(__name__)
router = APIRouter()

settings = get_settings()


# =============================================================================
# Dependencies
# =============================================================================

def get_service(request: Request) -> PipelineService:
    return request.app.state.service


def get_owner_id(x_owner_id: Annotated[str | None, Header()] = None) -> str:
    if not x_owner_id or not x_owner_id.strip():
        raise AuthenticationError("X-Owner-Id header is required")
    return x_owner_id.strip()


def require_admin(
    service: Annotated[PipelineService, Depends(get_service)],
    x_admin_token: Annotated[str | None, Header()] = None,
) -> None:
    expected = service.settings.admin_token
    if expected and x_admin_token != expected:
        raise AuthorizationError("Admin token required")


ServiceDep = Annotated[PipelineService, Depends(get_service)]
OwnerDep = Annotated[str, Depends(get_owner_id)]


# =============================================================================
# Health Check
# =============================================================================

@router.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    return {
        "status": "ok",
        "version": settings.app_version,
        "environment": settings.environment,
    }


# =============================================================================
# Runs Endpoints
# =============================================================================

@router.post("/pipeline/runs", response_model=RunSubmitResponse, status_code=202)
async def submit_run(
    request: PipelineRequest,
    background_tasks: BackgroundTasks,
    service: ServiceDep,
    owner_id: OwnerDep,
) -> RunSubmitResponse:
    """Submit a pipeline run.

    The run is recorded immediately and executed in the background.
    Poll GET /pipeline/runs/{run_id} or stream
    GET /pipeline/progress/{operation_id} for updates.
    """
    response, parsed = await service.create_run(owner_id, request)
    background_tasks.add_task(service.execute, response.run_id, parsed, response.operation_id)
    logger.info(f"Queued run {response.run_id}")
    return response


@router.get("/pipeline/runs", response_model=RunListResponse)
async def list_runs(
    service: ServiceDep,
    owner_id: OwnerDep,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=10, ge=1, le=100),
) -> RunListResponse:
    """List the caller's runs, newest first."""
    return await service.reporter.list_runs(owner_id, page=page, page_size=page_size)


@router.get("/pipeline/runs/{run_id}", response_model=PipelineRun)
async def get_run(run_id: str, service: ServiceDep, owner_id: OwnerDep) -> PipelineRun:
    return await service.reporter.get_run(run_id, owner_id)


@router.get("/pipeline/runs/{run_id}/status", response_model=PipelineRun)
async def get_run_status(run_id: str, service: ServiceDep, owner_id: OwnerDep) -> PipelineRun:
    return await service.reporter.get_run(run_id, owner_id)


# =============================================================================
# Stats and Retention
# =============================================================================

@router.get("/pipeline/stats", response_model=PipelineStats)
async def get_stats(service: ServiceDep, owner_id: OwnerDep) -> PipelineStats:
    return await service.reporter.get_stats(owner_id)


@router.get(
    "/pipeline/stats/global",
    response_model=PipelineStats,
    dependencies=[Depends(require_admin)],
)
async def get_global_stats(service: ServiceDep) -> PipelineStats:
    return await service.reporter.get_global_stats()


@router.post(
    "/pipeline/cleanup",
    response_model=CleanupResponse,
    dependencies=[Depends(require_admin)],
)
async def cleanup_runs(service: ServiceDep, body: CleanupRequest | None = None) -> CleanupResponse:
    """Delete finished runs older than ``days_old`` days (default: retention setting)."""
    days_old = body.days_old if body is not None else None
    return await service.reporter.cleanup(days_old)


# =============================================================================
# Progress
# =============================================================================

@router.get("/pipeline/progress/{operation_id}")
async def stream_progress(operation_id: str, request: Request, service: ServiceDep) -> StreamingResponse:
    """Server-sent events for the source fetch of ``operation_id``."""
    return StreamingResponse(
        service.reporter.progress_stream(operation_id, is_disconnected=request.is_disconnected),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.post("/pipeline/progress/{operation_id}/cancel", response_model=CancelResponse)
async def cancel_fetch(operation_id: str, service: ServiceDep) -> CancelResponse:
    return service.reporter.cancel_fetch(operation_id)
