"""
Admin API endpoints for the continuous refresh loop.

Provides endpoints to inspect the scheduler (phase, counters, progress, ETA,
rate budget) and to start, stop, pause, resume it or force a refetch.
"""
from fastapi import APIRouter, Depends, HTTPException

from ...domain.common.errors import InvalidPartitionError
from ...schemas.refresh_status import (
    InvalidateRequest,
    RefreshCommandResponse,
    RefreshStatusResponse,
)
from ...services.refresh_control import CommandResult, RefreshControlService
from ...wiring.bootstrap import get_refresh_control

router = APIRouter(prefix="/admin/refresh", tags=["refresh"])


def _command_response(control: RefreshControlService, result: CommandResult) -> RefreshCommandResponse:
    return RefreshCommandResponse(
        success=result.success,
        message=result.message,
        status=RefreshStatusResponse(**control.get_status()),
    )


@router.get("/status", response_model=RefreshStatusResponse)
async def get_refresh_status(control: RefreshControlService = Depends(get_refresh_control)):
    """
    Get current refresh scheduler status.

    Returns:
        RefreshStatusResponse with:
        - phase / is_running / is_paused: lifecycle state
        - pause_reason / paused_until: "blocked" pauses resume on their own at paused_until
        - counters: success, fallback (failure), blocked and loop error counts
        - cycle_progress_percent / estimated_completion: progress through the current cycle
        - rate_budget: fetch gate token and concurrency state
    """
    return RefreshStatusResponse(**control.get_status())


@router.post("/start", response_model=RefreshCommandResponse)
async def start_refresh(control: RefreshControlService = Depends(get_refresh_control)):
    """Start the refresh loop (first fetch follows the startup delay)."""
    return _command_response(control, await control.start())


@router.post("/stop", response_model=RefreshCommandResponse)
async def stop_refresh(control: RefreshControlService = Depends(get_refresh_control)):
    """Stop the refresh loop and persist the dataset. Waits for an in-flight fetch."""
    return _command_response(control, await control.stop())


@router.post("/pause", response_model=RefreshCommandResponse)
async def pause_refresh(control: RefreshControlService = Depends(get_refresh_control)):
    """Pause until resumed manually. Overrides a pending auto-resume."""
    return _command_response(control, control.pause())


@router.post("/resume", response_model=RefreshCommandResponse)
async def resume_refresh(control: RefreshControlService = Depends(get_refresh_control)):
    return _command_response(control, control.resume())


@router.post("/invalidate", response_model=RefreshCommandResponse)
async def invalidate_entries(
    request: InvalidateRequest,
    control: RefreshControlService = Depends(get_refresh_control),
):
    """
    Force an item to be refetched.

    Real entries keep their value but lose their timestamp; fallback entries
    are dropped. Either way the pairs become the oldest in the dataset.
    """
    try:
        result = control.invalidate(request.item, request.partition)
    except InvalidPartitionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _command_response(control, result)
