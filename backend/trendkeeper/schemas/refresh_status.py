"""Pydantic schemas for continuous refresh admin API endpoints."""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class RefreshCounters(BaseModel):
    success_count: int = 0
    failure_count: int = 0
    blocked_count: int = 0
    error_count: int = 0
    cycles_completed: int = 0


class EstimatedCompletion(BaseModel):
    """Optimistic ETA for the current cycle (ignores jitter and pacing pauses)."""

    hours_remaining: float
    days_remaining: float
    completion_date: str


class RateBudgetResponse(BaseModel):
    tokens_available: float
    reservoir: int
    refill_amount: int
    refill_interval_s: float
    min_interval_s: float
    active_count: int
    max_concurrent: int


class RefreshStatusResponse(BaseModel):
    """Response model for refresh scheduler status."""

    phase: str
    is_running: bool
    is_paused: bool
    pause_reason: Optional[str] = None
    paused_until: Optional[str] = None
    current_item: Optional[str] = None
    counters: RefreshCounters
    cycle_progress_percent: int = 0
    total_pairs: int = 0
    last_run_at: Optional[str] = None
    estimated_completion: Optional[EstimatedCompletion] = None
    rate_budget: RateBudgetResponse


class RefreshCommandResponse(BaseModel):
    """Response model for start/stop/pause/resume/invalidate commands."""

    success: bool
    message: str
    status: Optional[RefreshStatusResponse] = None


class InvalidateRequest(BaseModel):
    item: str = Field(..., min_length=1, description="Item key to refetch")
    partition: Optional[str] = Field(None, description="Single partition; all when omitted")


class TrendsDatasetResponse(BaseModel):
    partitions: Dict[str, Dict[str, Dict[str, Any]]]
    metadata: Dict[str, Any]
