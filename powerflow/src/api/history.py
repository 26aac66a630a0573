"""
Aggregate history endpoints.

GET /v1/power-flow/history returns the aggregate snapshots of the trailing
window (``minutes`` or ``hours``, default 10 minutes) in ascending time
order. GET /v1/power-flow/stats returns count plus avg/min/max per metric
over the trailing ``hours`` (default 24).

CHANGELOG:
- 2026-10-13: Add stats endpoint
- 2026-10-11: Initial creation (STORY-111)

TODO:
- None
"""

import logging
from typing import Annotated, Any

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from powerflow.src.api.deps import Store
from powerflow.src.models import StoreResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/power-flow", tags=["power-flow"])

DEFAULT_HISTORY_MINUTES = 10.0
DEFAULT_STATS_HOURS = 24.0


# ---------------------------------------------------------------------------
# Pydantic response models
# ---------------------------------------------------------------------------


class HistoryPoint(BaseModel):
    """One aggregate snapshot as returned to chart clients.

    Attributes:
        solar: Solar power in watts.
        grid: Grid power in watts (negative = export).
        genset: Generator power in watts.
        load: solar + grid + genset.
        batchId: Upstream batch identifier.
        time: Capture time, ISO 8601 UTC.
    """

    solar: float
    grid: float
    genset: float
    load: float
    batchId: str | None = None
    time: str


class HistoryResponse(BaseModel):
    """Response model for the history endpoint."""

    success: bool
    count: int
    data: list[HistoryPoint]


class StatsResponse(BaseModel):
    """Response model for the stats endpoint."""

    success: bool
    data: dict[str, Any]


def _unwrap(result: StoreResult) -> StoreResult:
    """Turn a failed store read into HTTP 503."""
    if not result.success:
        raise HTTPException(status_code=503, detail=result.error or "store unavailable")
    return result


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.get("/history", response_model=HistoryResponse)
async def get_history(
    store: Store,
    minutes: Annotated[float | None, Query(gt=0, description="Trailing window in minutes.")] = None,
    hours: Annotated[float | None, Query(gt=0, description="Trailing window in hours.")] = None,
) -> HistoryResponse:
    """Return aggregate history for the trailing window, oldest first.

    Raises:
        HTTPException: 503 if the store stayed busy or failed.
    """
    if minutes is None and hours is None:
        minutes = DEFAULT_HISTORY_MINUTES
    result = _unwrap(await store.history(minutes=minutes, hours=hours))
    logger.debug("History query: minutes=%s hours=%s rows=%d", minutes, hours, result.count)
    return HistoryResponse(success=True, count=result.count, data=result.data)


@router.get("/stats", response_model=StatsResponse)
async def get_stats(
    store: Store,
    hours: Annotated[float, Query(gt=0, description="Trailing window in hours.")] = DEFAULT_STATS_HOURS,
) -> StatsResponse:
    """Return count and avg/min/max per metric over the trailing window.

    Raises:
        HTTPException: 503 if the store stayed busy or failed.
    """
    result = _unwrap(await store.stats(hours))
    return StatsResponse(success=True, data=result.data)
