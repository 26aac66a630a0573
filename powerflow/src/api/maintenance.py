"""
Maintenance endpoints: on-demand retention cleanup and database size.

CHANGELOG:
- 2026-10-13: Initial creation

TODO:
- None
"""

import logging
from typing import Annotated, Any

from fastapi import APIRouter, HTTPException, Query

from powerflow.src.api.deps import Settings, Store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/maintenance", tags=["maintenance"])


@router.post("/cleanup")
async def run_cleanup(
    store: Store,
    settings: Settings,
    retention_days: Annotated[int | None, Query(ge=1)] = None,
) -> dict[str, Any]:
    """Delete aggregate history older than *retention_days* (default from settings)."""
    days = retention_days if retention_days is not None else settings.retention_days
    result = await store.cleanup(days)
    if not result.success:
        raise HTTPException(status_code=503, detail=result.error or "store unavailable")
    logger.info("Manual cleanup removed %d rows", result.count)
    return {"deleted": result.count, "retention_days": days}


@router.get("/database-size")
async def database_size(store: Store) -> dict[str, Any]:
    """Report SQLite page usage and total file size."""
    result = await store.database_size()
    if not result.success:
        raise HTTPException(status_code=503, detail=result.error or "store unavailable")
    return result.data
