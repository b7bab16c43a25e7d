"""Health endpoint: database reachability plus a summary of the sync queue."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cloudsync.api.deps import get_session, get_sync_engine
from cloudsync.exceptions import StorageUnavailable
from cloudsync.services.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    version: str
    database: str
    online: bool
    draining: bool
    sync_status: str | None = None
    pending_count: int | None = None
    error_count: int | None = None


@router.get("/api/health", response_model=HealthResponse)
async def health_check(
    session: Annotated[AsyncSession, Depends(get_session)],
    engine: Annotated[SyncEngine, Depends(get_sync_engine)],
) -> HealthResponse:
    """Report degraded rather than failing when local storage is unreachable."""
    db_status = "ok"
    try:
        await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError):
        logger.warning("Health check database query failed", exc_info=True)
        db_status = "error"

    response = HealthResponse(
        status="ok",
        version="0.1.0",
        database=db_status,
        online=engine.online,
        draining=engine.is_draining,
    )
    if db_status == "ok":
        try:
            snapshot = await engine.overall_status()
        except StorageUnavailable as exc:
            logger.warning("Health check could not read the sync queue: %s", exc)
            db_status = "error"
        else:
            response.sync_status = snapshot.status
            response.pending_count = snapshot.pending_count
            response.error_count = snapshot.error_count
    response.database = db_status
    response.status = "ok" if db_status == "ok" else "degraded"
    return response
