"""Sync trigger and status routes."""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlmodel import Session, select

from expenso.api.deps import get_services, get_sync_session
from expenso.models.sync import SyncLog
from expenso.services import Services

router = APIRouter()


class SyncTriggerResponse(BaseModel):
    success: bool
    message: str
    synced_items: int
    remaining: int


class SyncStatusResponse(BaseModel):
    is_syncing: bool
    is_online: bool
    queue_size: int
    pending_operations: int
    total_unsynced: int
    last_sync: Optional[datetime]
    last_cycle_status: str
    last_cycle_error: Optional[str]


@router.post("/trigger", response_model=SyncTriggerResponse)
async def trigger_sync(services: Services = Depends(get_services)):
    """
    Run a manual sync cycle and wait for its result.
    Fails fast when offline or when a cycle is already running.
    """
    result = await services.engine.manual_sync()
    return SyncTriggerResponse(
        success=result.success,
        message=result.message,
        synced_items=result.synced_items,
        remaining=result.remaining,
    )


@router.get("/status", response_model=SyncStatusResponse)
async def sync_status(
    services: Services = Depends(get_services),
    session: Session = Depends(get_sync_session),
):
    """Queue sizes, connectivity and the status of the most recent cycle."""
    status = services.engine.get_sync_status()
    log = session.exec(
        select(SyncLog)
        .where(SyncLog.namespace == services.store.namespace)
        .order_by(SyncLog.started_at.desc())
    ).first()
    return SyncStatusResponse(
        **status,
        last_cycle_status=log.status if log else "never_run",
        last_cycle_error=log.error_message if log else None,
    )


@router.get("/history", response_model=List[SyncLog])
async def sync_history(
    limit: int = Query(20, ge=1, le=200),
    services: Services = Depends(get_services),
    session: Session = Depends(get_sync_session),
):
    """Most recent sync cycles, newest first."""
    return session.exec(
        select(SyncLog)
        .where(SyncLog.namespace == services.store.namespace)
        .order_by(SyncLog.started_at.desc())
        .limit(limit)
    ).all()
