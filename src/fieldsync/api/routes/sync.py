"""Sync trigger, status and queue review routes."""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel
from sqlmodel import Session, select

from fieldsync.api.deps import get_service
from fieldsync.models.mutation import MutationStatus
from fieldsync.models.sync import SyncLog
from fieldsync.service import OfflineDataService
from fieldsync.sync.errors import SyncError

logger = logging.getLogger(__name__)

router = APIRouter()


class LastSyncResponse(BaseModel):
    status: str
    started_at: Optional[datetime]
    finished_at: Optional[datetime]
    records_downloaded: Optional[int]
    mutations_uploaded: Optional[int]
    mutations_failed: Optional[int]
    error_message: Optional[str]


class SyncStatusResponse(BaseModel):
    isOnline: bool
    isSyncing: bool
    pendingCount: int
    hasPendingChanges: bool
    lastSync: LastSyncResponse


async def _do_sync(service: OfflineDataService) -> None:
    """Background task: one manual sync pass."""
    try:
        result = await service.force_sync()
        logger.info("Triggered sync: %s", result.message)
    except SyncError as exc:
        logger.warning("Triggered sync did not run: %s", exc)


@router.post("/trigger")
async def trigger_sync(
    background_tasks: BackgroundTasks,
    service: OfflineDataService = Depends(get_service),
):
    """
    Start a sync pass ("sync now").
    Returns immediately; the pass runs in the background.
    """
    if not service.monitor.is_online:
        raise HTTPException(status_code=409, detail="Device is offline")
    background_tasks.add_task(_do_sync, service)
    return {"message": "Sync started"}


@router.get("/status", response_model=SyncStatusResponse)
def sync_status(service: OfflineDataService = Depends(get_service)):
    """Live status plus the outcome of the most recent executed pass."""
    with Session(service.store.engine) as session:
        log = session.exec(
            select(SyncLog).order_by(SyncLog.started_at.desc(), SyncLog.id.desc())
        ).first()

    if log:
        last = LastSyncResponse(
            status=log.status,
            started_at=log.started_at,
            finished_at=log.finished_at,
            records_downloaded=log.records_downloaded,
            mutations_uploaded=log.mutations_uploaded,
            mutations_failed=log.mutations_failed,
            error_message=log.error_message,
        )
    else:
        last = LastSyncResponse(
            status="never_run",
            started_at=None,
            finished_at=None,
            records_downloaded=None,
            mutations_uploaded=None,
            mutations_failed=None,
            error_message=None,
        )
    return SyncStatusResponse(**service.get_sync_status().to_dict(), lastSync=last)


@router.get("/stats")
def sync_stats(service: OfflineDataService = Depends(get_service)) -> Dict[str, Any]:
    return service.engine.get_sync_stats()


@router.get("/queue", response_model=List[Dict[str, Any]])
def list_queue(
    status: Optional[MutationStatus] = None,
    service: OfflineDataService = Depends(get_service),
):
    """Queue entries, e.g. `?status=failed` for the ones needing manual review."""
    return [m.to_dict() for m in service.get_mutations(status)]


@router.post("/queue/{mutation_id}/retry")
def retry_entry(mutation_id: int, service: OfflineDataService = Depends(get_service)):
    """Re-arm a parked (failed) entry for the next sync pass."""
    if not service.retry_failed(mutation_id):
        raise HTTPException(status_code=404, detail="No failed queue entry with that id")
    return {"rearmed": mutation_id}
