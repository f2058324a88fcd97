"""Record CRUD routes. Every call goes through the offline-first service."""
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Response

from fieldsync.api.deps import get_service
from fieldsync.service import OfflineDataService

router = APIRouter()


def _require_kind(service: OfflineDataService, kind: str) -> None:
    if kind not in service.kinds:
        raise HTTPException(status_code=404, detail=f"Unknown entity kind '{kind}'")


@router.get("/{kind}", response_model=List[Dict[str, Any]])
async def list_records(
    kind: str,
    refresh: bool = True,
    service: OfflineDataService = Depends(get_service),
):
    """All local records of one kind, refreshed from the server when online."""
    _require_kind(service, kind)
    records = await service.get_all(kind, refresh=refresh)
    return [r.to_dict() for r in records]


@router.get("/{kind}/{record_id}")
def get_record(kind: str, record_id: str, service: OfflineDataService = Depends(get_service)):
    _require_kind(service, kind)
    record = service.get(kind, record_id)
    if not record:
        raise HTTPException(status_code=404, detail="Record not found")
    return record.to_dict()


@router.post("/{kind}", status_code=201)
async def create_record(
    kind: str,
    fields: Dict[str, Any],
    service: OfflineDataService = Depends(get_service),
):
    """Create locally (placeholder id) and queue the upload."""
    _require_kind(service, kind)
    record = await service.create(kind, fields)
    return record.to_dict()


@router.patch("/{kind}/{record_id}")
async def update_record(
    kind: str,
    record_id: str,
    fields: Dict[str, Any],
    service: OfflineDataService = Depends(get_service),
):
    """Merge `fields` into the stored record and queue the upload."""
    _require_kind(service, kind)
    existing = service.get(kind, record_id)
    if not existing:
        raise HTTPException(status_code=404, detail="Record not found")
    merged = {**(existing.attributes or {}), **fields}
    record = await service.update(kind, record_id, merged)
    return record.to_dict()


@router.delete("/{kind}/{record_id}", status_code=204)
async def delete_record(kind: str, record_id: str, service: OfflineDataService = Depends(get_service)):
    _require_kind(service, kind)
    if not service.get(kind, record_id):
        raise HTTPException(status_code=404, detail="Record not found")
    await service.delete(kind, record_id)
    return Response(status_code=204)
