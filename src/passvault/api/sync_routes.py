"""Sync API routes — device sync runs, history and conflict resolution."""

import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from ..core.errors import VaultEngineError
from ..sync.sync_coordinator import SyncCoordinator
from .errors import http_error
from .security import require_owner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])

# ── Singleton ────────────────────────────────────────────────────────

_coordinator: Optional[SyncCoordinator] = None


def get_sync_coordinator() -> SyncCoordinator:
    """Lazy singleton, created on first use."""
    global _coordinator
    if _coordinator is None:
        _coordinator = SyncCoordinator()
    return _coordinator


def set_sync_coordinator(coordinator: Optional[SyncCoordinator]) -> None:
    global _coordinator
    _coordinator = coordinator


# ── Pydantic Models ──────────────────────────────────────────────────


class InitiateSyncRequest(BaseModel):
    device_id: str = Field(..., min_length=1)
    data_types: Optional[List[str]] = None
    sync_type: str = "manual"
    # {data_type: [{"item_id", "version", "fields", "deleted"}]}
    remote_state: Dict[str, List[dict]] = Field(default_factory=dict)


class ResolveConflictRequest(BaseModel):
    conflict_index: int = Field(..., ge=0)
    resolution: str


# ── Routes ───────────────────────────────────────────────────────────


@router.post("/initiate", status_code=202)
async def initiate_sync(
    body: InitiateSyncRequest,
    owner_id: str = Depends(require_owner),
):
    """Start a sync run for one of the owner's devices."""
    try:
        return get_sync_coordinator().initiate_sync(
            owner_id,
            body.device_id,
            data_types=body.data_types,
            remote_state=body.remote_state,
            sync_type=body.sync_type,
        )
    except (VaultEngineError, ValueError) as e:
        raise http_error(e)


@router.get("/history")
async def sync_history(
    device_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    owner_id: str = Depends(require_owner),
):
    logs = get_sync_coordinator().list_sync_history(
        owner_id, device_id=device_id, status=status, limit=limit
    )
    return {"sync_logs": logs, "total": len(logs)}


@router.get("/conflicts")
async def unresolved_conflicts(owner_id: str = Depends(require_owner)):
    """Every unresolved conflict across the owner's sync logs."""
    conflicts = get_sync_coordinator().list_unresolved_conflicts(owner_id)
    return {"conflicts": conflicts, "total": len(conflicts)}


@router.get("/stats")
async def sync_stats(owner_id: str = Depends(require_owner)):
    return get_sync_coordinator().get_sync_stats(owner_id)


@router.get("/{sync_log_id}")
async def get_sync_status(sync_log_id: str, owner_id: str = Depends(require_owner)):
    """Poll a sync run; includes its conflicts once completed."""
    try:
        return get_sync_coordinator().get_sync_status(sync_log_id, owner_id=owner_id)
    except VaultEngineError as e:
        raise http_error(e)


@router.post("/{sync_log_id}/resolve-conflict")
async def resolve_conflict(
    sync_log_id: str,
    body: ResolveConflictRequest,
    owner_id: str = Depends(require_owner),
):
    try:
        return get_sync_coordinator().resolve_conflict(
            sync_log_id,
            body.conflict_index,
            body.resolution,
            resolved_by=owner_id,
            owner_id=owner_id,
        )
    except (VaultEngineError, ValueError) as e:
        raise http_error(e)


@router.post("/{sync_log_id}/cancel")
async def cancel_sync(sync_log_id: str, owner_id: str = Depends(require_owner)):
    try:
        return get_sync_coordinator().cancel_sync(sync_log_id, owner_id=owner_id)
    except VaultEngineError as e:
        raise http_error(e)
