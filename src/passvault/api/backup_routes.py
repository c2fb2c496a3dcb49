"""Backup API routes — create, list, restore, verify and delete vault backups.

Creation and restore only start the work: the response carries the
``initiated`` (or ``restoring``) record and the client polls
``/api/backups/{id}/status`` until the record is terminal.
"""

import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from ..backup.backup_manager import BackupManager
from ..core.errors import VaultEngineError
from ..devices.device_registry import get_device_registry
from .errors import http_error
from .security import require_owner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/backups", tags=["backups"])

# ── Singleton ────────────────────────────────────────────────────────

_backup_manager: Optional[BackupManager] = None


def get_backup_manager() -> BackupManager:
    """Lazy singleton, created on first use."""
    global _backup_manager
    if _backup_manager is None:
        _backup_manager = BackupManager(device_registry=get_device_registry())
    return _backup_manager


def set_backup_manager(manager: Optional[BackupManager]) -> None:
    global _backup_manager
    _backup_manager = manager


# ── Pydantic Models ──────────────────────────────────────────────────


class CreateBackupRequest(BaseModel):
    data_types: Optional[List[str]] = None
    backup_type: str = Field("manual", max_length=20)
    device_id: Optional[str] = None


class SelectiveBackupRequest(BaseModel):
    password_ids: List[str] = Field(default_factory=list)
    document_ids: List[str] = Field(default_factory=list)
    qrcode_ids: List[str] = Field(default_factory=list)
    device_id: Optional[str] = None


# ── Routes ───────────────────────────────────────────────────────────


@router.post("", status_code=202)
async def create_backup(
    body: CreateBackupRequest,
    owner_id: str = Depends(require_owner),
):
    """Start a full backup of the owner's vault."""
    try:
        return get_backup_manager().create_backup(
            owner_id,
            kind="full",
            data_types=body.data_types,
            backup_type=body.backup_type,
            device_id=body.device_id,
        )
    except (VaultEngineError, ValueError) as e:
        raise http_error(e)


@router.post("/selective", status_code=202)
async def create_selective_backup(
    body: SelectiveBackupRequest,
    owner_id: str = Depends(require_owner),
):
    """Start a backup of explicitly selected items."""
    selection: Dict[str, List[str]] = {
        "password_ids": body.password_ids,
        "document_ids": body.document_ids,
        "qrcode_ids": body.qrcode_ids,
    }
    try:
        return get_backup_manager().create_backup(
            owner_id, kind="selective", selection=selection, device_id=body.device_id
        )
    except (VaultEngineError, ValueError) as e:
        raise http_error(e)


@router.get("")
async def list_backups(
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    owner_id: str = Depends(require_owner),
):
    """Backup history, newest first."""
    backups = get_backup_manager().list_backups(owner_id, status=status, limit=limit)
    return {"backups": backups, "total": len(backups)}


@router.get("/stats")
async def backup_stats(owner_id: str = Depends(require_owner)):
    return get_backup_manager().get_backup_stats(owner_id)


@router.get("/health")
async def backup_health(owner_id: str = Depends(require_owner)):
    """Overall health rating with a recommendation."""
    return get_backup_manager().get_health(owner_id)


@router.get("/{backup_id}")
async def get_backup(backup_id: str, owner_id: str = Depends(require_owner)):
    try:
        return get_backup_manager().get_backup_status(backup_id, owner_id=owner_id)
    except VaultEngineError as e:
        raise http_error(e)


@router.get("/{backup_id}/status")
async def get_backup_status(backup_id: str, owner_id: str = Depends(require_owner)):
    """Poll a backup until it reaches ``completed`` or ``failed``."""
    try:
        record = get_backup_manager().get_backup_status(backup_id, owner_id=owner_id)
    except VaultEngineError as e:
        raise http_error(e)
    return {
        "backup_id": record["backup_id"],
        "status": record["status"],
        "items_backed_up": record["items_backed_up"],
        "item_count": record["item_count"],
        "size_bytes": record["size_bytes"],
        "error": record["error"],
        "started_at": record["started_at"],
        "completed_at": record["completed_at"],
    }


@router.post("/{backup_id}/restore", status_code=202)
async def restore_backup(backup_id: str, owner_id: str = Depends(require_owner)):
    """Verify a completed backup's archive for restore."""
    try:
        return get_backup_manager().restore_backup(backup_id, owner_id=owner_id)
    except VaultEngineError as e:
        raise http_error(e)


@router.post("/{backup_id}/verify")
async def verify_backup(backup_id: str, owner_id: str = Depends(require_owner)):
    try:
        return get_backup_manager().verify_backup(backup_id, owner_id=owner_id)
    except VaultEngineError as e:
        raise http_error(e)


@router.delete("/{backup_id}")
async def delete_backup(backup_id: str, owner_id: str = Depends(require_owner)):
    """Delete a finished backup's archive and record."""
    try:
        get_backup_manager().delete_backup(backup_id, owner_id=owner_id)
    except VaultEngineError as e:
        raise http_error(e)
    return {"deleted": True}
