"""Device API routes — registration, sync settings, primary device, device sync.

Also serves the owner's notification feed, which backup and sync runs
append to.
"""

import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from ..core.errors import VaultEngineError
from ..devices.device_registry import get_device_registry
from ..notifications.notification_sink import get_notification_sink
from .errors import http_error
from .security import require_owner
from .sync_routes import get_sync_coordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/devices", tags=["devices"])
notifications_router = APIRouter(prefix="/api/notifications", tags=["notifications"])


# ── Pydantic Models ──────────────────────────────────────────────────


class RegisterDeviceRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    device_type: str = "other"
    sync_enabled: bool = True
    auto_sync_enabled: bool = True
    sync_settings: Optional[Dict[str, bool]] = None


class UpdateSyncSettingsRequest(BaseModel):
    sync_enabled: Optional[bool] = None
    auto_sync_enabled: Optional[bool] = None
    sync_settings: Optional[Dict[str, bool]] = None


class DeviceSyncRequest(BaseModel):
    remote_state: Dict[str, List[dict]] = Field(default_factory=dict)


# ── Devices ──────────────────────────────────────────────────────────


@router.post("", status_code=201)
async def register_device(
    body: RegisterDeviceRequest,
    owner_id: str = Depends(require_owner),
):
    """Register a device. The first one becomes primary and trusted."""
    try:
        return get_device_registry().register_device(
            owner_id,
            body.name,
            device_type=body.device_type,
            sync_enabled=body.sync_enabled,
            auto_sync_enabled=body.auto_sync_enabled,
            sync_settings=body.sync_settings,
        )
    except ValueError as e:
        raise http_error(e)


@router.get("")
async def list_devices(owner_id: str = Depends(require_owner)):
    devices = get_device_registry().list_devices(owner_id)
    return {"devices": devices, "total": len(devices)}


@router.get("/{device_id}")
async def get_device(device_id: str, owner_id: str = Depends(require_owner)):
    try:
        return get_device_registry().get_owned_device(owner_id, device_id)
    except VaultEngineError as e:
        raise http_error(e)


@router.put("/{device_id}/sync-settings")
async def update_sync_settings(
    device_id: str,
    body: UpdateSyncSettingsRequest,
    owner_id: str = Depends(require_owner),
):
    try:
        return get_device_registry().update_sync_settings(
            owner_id,
            device_id,
            sync_enabled=body.sync_enabled,
            auto_sync_enabled=body.auto_sync_enabled,
            sync_settings=body.sync_settings,
        )
    except VaultEngineError as e:
        raise http_error(e)


@router.post("/{device_id}/primary")
async def set_primary(device_id: str, owner_id: str = Depends(require_owner)):
    try:
        return get_device_registry().set_primary(owner_id, device_id)
    except VaultEngineError as e:
        raise http_error(e)


@router.delete("/{device_id}")
async def remove_device(device_id: str, owner_id: str = Depends(require_owner)):
    """Remove a device. The primary device goes last."""
    try:
        get_device_registry().remove_device(owner_id, device_id)
    except VaultEngineError as e:
        raise http_error(e)
    return {"deleted": True}


@router.post("/{device_id}/sync", status_code=202)
async def sync_device(
    device_id: str,
    body: DeviceSyncRequest,
    owner_id: str = Depends(require_owner),
):
    """Device-triggered sync over the data types enabled for the device."""
    try:
        return get_sync_coordinator().sync_device(
            owner_id, device_id, remote_state=body.remote_state
        )
    except (VaultEngineError, ValueError) as e:
        raise http_error(e)


# ── Notifications ────────────────────────────────────────────────────


@notifications_router.get("")
async def list_notifications(
    unread_only: bool = False,
    limit: int = Query(50, ge=1, le=200),
    owner_id: str = Depends(require_owner),
):
    notifications = get_notification_sink().list_notifications(
        owner_id, unread_only=unread_only, limit=limit
    )
    return {"notifications": notifications, "total": len(notifications)}


@notifications_router.post("/{notification_id}/read")
async def mark_notification_read(
    notification_id: str,
    owner_id: str = Depends(require_owner),
):
    if not get_notification_sink().mark_notification_read(owner_id, notification_id):
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"read": True}
