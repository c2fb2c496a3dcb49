"""Alert API routes — expiry alerts and their read/resolve lifecycle.

Listing runs an expiration scan first, so items that entered the alert
window since the last request show up without a scheduler.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from ..alerts.expiration_engine import ExpirationAlertEngine
from ..core.errors import VaultEngineError
from .errors import http_error
from .security import require_owner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/alerts", tags=["alerts"])

# ── Singleton ────────────────────────────────────────────────────────

_alert_engine: Optional[ExpirationAlertEngine] = None


def get_alert_engine() -> ExpirationAlertEngine:
    """Lazy singleton, created on first use."""
    global _alert_engine
    if _alert_engine is None:
        _alert_engine = ExpirationAlertEngine()
    return _alert_engine


def set_alert_engine(engine: Optional[ExpirationAlertEngine]) -> None:
    global _alert_engine
    _alert_engine = engine


# ── Routes ───────────────────────────────────────────────────────────


@router.get("")
async def list_alerts(
    alert_type: Optional[str] = None,
    severity: Optional[str] = None,
    is_read: Optional[bool] = None,
    is_resolved: Optional[bool] = None,
    limit: int = Query(20, ge=1, le=200),
    offset: int = Query(0, ge=0),
    owner_id: str = Depends(require_owner),
):
    return get_alert_engine().list_alerts(
        owner_id,
        alert_type=alert_type,
        severity=severity,
        is_read=is_read,
        is_resolved=is_resolved,
        limit=limit,
        offset=offset,
    )


@router.get("/unread-count")
async def unread_count(owner_id: str = Depends(require_owner)):
    return {"count": get_alert_engine().unread_count(owner_id)}


@router.get("/critical")
async def critical_alerts(owner_id: str = Depends(require_owner)):
    """Unresolved critical alerts (expired items)."""
    alerts = get_alert_engine().critical_alerts(owner_id)
    return {"alerts": alerts, "total": len(alerts)}


@router.get("/stats")
async def alert_stats(owner_id: str = Depends(require_owner)):
    return get_alert_engine().get_alert_stats(owner_id)


@router.post("/scan")
async def scan_expirations(owner_id: str = Depends(require_owner)):
    try:
        created = get_alert_engine().scan(owner_id)
    except VaultEngineError as e:
        raise http_error(e)
    return {"created": created}


@router.post("/cleanup")
async def cleanup_expiry_alerts(owner_id: str = Depends(require_owner)):
    """Delete card/pass expiry alerts; the next scan recreates them."""
    return {"deleted": get_alert_engine().cleanup_expiry_alerts(owner_id)}


@router.post("/read-all")
async def mark_all_read(owner_id: str = Depends(require_owner)):
    return {"updated": get_alert_engine().mark_all_read(owner_id)}


@router.post("/{alert_id}/read")
async def mark_read(alert_id: str, owner_id: str = Depends(require_owner)):
    try:
        return get_alert_engine().mark_read(owner_id, alert_id)
    except VaultEngineError as e:
        raise http_error(e)


@router.post("/{alert_id}/resolve")
async def resolve_alert(alert_id: str, owner_id: str = Depends(require_owner)):
    try:
        return get_alert_engine().resolve_alert(owner_id, alert_id, resolved_by=owner_id)
    except VaultEngineError as e:
        raise http_error(e)


@router.delete("/{alert_id}")
async def delete_alert(alert_id: str, owner_id: str = Depends(require_owner)):
    try:
        get_alert_engine().delete_alert(owner_id, alert_id)
    except VaultEngineError as e:
        raise http_error(e)
    return {"deleted": True}
