"""Expiration alert engine — deduplicated expiry alerts for vault items.

Scans every active QR card/pass, password and document of an owner,
derives an expiry instant (see alerts/expiry.py), and creates one alert
per item expiring within the window (default 30 days) or already expired.

Dedup guarantees:
    - at most one unresolved alert per (owner, 'vault-item', item_id),
      enforced by a partial unique index in AlertDatabase
    - scans of the same owner are serialized by a per-owner lock, so the
      existence check and the insert never interleave across scans

Scanning is idempotent: a second scan over unchanged items creates nothing.
Items whose expiry cannot be derived are skipped; one malformed item
never fails the whole scan.
"""

import logging
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from ..core.audit_log import EventSeverity, EventType, audit_owner_event
from ..core.errors import DependencyFailureError, NotFoundError
from ..vault.item_store import VaultItemStore, get_item_store
from .alert_database import AlertDatabase
from .expiry import classify_expiry_source, compose_expiry_alert, normalize_expiry

logger = logging.getLogger(__name__)

RELATED_TO = "vault-item"
SCANNED_TYPES = ("qrcodes", "passwords", "documents")
REFRESHABLE_TYPES = ("card_expiry", "pass_expiry")
DEFAULT_WINDOW_DAYS = 30


class ExpirationAlertEngine:
    """Creates and manages expiry alerts for vault owners.

    Args:
        alert_db: AlertDatabase instance.  Created from config if None.
        item_store: Vault item repository.  Module singleton if None.
        window_days: Alert on items expiring within this many days.
    """

    def __init__(
        self,
        alert_db: Optional[AlertDatabase] = None,
        item_store: Optional[VaultItemStore] = None,
        window_days: Optional[int] = None,
    ):
        from ..core.config import get_config
        config = get_config()
        self._db = alert_db or AlertDatabase(str(config.db_path("alerts.db")))
        self._items = item_store or get_item_store()
        self._window = timedelta(
            days=window_days if window_days is not None else config.alert_window_days
        )
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _owner_lock(self, owner_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(owner_id, threading.Lock())

    # ── Scan ─────────────────────────────────────────────────────────

    def scan(self, owner_id: str, now: Optional[datetime] = None) -> int:
        """Create missing expiry alerts for an owner. Returns how many were created."""
        now = now or datetime.now(timezone.utc)
        horizon = now + self._window
        created = 0

        with self._owner_lock(owner_id):
            for item_type in SCANNED_TYPES:
                try:
                    items = self._items.list_active_items(owner_id, item_type)
                except sqlite3.Error as exc:
                    raise DependencyFailureError(f"Vault item repository call failed: {exc}")

                for item in items:
                    expiry = normalize_expiry(
                        classify_expiry_source(item.data), item.expires_at
                    )
                    if expiry is None or expiry.expiry_date > horizon:
                        continue
                    if self._db.has_unresolved(owner_id, RELATED_TO, item.item_id):
                        continue

                    fields = compose_expiry_alert(item, expiry, now)
                    alert = self._db.create_alert(
                        owner_id,
                        related_to=RELATED_TO,
                        related_id=item.item_id,
                        action_required=True,
                        **fields,
                    )
                    if alert is None:
                        continue
                    created += 1
                    logger.info("Expiry alert for %s (%s, %s)",
                                item.item_id, fields["alert_type"], fields["severity"])
                    audit_owner_event(
                        EventType.ALERT_CREATED, owner_id,
                        f"Expiry alert created: {item.title}",
                        details={"alert_id": alert["alert_id"],
                                 "alert_type": fields["alert_type"],
                                 "severity": fields["severity"],
                                 "related_id": item.item_id},
                        severity=EventSeverity.INVESTIGATE
                        if fields["severity"] == "critical" else EventSeverity.INFO,
                    )

        if created:
            logger.info("Expiration scan for %s created %d alerts", owner_id, created)
        return created

    # ── Queries ──────────────────────────────────────────────────────

    def list_alerts(
        self,
        owner_id: str,
        alert_type: Optional[str] = None,
        severity: Optional[str] = None,
        is_read: Optional[bool] = None,
        is_resolved: Optional[bool] = None,
        limit: int = 20,
        offset: int = 0,
        run_scan: bool = True,
    ) -> dict:
        """Page of alerts; a scan runs first so new expirations show up on read."""
        if run_scan:
            try:
                self.scan(owner_id)
            except DependencyFailureError:
                logger.warning("Expiration scan skipped for %s", owner_id, exc_info=True)

        alerts, total = self._db.list_alerts(
            owner_id, alert_type=alert_type, severity=severity,
            is_read=is_read, is_resolved=is_resolved, limit=limit, offset=offset,
        )
        return {"alerts": alerts, "total": total, "limit": limit, "offset": offset}

    def list_unresolved_alerts(self, owner_id: str) -> List[dict]:
        alerts, _ = self._db.list_alerts(owner_id, is_resolved=False, limit=1000)
        return alerts

    def unread_count(self, owner_id: str) -> int:
        return self._db.unread_count(owner_id)

    def critical_alerts(self, owner_id: str) -> List[dict]:
        alerts, _ = self._db.list_alerts(
            owner_id, severity="critical", is_resolved=False, limit=1000
        )
        return alerts

    def get_alert_stats(self, owner_id: str) -> dict:
        return self._db.stats(owner_id)

    # ── Mutations ────────────────────────────────────────────────────

    def mark_read(self, owner_id: str, alert_id: str) -> dict:
        if not self._db.mark_read(owner_id, alert_id):
            raise NotFoundError("Alert not found")
        return self._db.get_alert(owner_id, alert_id)

    def mark_all_read(self, owner_id: str) -> int:
        return self._db.mark_all_read(owner_id)

    def resolve_alert(self, owner_id: str, alert_id: str, resolved_by: str = "user") -> dict:
        if not self._db.resolve(owner_id, alert_id, resolved_by):
            raise NotFoundError("Alert not found")
        alert = self._db.get_alert(owner_id, alert_id)
        audit_owner_event(
            EventType.ALERT_RESOLVED, owner_id,
            f"Alert resolved: {alert['title']}",
            details={"alert_id": alert_id, "resolved_by": resolved_by},
        )
        return alert

    def delete_alert(self, owner_id: str, alert_id: str) -> bool:
        if not self._db.delete(owner_id, alert_id):
            raise NotFoundError("Alert not found")
        return True

    def cleanup_expiry_alerts(self, owner_id: str) -> int:
        """Drop card/pass expiry alerts so the next scan recreates them fresh."""
        deleted = self._db.delete_by_types(owner_id, REFRESHABLE_TYPES)
        logger.info("Removed %d card/pass expiry alerts for %s", deleted, owner_id)
        return deleted
