"""Notification sink — per-owner, append-only list of engine events.

The backup manager and sync coordinator append one human-readable record
on every terminal transition. Delivery (push, email) is somebody else's
job; this module only stores what the UI later lists.

Appends are single INSERT statements, so concurrent appends from several
background jobs are safe under WAL.
"""

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from ..core.db import utcnow_iso

logger = logging.getLogger(__name__)

NOTIFICATION_TYPES = ("info", "success", "warning", "alert")
PRIORITIES = ("low", "medium", "high")


@dataclass
class NotificationAction:
    """Optional call-to-action attached to a notification."""

    type: str = "internal"
    label: str = ""
    link: str = ""

    def to_dict(self) -> dict:
        return {"type": self.type, "label": self.label, "link": self.link}


@dataclass
class Notification:
    title: str
    message: str
    type: str = "info"
    category: str = "system"
    priority: str = "low"
    action: Optional[NotificationAction] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: str = ""

    def __post_init__(self):
        if not self.created_at:
            self.created_at = utcnow_iso()

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "message": self.message,
            "type": self.type,
            "category": self.category,
            "priority": self.priority,
            "action": self.action.to_dict() if self.action else None,
            "metadata": self.metadata,
            "created_at": self.created_at,
        }


def format_data_size(num_bytes: float) -> str:
    """Human-readable byte count: 512 B, 1.5 KB, 2.25 MB."""
    if num_bytes < 1024:
        return f"{int(num_bytes)} B"
    kb = num_bytes / 1024
    if kb < 1024:
        return f"{kb:.2f} KB"
    mb = kb / 1024
    if mb < 1024:
        return f"{mb:.2f} MB"
    return f"{mb / 1024:.2f} GB"


class NotificationSink:
    """SQLite-backed notification list.

    Args:
        db_path: Path to SQLite database file.  Defaults to data/notifications.db.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = Path(db_path) if db_path else Path("data/notifications.db")
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

    def _connect(self, row_factory: bool = False):
        from ..core.db import connect as db_connect
        return db_connect(self.db_path, row_factory=row_factory)

    def _init_database(self):
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS notifications (
                    notification_id TEXT PRIMARY KEY,
                    owner_id        TEXT NOT NULL,
                    title           TEXT NOT NULL,
                    message         TEXT NOT NULL,
                    type            TEXT DEFAULT 'info',
                    category        TEXT DEFAULT 'system',
                    priority        TEXT DEFAULT 'low',
                    action          TEXT,
                    metadata        TEXT DEFAULT '{}',
                    is_read         INTEGER DEFAULT 0,
                    created_at      TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_notifications_owner
                ON notifications(owner_id, created_at)
            """)
            conn.commit()

    def append_notification(self, owner_id: str, notification: Notification) -> dict:
        """Append one notification for ``owner_id`` and return the stored record."""
        notification_id = uuid4().hex
        action = notification.action.to_dict() if notification.action else None
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO notifications
                   (notification_id, owner_id, title, message, type, category,
                    priority, action, metadata, is_read, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?)""",
                (
                    notification_id, owner_id, notification.title,
                    notification.message, notification.type,
                    notification.category, notification.priority,
                    json.dumps(action) if action else None,
                    json.dumps(notification.metadata),
                    notification.created_at,
                ),
            )
            conn.commit()
        logger.debug("Notification for %s: %s", owner_id, notification.title)
        return {"notification_id": notification_id, "owner_id": owner_id,
                "is_read": False, **notification.to_dict()}

    def list_notifications(
        self, owner_id: str, unread_only: bool = False, limit: int = 50
    ) -> List[dict]:
        """Newest-first notifications for one owner."""
        query = "SELECT * FROM notifications WHERE owner_id = ?"
        if unread_only:
            query += " AND is_read = 0"
        query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        with self._connect(row_factory=True) as conn:
            rows = conn.execute(query, (owner_id, limit)).fetchall()
        return [self._row_to_dict(r) for r in rows]

    def mark_notification_read(self, owner_id: str, notification_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                """UPDATE notifications SET is_read = 1
                   WHERE owner_id = ? AND notification_id = ?""",
                (owner_id, notification_id),
            )
            conn.commit()
        return cursor.rowcount > 0

    @staticmethod
    def _row_to_dict(row: sqlite3.Row) -> dict:
        d = dict(row)
        d["is_read"] = bool(d["is_read"])
        d["action"] = json.loads(d["action"]) if d.get("action") else None
        try:
            d["metadata"] = json.loads(d.get("metadata") or "{}")
        except (json.JSONDecodeError, TypeError):
            d["metadata"] = {}
        return d


# ── Singleton ────────────────────────────────────────────────────────

_sink: Optional[NotificationSink] = None


def get_notification_sink() -> NotificationSink:
    global _sink
    if _sink is None:
        from ..core.config import get_config
        _sink = NotificationSink(str(get_config().db_path("notifications.db")))
    return _sink


def set_notification_sink(sink: Optional[NotificationSink]) -> None:
    global _sink
    _sink = sink
