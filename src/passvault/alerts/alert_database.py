"""Alert database — per-owner security and expiry alerts.

Follows the backup/backup_database.py pattern: SQLite + WAL via core.db.connect().

Dedup lives in the schema: a partial unique index allows one unresolved
alert per (owner, related_to, related_id). ``create_alert()`` inserts with
ON CONFLICT DO NOTHING, so a concurrent duplicate is a silent no-op
instead of a second row.
"""

import json
import logging
import sqlite3
from pathlib import Path
from typing import Iterable, List, Optional, Tuple
from uuid import uuid4

from ..core.db import utcnow_iso

logger = logging.getLogger(__name__)

ALERT_TYPES = (
    "password_expiry",
    "weak_password",
    "breach",
    "login_attempt",
    "device_added",
    "password_reuse",
    "security_scan",
    "document_expiry",
    "card_expiry",
    "pass_expiry",
    "sync_failed",
    "storage_limit",
    "subscription_expiry",
)
SEVERITIES = ("low", "medium", "high", "critical")

_BOOL_FIELDS = ("is_read", "is_resolved", "action_required")


class AlertDatabase:
    """SQLite persistence for alerts.

    Args:
        db_path: Path to SQLite database file.  Defaults to data/alerts.db.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = Path(db_path) if db_path else Path("data/alerts.db")
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

    def _connect(self, row_factory: bool = False):
        from ..core.db import connect as db_connect
        return db_connect(self.db_path, row_factory=row_factory)

    def _init_database(self):
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS alerts (
                    alert_id        TEXT PRIMARY KEY,
                    owner_id        TEXT NOT NULL,
                    alert_type      TEXT NOT NULL,
                    severity        TEXT NOT NULL DEFAULT 'medium',
                    title           TEXT NOT NULL,
                    message         TEXT NOT NULL,
                    related_to      TEXT,
                    related_id      TEXT,
                    is_read         INTEGER DEFAULT 0,
                    read_at         TEXT,
                    is_resolved     INTEGER DEFAULT 0,
                    resolved_at     TEXT,
                    resolved_by     TEXT,
                    action_required INTEGER DEFAULT 0,
                    action_url      TEXT,
                    action_label    TEXT,
                    expiry_date     TEXT,
                    metadata        TEXT DEFAULT '{}',
                    created_at      TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_alerts_one_unresolved
                ON alerts(owner_id, related_to, related_id)
                WHERE is_resolved = 0 AND related_id IS NOT NULL
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_alerts_owner_created
                ON alerts(owner_id, created_at)
            """)
            conn.commit()

    # ── Writes ──────────────────────────────────────────────────────

    def create_alert(
        self,
        owner_id: str,
        alert_type: str,
        severity: str,
        title: str,
        message: str,
        related_to: Optional[str] = None,
        related_id: Optional[str] = None,
        action_required: bool = False,
        action_url: Optional[str] = None,
        action_label: Optional[str] = None,
        expiry_date: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> Optional[dict]:
        """Insert an alert. Returns None if an unresolved duplicate already exists."""
        if alert_type not in ALERT_TYPES:
            raise ValueError(f"Unknown alert type: {alert_type}")
        if severity not in SEVERITIES:
            raise ValueError(f"Unknown severity: {severity}")

        alert_id = uuid4().hex
        with self._connect() as conn:
            cursor = conn.execute(
                """INSERT INTO alerts
                   (alert_id, owner_id, alert_type, severity, title, message,
                    related_to, related_id, action_required, action_url,
                    action_label, expiry_date, metadata, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT DO NOTHING""",
                (
                    alert_id, owner_id, alert_type, severity, title, message,
                    related_to, related_id, int(action_required), action_url,
                    action_label, expiry_date, json.dumps(metadata or {}),
                    utcnow_iso(),
                ),
            )
            conn.commit()
        if cursor.rowcount == 0:
            return None
        return self.get_alert(owner_id, alert_id)

    def mark_read(self, owner_id: str, alert_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                """UPDATE alerts SET is_read = 1, read_at = COALESCE(read_at, ?)
                   WHERE owner_id = ? AND alert_id = ?""",
                (utcnow_iso(), owner_id, alert_id),
            )
            conn.commit()
        return cursor.rowcount > 0

    def mark_all_read(self, owner_id: str) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                """UPDATE alerts SET is_read = 1, read_at = ?
                   WHERE owner_id = ? AND is_read = 0""",
                (utcnow_iso(), owner_id),
            )
            conn.commit()
        return cursor.rowcount

    def resolve(self, owner_id: str, alert_id: str, resolved_by: str) -> bool:
        """Resolve an alert (also marks it read). Resolving twice is a no-op."""
        now = utcnow_iso()
        with self._connect() as conn:
            cursor = conn.execute(
                """UPDATE alerts
                   SET is_resolved = 1, resolved_at = COALESCE(resolved_at, ?),
                       resolved_by = COALESCE(resolved_by, ?),
                       is_read = 1, read_at = COALESCE(read_at, ?)
                   WHERE owner_id = ? AND alert_id = ?""",
                (now, resolved_by, now, owner_id, alert_id),
            )
            conn.commit()
        return cursor.rowcount > 0

    def delete(self, owner_id: str, alert_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM alerts WHERE owner_id = ? AND alert_id = ?",
                (owner_id, alert_id),
            )
            conn.commit()
        return cursor.rowcount > 0

    def delete_by_types(self, owner_id: str, alert_types: Iterable[str]) -> int:
        alert_types = tuple(alert_types)
        placeholders = ", ".join("?" for _ in alert_types)
        with self._connect() as conn:
            cursor = conn.execute(
                f"""DELETE FROM alerts
                    WHERE owner_id = ? AND alert_type IN ({placeholders})""",
                (owner_id, *alert_types),
            )
            conn.commit()
        return cursor.rowcount

    # ── Reads ───────────────────────────────────────────────────────

    def get_alert(self, owner_id: str, alert_id: str) -> Optional[dict]:
        with self._connect(row_factory=True) as conn:
            row = conn.execute(
                "SELECT * FROM alerts WHERE owner_id = ? AND alert_id = ?",
                (owner_id, alert_id),
            ).fetchone()
        return self._row_to_dict(row) if row else None

    def has_unresolved(self, owner_id: str, related_to: str, related_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """SELECT 1 FROM alerts
                   WHERE owner_id = ? AND related_to = ? AND related_id = ?
                     AND is_resolved = 0""",
                (owner_id, related_to, related_id),
            ).fetchone()
        return row is not None

    def list_alerts(
        self,
        owner_id: str,
        alert_type: Optional[str] = None,
        severity: Optional[str] = None,
        is_read: Optional[bool] = None,
        is_resolved: Optional[bool] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[dict], int]:
        """Newest-first page of alerts plus the total matching count."""
        where = ["owner_id = ?"]
        params: list = [owner_id]
        if alert_type:
            where.append("alert_type = ?")
            params.append(alert_type)
        if severity:
            where.append("severity = ?")
            params.append(severity)
        if is_read is not None:
            where.append("is_read = ?")
            params.append(int(is_read))
        if is_resolved is not None:
            where.append("is_resolved = ?")
            params.append(int(is_resolved))
        clause = " AND ".join(where)
        with self._connect(row_factory=True) as conn:
            total = conn.execute(
                f"SELECT COUNT(*) FROM alerts WHERE {clause}", params
            ).fetchone()[0]
            rows = conn.execute(
                f"""SELECT * FROM alerts WHERE {clause}
                    ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?""",
                [*params, limit, offset],
            ).fetchall()
        return [self._row_to_dict(r) for r in rows], total

    def unread_count(self, owner_id: str) -> int:
        with self._connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM alerts WHERE owner_id = ? AND is_read = 0",
                (owner_id,),
            ).fetchone()[0]

    def stats(self, owner_id: str) -> dict:
        with self._connect(row_factory=True) as conn:
            totals = conn.execute(
                """SELECT COUNT(*) AS total,
                          COALESCE(SUM(is_read = 0), 0) AS unread,
                          COALESCE(SUM(is_resolved = 0), 0) AS unresolved,
                          COALESCE(SUM(severity = 'critical' AND is_resolved = 0), 0)
                              AS critical
                   FROM alerts WHERE owner_id = ?""",
                (owner_id,),
            ).fetchone()
            by_type = conn.execute(
                """SELECT alert_type, COUNT(*) AS n FROM alerts
                   WHERE owner_id = ? GROUP BY alert_type""",
                (owner_id,),
            ).fetchall()
            by_severity = conn.execute(
                """SELECT severity, COUNT(*) AS n FROM alerts
                   WHERE owner_id = ? GROUP BY severity""",
                (owner_id,),
            ).fetchall()
        return {
            "total": totals["total"],
            "unread": totals["unread"],
            "unresolved": totals["unresolved"],
            "critical": totals["critical"],
            "by_type": {r["alert_type"]: r["n"] for r in by_type},
            "by_severity": {r["severity"]: r["n"] for r in by_severity},
        }

    # ── helpers ──────────────────────────────────────────────────────

    @staticmethod
    def _row_to_dict(row: sqlite3.Row) -> dict:
        d = dict(row)
        for name in _BOOL_FIELDS:
            d[name] = bool(d[name])
        try:
            d["metadata"] = json.loads(d.get("metadata") or "{}")
        except (json.JSONDecodeError, TypeError):
            d["metadata"] = {}
        return d
