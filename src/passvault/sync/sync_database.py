"""Sync log database — one row per device sync attempt, plus its conflicts.

Follows the backup/backup_database.py pattern: SQLite + WAL via core.db.connect().

Tables:
    sync_logs       one row per attempt; a partial unique index allows at
                    most one active (initiated / in_progress) log per device
    sync_conflicts  one row per detected conflict, keyed by
                    (sync_log_id, conflict_index); resolution columns are
                    the only ones ever updated after insert
"""

import json
import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, List, Optional

from ..core.db import utcnow_iso
from ..core.errors import ConflictError

logger = logging.getLogger(__name__)

STATUS_INITIATED = "initiated"
STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

ACTIVE_STATUSES = (STATUS_INITIATED, STATUS_IN_PROGRESS)

_JSON_FIELDS = ("data_types", "items_synced", "error")


@dataclass
class Conflict:
    """A diverging value for the same logical field from two sources."""

    item_type: str
    item_id: str
    field: str
    conflict_type: str              # version / deletion / modification
    local_value: Any = None
    remote_value: Any = None
    resolution: Optional[str] = None  # server_wins / client_wins / manual
    resolved_by: Optional[str] = None
    resolved_at: Optional[str] = None

    @property
    def is_resolved(self) -> bool:
        return self.resolution is not None

    def to_dict(self) -> dict:
        return {
            "item_type": self.item_type,
            "item_id": self.item_id,
            "field": self.field,
            "conflict_type": self.conflict_type,
            "local_value": self.local_value,
            "remote_value": self.remote_value,
            "resolution": self.resolution,
            "resolved_by": self.resolved_by,
            "resolved_at": self.resolved_at,
        }


class SyncDatabase:
    """SQLite persistence for sync logs and conflicts.

    Args:
        db_path: Path to SQLite database file.  Defaults to data/sync.db.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = Path(db_path) if db_path else Path("data/sync.db")
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

    def _connect(self, row_factory: bool = False):
        from ..core.db import connect as db_connect
        return db_connect(self.db_path, row_factory=row_factory)

    def _init_database(self):
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS sync_logs (
                    sync_log_id  TEXT PRIMARY KEY,
                    owner_id     TEXT NOT NULL,
                    device_id    TEXT NOT NULL,
                    sync_type    TEXT NOT NULL DEFAULT 'manual',
                    status       TEXT NOT NULL DEFAULT 'initiated',
                    data_types   TEXT DEFAULT '[]',
                    items_synced TEXT DEFAULT '{}',
                    total_items  INTEGER DEFAULT 0,
                    data_synced  INTEGER DEFAULT 0,
                    duration_ms  INTEGER DEFAULT 0,
                    error        TEXT,
                    started_at   TEXT NOT NULL,
                    completed_at TEXT
                )
            """)
            conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_sync_logs_one_active
                ON sync_logs(device_id) WHERE status IN ('initiated', 'in_progress')
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_sync_logs_owner_started
                ON sync_logs(owner_id, started_at)
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS sync_conflicts (
                    sync_log_id    TEXT NOT NULL
                                   REFERENCES sync_logs(sync_log_id) ON DELETE CASCADE,
                    conflict_index INTEGER NOT NULL,
                    item_type      TEXT NOT NULL,
                    item_id        TEXT NOT NULL,
                    field          TEXT NOT NULL,
                    conflict_type  TEXT NOT NULL,
                    local_value    TEXT,
                    remote_value   TEXT,
                    resolution     TEXT,
                    resolved_by    TEXT,
                    resolved_at    TEXT,
                    PRIMARY KEY (sync_log_id, conflict_index)
                )
            """)
            conn.commit()

    # ── Sync logs ───────────────────────────────────────────────────

    def insert_sync_log(
        self,
        sync_log_id: str,
        owner_id: str,
        device_id: str,
        sync_type: str,
        data_types: List[str],
    ) -> dict:
        """Insert an ``initiated`` log.

        Raises:
            ConflictError: The device already has an active sync.
        """
        try:
            with self._connect() as conn:
                conn.execute(
                    """INSERT INTO sync_logs
                       (sync_log_id, owner_id, device_id, sync_type, status,
                        data_types, started_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?)""",
                    (sync_log_id, owner_id, device_id, sync_type,
                     STATUS_INITIATED, json.dumps(data_types), utcnow_iso()),
                )
                conn.commit()
        except sqlite3.IntegrityError:
            raise ConflictError("A sync is already in progress for this device")
        return self.get_sync_log(sync_log_id)

    def get_sync_log(self, sync_log_id: str) -> Optional[dict]:
        """Sync log with its conflicts (ordered by index)."""
        with self._connect(row_factory=True) as conn:
            row = conn.execute(
                "SELECT * FROM sync_logs WHERE sync_log_id = ?", (sync_log_id,)
            ).fetchone()
            if row is None:
                return None
            conflicts = conn.execute(
                """SELECT * FROM sync_conflicts WHERE sync_log_id = ?
                   ORDER BY conflict_index""",
                (sync_log_id,),
            ).fetchall()
        log = self._row_to_dict(row)
        log["conflicts"] = [self._row_to_conflict(c).to_dict() for c in conflicts]
        return log

    def list_sync_logs(
        self,
        owner_id: str,
        device_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = 50,
    ) -> List[dict]:
        """Newest-first sync logs (without conflict bodies)."""
        query = """SELECT l.*,
                          (SELECT COUNT(*) FROM sync_conflicts c
                           WHERE c.sync_log_id = l.sync_log_id) AS conflict_count,
                          (SELECT COUNT(*) FROM sync_conflicts c
                           WHERE c.sync_log_id = l.sync_log_id
                             AND c.resolution IS NULL) AS unresolved_conflicts
                   FROM sync_logs l WHERE l.owner_id = ?"""
        params: list = [owner_id]
        if device_id:
            query += " AND l.device_id = ?"
            params.append(device_id)
        if status:
            query += " AND l.status = ?"
            params.append(status)
        query += " ORDER BY l.started_at DESC, l.rowid DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._connect(row_factory=True) as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_dict(r) for r in rows]

    def transition(
        self,
        sync_log_id: str,
        from_statuses: Iterable[str],
        to_status: str,
        **fields,
    ) -> bool:
        """Conditional status change; see BackupDatabase.transition()."""
        with self._connect() as conn:
            changed = self._transition(conn, sync_log_id, tuple(from_statuses),
                                       to_status, fields)
            conn.commit()
        return changed

    def complete_sync_log(
        self,
        sync_log_id: str,
        conflicts: List[Conflict],
        **fields,
    ) -> bool:
        """``in_progress → completed`` and the run's conflicts, in one transaction.

        Returns False (and writes nothing) if the log is no longer in_progress,
        e.g. because it was cancelled while the body was running.
        """
        with self._connect() as conn:
            changed = self._transition(
                conn, sync_log_id, (STATUS_IN_PROGRESS,), STATUS_COMPLETED, fields
            )
            if changed:
                conn.executemany(
                    """INSERT INTO sync_conflicts
                       (sync_log_id, conflict_index, item_type, item_id, field,
                        conflict_type, local_value, remote_value)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    [
                        (sync_log_id, index, c.item_type, c.item_id, c.field,
                         c.conflict_type, json.dumps(c.local_value),
                         json.dumps(c.remote_value))
                        for index, c in enumerate(conflicts)
                    ],
                )
            conn.commit()
        return changed

    @staticmethod
    def _transition(conn, sync_log_id, from_statuses, to_status, fields) -> bool:
        columns = ["status = ?"]
        params: list = [to_status]
        for name, value in fields.items():
            if name in _JSON_FIELDS:
                value = json.dumps(value) if value is not None else None
            columns.append(f"{name} = ?")
            params.append(value)
        placeholders = ", ".join("?" for _ in from_statuses)
        params.extend([sync_log_id, *from_statuses])
        cursor = conn.execute(
            f"""UPDATE sync_logs SET {', '.join(columns)}
                WHERE sync_log_id = ? AND status IN ({placeholders})""",
            params,
        )
        return cursor.rowcount > 0

    # ── Conflicts ───────────────────────────────────────────────────

    def resolve_conflict(
        self,
        sync_log_id: str,
        conflict_index: int,
        resolution: str,
        resolved_by: str,
    ) -> bool:
        """Set the resolution of one conflict. Returns False if it does not exist."""
        with self._connect() as conn:
            cursor = conn.execute(
                """UPDATE sync_conflicts
                   SET resolution = ?, resolved_by = ?, resolved_at = ?
                   WHERE sync_log_id = ? AND conflict_index = ?""",
                (resolution, resolved_by, utcnow_iso(), sync_log_id, conflict_index),
            )
            conn.commit()
        return cursor.rowcount > 0

    def unresolved_conflicts(self, owner_id: str) -> List[dict]:
        """Unresolved conflicts across an owner's logs, newest log first."""
        with self._connect(row_factory=True) as conn:
            rows = conn.execute(
                """SELECT c.*, l.device_id, l.started_at
                   FROM sync_conflicts c
                   JOIN sync_logs l ON l.sync_log_id = c.sync_log_id
                   WHERE l.owner_id = ? AND c.resolution IS NULL
                   ORDER BY l.started_at DESC, c.conflict_index""",
                (owner_id,),
            ).fetchall()
        result = []
        for row in rows:
            entry = self._row_to_conflict(row).to_dict()
            entry.update(
                sync_log_id=row["sync_log_id"],
                conflict_index=row["conflict_index"],
                device_id=row["device_id"],
                started_at=row["started_at"],
            )
            result.append(entry)
        return result

    # ── helpers ──────────────────────────────────────────────────────

    @staticmethod
    def _row_to_dict(row: sqlite3.Row) -> dict:
        d = dict(row)
        for name in _JSON_FIELDS:
            raw = d.get(name)
            if raw is None:
                continue
            try:
                d[name] = json.loads(raw)
            except (json.JSONDecodeError, TypeError):
                d[name] = None
        return d

    @staticmethod
    def _row_to_conflict(row: sqlite3.Row) -> Conflict:
        def _load(raw):
            return json.loads(raw) if raw is not None else None

        return Conflict(
            item_type=row["item_type"],
            item_id=row["item_id"],
            field=row["field"],
            conflict_type=row["conflict_type"],
            local_value=_load(row["local_value"]),
            remote_value=_load(row["remote_value"]),
            resolution=row["resolution"],
            resolved_by=row["resolved_by"],
            resolved_at=row["resolved_at"],
        )
