"""Backup record database — one row per backup attempt.

Follows the vault/item_store.py pattern: SQLite + WAL mode via core.db.connect().

Exclusivity lives in the schema: a partial unique index allows at most one
row per owner in an active status, so two concurrent ``insert_backup``
calls cannot both succeed. State changes go through ``transition()``, a
conditional UPDATE that only fires when the current status is one of the
expected ones.
"""

import json
import logging
import sqlite3
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from ..core.db import utcnow_iso
from ..core.errors import ConflictError

logger = logging.getLogger(__name__)

STATUS_INITIATED = "initiated"
STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_RESTORING = "restoring"

ACTIVE_STATUSES = (STATUS_INITIATED, STATUS_IN_PROGRESS)
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED)

_JSON_FIELDS = ("data_types", "selection", "items_backed_up", "error", "metadata")
_BOOL_FIELDS = ("restorable",)


class BackupDatabase:
    """SQLite persistence for backup records.

    Args:
        db_path: Path to SQLite database file.  Defaults to data/backups.db.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = Path(db_path) if db_path else Path("data/backups.db")
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

    def _connect(self, row_factory: bool = False):
        from ..core.db import connect as db_connect
        return db_connect(self.db_path, row_factory=row_factory)

    def _init_database(self):
        """Create the backups table and its active-backup guard."""
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS backups (
                    backup_id           TEXT PRIMARY KEY,
                    owner_id            TEXT NOT NULL,
                    kind                TEXT NOT NULL DEFAULT 'full',
                    backup_type         TEXT NOT NULL DEFAULT 'manual',
                    status              TEXT NOT NULL DEFAULT 'initiated',
                    data_types          TEXT DEFAULT '[]',
                    selection           TEXT,
                    encryption_type     TEXT DEFAULT 'AES-256',
                    size_bytes          INTEGER DEFAULT 0,
                    items_backed_up     TEXT DEFAULT '{}',
                    item_count          INTEGER DEFAULT 0,
                    location            TEXT DEFAULT 'local',
                    storage_path        TEXT DEFAULT '',
                    checksum            TEXT DEFAULT '',
                    integrity_score     INTEGER DEFAULT 100,
                    encryption_strength INTEGER DEFAULT 256,
                    verification_status TEXT DEFAULT 'pending',
                    last_verified       TEXT,
                    restorable          INTEGER DEFAULT 1,
                    error               TEXT,
                    metadata            TEXT DEFAULT '{}',
                    started_at          TEXT NOT NULL,
                    completed_at        TEXT,
                    duration_ms         INTEGER DEFAULT 0
                )
            """)
            conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_backups_one_active
                ON backups(owner_id) WHERE status IN ('initiated', 'in_progress')
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_backups_owner_started
                ON backups(owner_id, started_at)
            """)
            conn.commit()

    # ── CRUD ────────────────────────────────────────────────────────

    def insert_backup(
        self,
        backup_id: str,
        owner_id: str,
        kind: str,
        backup_type: str,
        data_types: List[str],
        selection: Optional[Dict[str, List[str]]],
        metadata: dict,
        encryption_type: str = "AES-256",
    ) -> dict:
        """Insert a new ``initiated`` record.

        Raises:
            ConflictError: The owner already has an active backup.
        """
        try:
            with self._connect() as conn:
                conn.execute(
                    """INSERT INTO backups
                       (backup_id, owner_id, kind, backup_type, status,
                        data_types, selection, encryption_type, metadata,
                        started_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        backup_id, owner_id, kind, backup_type, STATUS_INITIATED,
                        json.dumps(data_types),
                        json.dumps(selection) if selection is not None else None,
                        encryption_type, json.dumps(metadata), utcnow_iso(),
                    ),
                )
                conn.commit()
        except sqlite3.IntegrityError:
            raise ConflictError("A backup is already in progress for this owner")
        return self.get_backup(backup_id)

    def get_backup(self, backup_id: str) -> Optional[dict]:
        with self._connect(row_factory=True) as conn:
            row = conn.execute(
                "SELECT * FROM backups WHERE backup_id = ?", (backup_id,)
            ).fetchone()
        return self._row_to_dict(row) if row else None

    def list_backups(
        self,
        owner_id: str,
        status: Optional[str] = None,
        limit: Optional[int] = 50,
    ) -> List[dict]:
        """Return an owner's backups sorted newest-first."""
        query = "SELECT * FROM backups WHERE owner_id = ?"
        params: list = [owner_id]
        if status:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY started_at DESC, rowid DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._connect(row_factory=True) as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_dict(r) for r in rows]

    def active_backup(self, owner_id: str) -> Optional[dict]:
        with self._connect(row_factory=True) as conn:
            row = conn.execute(
                """SELECT * FROM backups
                   WHERE owner_id = ? AND status IN ('initiated', 'in_progress')""",
                (owner_id,),
            ).fetchone()
        return self._row_to_dict(row) if row else None

    def transition(
        self,
        backup_id: str,
        from_statuses: Iterable[str],
        to_status: str,
        **fields,
    ) -> bool:
        """Move to ``to_status`` only if the current status is in ``from_statuses``.

        Extra keyword fields are written in the same UPDATE (JSON-encoded
        where the column stores JSON). Returns True if the row changed.
        """
        from_statuses = tuple(from_statuses)
        columns = ["status = ?"]
        params: list = [to_status]
        for name, value in fields.items():
            if name in _JSON_FIELDS:
                value = json.dumps(value) if value is not None else None
            elif name in _BOOL_FIELDS:
                value = int(bool(value))
            columns.append(f"{name} = ?")
            params.append(value)
        placeholders = ", ".join("?" for _ in from_statuses)
        params.extend([backup_id, *from_statuses])
        with self._connect() as conn:
            cursor = conn.execute(
                f"""UPDATE backups SET {', '.join(columns)}
                    WHERE backup_id = ? AND status IN ({placeholders})""",
                params,
            )
            conn.commit()
        return cursor.rowcount > 0

    def update_health(
        self,
        backup_id: str,
        integrity_score: int,
        verification_status: str,
        last_verified: str,
    ) -> bool:
        """Refresh health metrics only; status and payload fields are untouched."""
        with self._connect() as conn:
            cursor = conn.execute(
                """UPDATE backups
                   SET integrity_score = ?, verification_status = ?, last_verified = ?
                   WHERE backup_id = ?""",
                (integrity_score, verification_status, last_verified, backup_id),
            )
            conn.commit()
        return cursor.rowcount > 0

    def delete_backup_record(self, backup_id: str) -> bool:
        """Delete record from DB.  Returns True if a row was removed."""
        with self._connect() as conn:
            cursor = conn.execute(
                """DELETE FROM backups
                   WHERE backup_id = ? AND status IN ('completed', 'failed')""",
                (backup_id,),
            )
            conn.commit()
        return cursor.rowcount > 0

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
        for name in _BOOL_FIELDS:
            d[name] = bool(d[name])
        d["health_metrics"] = {
            "integrity_score": d.get("integrity_score"),
            "encryption_strength": d.get("encryption_strength"),
            "verification_status": d.get("verification_status"),
            "last_verified": d.get("last_verified"),
        }
        return d
