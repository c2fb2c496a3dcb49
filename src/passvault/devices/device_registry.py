"""Device registry — the owner's devices and their sync preferences.

The sync coordinator consumes ``get_device`` and ``set_device_status``;
the remaining operations back the device management routes.

Invariants kept in storage:
    - exactly one primary device per owner (partial unique index on
      ``owner_id WHERE is_primary = 1``); the first registered device is
      primary and trusted
    - the primary device cannot be removed while other devices exist
"""

import json
import logging
import sqlite3
from pathlib import Path
from typing import Dict, List, Optional
from uuid import uuid4

from ..core.audit_log import EventType, audit_owner_event
from ..core.db import utcnow_iso
from ..core.errors import InvalidStateError, NotFoundError

logger = logging.getLogger(__name__)

DEVICE_TYPES = ("laptop", "mobile", "tablet", "desktop", "other")
DEVICE_STATUSES = ("online", "offline", "syncing")

DEFAULT_SYNC_SETTINGS: Dict[str, bool] = {
    "passwords": True,
    "documents": True,
    "settings": True,
    "notes": False,
}


def enabled_data_types(device: dict) -> List[str]:
    """Data types switched on in a device's sync settings."""
    return [name for name, enabled in device.get("sync_settings", {}).items() if enabled]


class DeviceRegistry:
    """SQLite persistence for owner devices.

    Args:
        db_path: Path to SQLite database file.  Defaults to data/devices.db.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = Path(db_path) if db_path else Path("data/devices.db")
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

    def _connect(self, row_factory: bool = False):
        from ..core.db import connect as db_connect
        return db_connect(self.db_path, row_factory=row_factory)

    def _init_database(self):
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS devices (
                    device_id         TEXT PRIMARY KEY,
                    owner_id          TEXT NOT NULL,
                    name              TEXT NOT NULL,
                    device_type       TEXT DEFAULT 'other',
                    status            TEXT DEFAULT 'offline',
                    is_trusted        INTEGER DEFAULT 0,
                    is_primary        INTEGER DEFAULT 0,
                    sync_enabled      INTEGER DEFAULT 1,
                    auto_sync_enabled INTEGER DEFAULT 1,
                    sync_settings     TEXT DEFAULT '{}',
                    last_active_at    TEXT,
                    last_synced_at    TEXT,
                    created_at        TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_devices_one_primary
                ON devices(owner_id) WHERE is_primary = 1
            """)
            conn.commit()

    # ── Registration ────────────────────────────────────────────────

    def register_device(
        self,
        owner_id: str,
        name: str,
        device_type: str = "other",
        sync_enabled: bool = True,
        auto_sync_enabled: bool = True,
        sync_settings: Optional[Dict[str, bool]] = None,
    ) -> dict:
        """Register a device. The owner's first device becomes primary + trusted."""
        if device_type not in DEVICE_TYPES:
            raise ValueError(f"Unknown device type: {device_type}")

        settings = dict(DEFAULT_SYNC_SETTINGS)
        settings.update(sync_settings or {})
        device_id = uuid4().hex
        now = utcnow_iso()

        with self._connect() as conn:
            # IMMEDIATE: two concurrent first registrations must not both
            # see an empty device list.
            conn.execute("BEGIN IMMEDIATE")
            existing = conn.execute(
                "SELECT COUNT(*) FROM devices WHERE owner_id = ?", (owner_id,)
            ).fetchone()[0]
            is_first = existing == 0
            conn.execute(
                """INSERT INTO devices
                   (device_id, owner_id, name, device_type, status, is_trusted,
                    is_primary, sync_enabled, auto_sync_enabled, sync_settings,
                    last_active_at, created_at)
                   VALUES (?, ?, ?, ?, 'online', ?, ?, ?, ?, ?, ?, ?)""",
                (
                    device_id, owner_id, name, device_type,
                    int(is_first), int(is_first), int(sync_enabled),
                    int(auto_sync_enabled), json.dumps(settings), now, now,
                ),
            )
            conn.commit()

        audit_owner_event(
            EventType.DEVICE_REGISTERED, owner_id,
            f"Device registered: {name}",
            details={"device_id": device_id, "device_type": device_type,
                     "is_primary": is_first},
        )
        return self.get_device(device_id)

    # ── Queries ─────────────────────────────────────────────────────

    def get_device(self, device_id: str) -> Optional[dict]:
        with self._connect(row_factory=True) as conn:
            row = conn.execute(
                "SELECT * FROM devices WHERE device_id = ?", (device_id,)
            ).fetchone()
        return self._row_to_dict(row) if row else None

    def get_owned_device(self, owner_id: str, device_id: str) -> dict:
        """Device owned by ``owner_id``; foreign devices are reported as missing."""
        device = self.get_device(device_id)
        if device is None or device["owner_id"] != owner_id:
            raise NotFoundError("Device not found")
        return device

    def list_devices(self, owner_id: str) -> List[dict]:
        """Primary first, then most recently active."""
        with self._connect(row_factory=True) as conn:
            rows = conn.execute(
                """SELECT * FROM devices WHERE owner_id = ?
                   ORDER BY is_primary DESC, last_active_at DESC""",
                (owner_id,),
            ).fetchall()
        return [self._row_to_dict(r) for r in rows]

    # ── State updates ───────────────────────────────────────────────

    def set_device_status(self, device_id: str, status: str) -> bool:
        if status not in DEVICE_STATUSES:
            raise ValueError(f"Unknown device status: {status}")
        with self._connect() as conn:
            cursor = conn.execute(
                """UPDATE devices SET status = ?, last_active_at = ?
                   WHERE device_id = ?""",
                (status, utcnow_iso(), device_id),
            )
            conn.commit()
        return cursor.rowcount > 0

    def mark_synced(self, device_id: str) -> bool:
        """Successful sync: device back online with a fresh last_synced_at."""
        now = utcnow_iso()
        with self._connect() as conn:
            cursor = conn.execute(
                """UPDATE devices
                   SET status = 'online', last_synced_at = ?, last_active_at = ?
                   WHERE device_id = ?""",
                (now, now, device_id),
            )
            conn.commit()
        return cursor.rowcount > 0

    def update_sync_settings(
        self,
        owner_id: str,
        device_id: str,
        sync_enabled: Optional[bool] = None,
        auto_sync_enabled: Optional[bool] = None,
        sync_settings: Optional[Dict[str, bool]] = None,
    ) -> dict:
        device = self.get_owned_device(owner_id, device_id)
        settings = dict(device["sync_settings"])
        if sync_settings:
            settings.update(sync_settings)
        with self._connect() as conn:
            conn.execute(
                """UPDATE devices
                   SET sync_enabled = ?, auto_sync_enabled = ?, sync_settings = ?
                   WHERE device_id = ?""",
                (
                    int(device["sync_enabled"] if sync_enabled is None else sync_enabled),
                    int(device["auto_sync_enabled"] if auto_sync_enabled is None
                        else auto_sync_enabled),
                    json.dumps(settings),
                    device_id,
                ),
            )
            conn.commit()
        return self.get_device(device_id)

    def set_primary(self, owner_id: str, device_id: str) -> dict:
        """Move the primary flag to ``device_id`` (which also becomes trusted)."""
        self.get_owned_device(owner_id, device_id)
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(
                "UPDATE devices SET is_primary = 0 WHERE owner_id = ? AND is_primary = 1",
                (owner_id,),
            )
            conn.execute(
                "UPDATE devices SET is_primary = 1, is_trusted = 1 WHERE device_id = ?",
                (device_id,),
            )
            conn.commit()
        return self.get_device(device_id)

    def remove_device(self, owner_id: str, device_id: str) -> bool:
        device = self.get_owned_device(owner_id, device_id)
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            others = conn.execute(
                "SELECT COUNT(*) FROM devices WHERE owner_id = ? AND device_id != ?",
                (owner_id, device_id),
            ).fetchone()[0]
            if device["is_primary"] and others > 0:
                conn.rollback()
                raise InvalidStateError(
                    "Cannot remove primary device while other devices exist. "
                    "Set another device as primary first."
                )
            conn.execute("DELETE FROM devices WHERE device_id = ?", (device_id,))
            conn.commit()

        audit_owner_event(
            EventType.DEVICE_REMOVED, owner_id,
            f"Device removed: {device['name']}",
            details={"device_id": device_id},
        )
        return True

    # ── helpers ──────────────────────────────────────────────────────

    @staticmethod
    def _row_to_dict(row: sqlite3.Row) -> dict:
        d = dict(row)
        for key in ("is_trusted", "is_primary", "sync_enabled", "auto_sync_enabled"):
            d[key] = bool(d[key])
        try:
            d["sync_settings"] = json.loads(d.get("sync_settings") or "{}")
        except (json.JSONDecodeError, TypeError):
            d["sync_settings"] = dict(DEFAULT_SYNC_SETTINGS)
        return d


# ── Singleton ────────────────────────────────────────────────────────

_registry: Optional[DeviceRegistry] = None


def get_device_registry() -> DeviceRegistry:
    global _registry
    if _registry is None:
        from ..core.config import get_config
        _registry = DeviceRegistry(str(get_config().db_path("devices.db")))
    return _registry


def set_device_registry(registry: Optional[DeviceRegistry]) -> None:
    global _registry
    _registry = registry
