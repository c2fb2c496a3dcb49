"""Vault item repository — passwords, documents, notes and QR cards/passes.

The backup, sync and alert engines only read vault items through this
interface (``list_active_items``, ``count_items``, ``get_items_by_ids``).
CRUD is kept minimal: enough for the engines and their tests.

Secrets (the password value of a password item, the content of a document)
are never stored in clear: ``add_item(secret=...)`` protects them with a
per-item key via EncryptionService and persists the EncryptedBlob fields.

Follows the backup/backup_database.py pattern: SQLite + WAL via core.db.connect().
"""

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from ..core.db import utcnow_iso
from ..core.errors import NotFoundError
from .encryption import EncryptedBlob, EncryptionService

logger = logging.getLogger(__name__)

# Repository-backed data types. "settings" and "devices" are owner-level
# snapshots handled by the backup/sync engines, not item tables.
ITEM_TYPES = ("passwords", "documents", "notes", "qrcodes")


@dataclass
class VaultItem:
    """One vault record as the engines see it."""

    item_id: str
    owner_id: str
    item_type: str
    title: str
    data: Dict[str, Any] = field(default_factory=dict)
    category: str = ""
    qr_type: str = ""
    expires_at: Optional[str] = None
    is_active: bool = True
    version: int = 1
    secret: Optional[EncryptedBlob] = None
    created_at: str = ""
    updated_at: str = ""

    def __post_init__(self):
        if not self.created_at:
            self.created_at = utcnow_iso()
        if not self.updated_at:
            self.updated_at = self.created_at

    def field_value(self, name: str) -> Any:
        """Value of a logical field, looking at columns first, then data."""
        if name in ("title", "category", "qr_type", "expires_at"):
            return getattr(self, name)
        return self.data.get(name)

    @property
    def payload_size(self) -> int:
        """Approximate serialized size in bytes (used for sync byte counts)."""
        return len(json.dumps(self.to_dict(), sort_keys=True).encode("utf-8"))

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "owner_id": self.owner_id,
            "item_type": self.item_type,
            "title": self.title,
            "data": self.data,
            "category": self.category,
            "qr_type": self.qr_type,
            "expires_at": self.expires_at,
            "is_active": self.is_active,
            "version": self.version,
            "secret": self.secret.to_dict() if self.secret else None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class VaultItemStore:
    """SQLite persistence for vault items.

    Args:
        db_path: Path to SQLite database file.  Defaults to data/vault_items.db.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = Path(db_path) if db_path else Path("data/vault_items.db")
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

    def _connect(self, row_factory: bool = False):
        from ..core.db import connect as db_connect
        return db_connect(self.db_path, row_factory=row_factory)

    def _init_database(self):
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS vault_items (
                    item_id     TEXT PRIMARY KEY,
                    owner_id    TEXT NOT NULL,
                    item_type   TEXT NOT NULL,
                    title       TEXT NOT NULL,
                    data        TEXT DEFAULT '{}',
                    category    TEXT DEFAULT '',
                    qr_type     TEXT DEFAULT '',
                    expires_at  TEXT,
                    is_active   INTEGER DEFAULT 1,
                    version     INTEGER DEFAULT 1,
                    secret      TEXT,
                    created_at  TEXT NOT NULL,
                    updated_at  TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_vault_items_owner_type
                ON vault_items(owner_id, item_type, is_active)
            """)
            conn.commit()

    # ── Writes ──────────────────────────────────────────────────────

    def add_item(
        self,
        owner_id: str,
        item_type: str,
        title: str,
        data: Optional[dict] = None,
        category: str = "",
        qr_type: str = "",
        expires_at: Optional[str] = None,
        secret: Optional[str] = None,
        item_id: Optional[str] = None,
    ) -> VaultItem:
        """Insert a vault item. ``secret`` is encrypted under a fresh key."""
        if item_type not in ITEM_TYPES:
            raise ValueError(f"Unknown item type: {item_type}")

        item = VaultItem(
            item_id=item_id or uuid4().hex,
            owner_id=owner_id,
            item_type=item_type,
            title=title,
            data=data or {},
            category=category,
            qr_type=qr_type,
            expires_at=expires_at,
            secret=EncryptionService.protect(secret) if secret is not None else None,
        )
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO vault_items
                   (item_id, owner_id, item_type, title, data, category, qr_type,
                    expires_at, is_active, version, secret, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, 1, ?, ?, ?)""",
                (
                    item.item_id, owner_id, item_type, title,
                    json.dumps(item.data), category, qr_type, expires_at,
                    json.dumps(item.secret.to_dict()) if item.secret else None,
                    item.created_at, item.updated_at,
                ),
            )
            conn.commit()
        return item

    def update_item(self, item_id: str, **fields) -> VaultItem:
        """Update title/data/category/qr_type/expires_at and bump the version."""
        allowed = {"title", "data", "category", "qr_type", "expires_at"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")
        if "data" in fields:
            fields["data"] = json.dumps(fields["data"] or {})

        assignments = ", ".join(f"{name} = ?" for name in fields)
        params = list(fields.values()) + [utcnow_iso(), item_id]
        with self._connect() as conn:
            cursor = conn.execute(
                f"""UPDATE vault_items
                    SET {assignments}{', ' if assignments else ''}
                        version = version + 1, updated_at = ?
                    WHERE item_id = ?""",
                params,
            )
            conn.commit()
        if cursor.rowcount == 0:
            raise NotFoundError(f"Vault item not found: {item_id}")
        return self.get_item(item_id)

    def deactivate(self, item_id: str) -> bool:
        """Soft-delete: inactive items are invisible to the engines."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE vault_items SET is_active = 0, updated_at = ? WHERE item_id = ?",
                (utcnow_iso(), item_id),
            )
            conn.commit()
        return cursor.rowcount > 0

    # ── Reads ───────────────────────────────────────────────────────

    def get_item(self, item_id: str) -> Optional[VaultItem]:
        with self._connect(row_factory=True) as conn:
            row = conn.execute(
                "SELECT * FROM vault_items WHERE item_id = ?", (item_id,)
            ).fetchone()
        return self._row_to_item(row) if row else None

    def list_active_items(self, owner_id: str, item_type: str) -> List[VaultItem]:
        with self._connect(row_factory=True) as conn:
            rows = conn.execute(
                """SELECT * FROM vault_items
                   WHERE owner_id = ? AND item_type = ? AND is_active = 1
                   ORDER BY created_at""",
                (owner_id, item_type),
            ).fetchall()
        return [self._row_to_item(r) for r in rows]

    def count_items(self, owner_id: str, item_type: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """SELECT COUNT(*) FROM vault_items
                   WHERE owner_id = ? AND item_type = ? AND is_active = 1""",
                (owner_id, item_type),
            ).fetchone()
        return row[0]

    def get_items_by_ids(
        self, owner_id: str, item_type: str, item_ids: List[str]
    ) -> List[VaultItem]:
        """Active items of one type among ``item_ids``. Foreign ids are ignored."""
        if not item_ids:
            return []
        placeholders = ", ".join("?" for _ in item_ids)
        with self._connect(row_factory=True) as conn:
            rows = conn.execute(
                f"""SELECT * FROM vault_items
                    WHERE owner_id = ? AND item_type = ? AND is_active = 1
                      AND item_id IN ({placeholders})
                    ORDER BY created_at""",
                [owner_id, item_type, *item_ids],
            ).fetchall()
        return [self._row_to_item(r) for r in rows]

    def reveal_secret(self, item_id: str) -> str:
        """Decrypt an item's secret. Raises CorruptPayloadError on corruption."""
        item = self.get_item(item_id)
        if item is None:
            raise NotFoundError(f"Vault item not found: {item_id}")
        if item.secret is None:
            return ""
        return EncryptionService.unprotect(item.secret).decode("utf-8")

    # ── helpers ──────────────────────────────────────────────────────

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> VaultItem:
        d = dict(row)
        try:
            data = json.loads(d.get("data") or "{}")
        except (json.JSONDecodeError, TypeError):
            data = {}
        secret = None
        if d.get("secret"):
            secret = EncryptedBlob.from_dict(json.loads(d["secret"]))
        return VaultItem(
            item_id=d["item_id"],
            owner_id=d["owner_id"],
            item_type=d["item_type"],
            title=d["title"],
            data=data if isinstance(data, dict) else {},
            category=d.get("category") or "",
            qr_type=d.get("qr_type") or "",
            expires_at=d.get("expires_at"),
            is_active=bool(d["is_active"]),
            version=d.get("version") or 1,
            secret=secret,
            created_at=d["created_at"],
            updated_at=d["updated_at"],
        )


# ── Singleton ────────────────────────────────────────────────────────

_item_store: Optional[VaultItemStore] = None


def get_item_store() -> VaultItemStore:
    global _item_store
    if _item_store is None:
        from ..core.config import get_config
        _item_store = VaultItemStore(str(get_config().db_path("vault_items.db")))
    return _item_store


def set_item_store(store: Optional[VaultItemStore]) -> None:
    global _item_store
    _item_store = store
