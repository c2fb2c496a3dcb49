"""Backup manager — create, restore, verify, list and delete vault backups.

A backup is a JSON manifest of the owner's vault items (plus a settings
snapshot), encrypted as a single blob with the owner key and written to
``{backup_dir}/{backup_id}.encrypted``.

How it works:
    1. ``create_backup()`` inserts an ``initiated`` record (the partial
       unique index rejects a second active backup with ConflictError)
       and hands the body to the JobRunner.
    2. The body moves the record to ``in_progress``, enumerates items,
       encrypts the manifest, writes the archive and completes the record
       with counts, size, checksum and fresh health metrics.
    3. Any exception inside the body lands in ``failed`` with
       ``{message, code, stack}``; nothing is re-raised to the caller.
    4. ``restore_backup()`` flips ``completed → restoring``; the restore
       body decrypts and checks the archive, then returns to ``completed``.
       Write-back to the item repository is not done here.

Every terminal transition appends one notification for the owner.
"""

import json
import logging
import sqlite3
import time
import traceback
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional
from uuid import uuid4

from ..core.audit_log import EventSeverity, EventType, audit_owner_event
from ..core.db import utcnow_iso
from ..core.errors import (
    CorruptPayloadError,
    DependencyFailureError,
    InvalidStateError,
    NotFoundError,
    VaultEngineError,
)
from ..core.jobs import JobRunner, get_job_runner
from ..notifications.notification_sink import (
    Notification,
    NotificationAction,
    NotificationSink,
    format_data_size,
    get_notification_sink,
)
from ..vault.encryption import EncryptionService
from ..vault.item_store import VaultItemStore, get_item_store
from .backup_crypto import BackupCrypto
from .backup_database import (
    ACTIVE_STATUSES,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_IN_PROGRESS,
    STATUS_INITIATED,
    STATUS_RESTORING,
    BackupDatabase,
)
from .health import calculate_health_score, overall_health

logger = logging.getLogger(__name__)

KINDS = ("full", "selective")
BACKUP_TYPES = ("manual", "auto", "scheduled")
BACKUP_DATA_TYPES = ("passwords", "documents", "settings", "notes", "qrcodes", "devices")
DEFAULT_DATA_TYPES = ["passwords", "documents", "settings", "notes", "qrcodes"]

# Categories always present in items_backed_up, even when zero
_COUNTED_TYPES = ("passwords", "documents", "settings", "notes", "qrcodes")

# Selection key -> data type
SELECTION_KEYS = {
    "password_ids": "passwords",
    "document_ids": "documents",
    "qrcode_ids": "qrcodes",
}

APP_VERSION = "1.0.0"
BACKUP_FORMAT_VERSION = "1.0"

# Manifest version; increment if archive format changes
_MANIFEST_VERSION = 1

_BACKUP_LINK = "/dashboard/backup"


@dataclass
class BackupMetadata:
    """Fixed metadata stored on every backup record."""

    device_id: Optional[str] = None
    app_version: str = APP_VERSION
    backup_version: str = BACKUP_FORMAT_VERSION

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "app_version": self.app_version,
            "backup_version": self.backup_version,
        }


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class BackupManager:
    """Orchestrates the backup/restore lifecycle for vault owners.

    Args:
        backup_dir: Directory for ``.encrypted`` archives (default: config.backup_dir).
        backup_db: BackupDatabase instance.  Created from config if None.
        item_store: Vault item repository.  Module singleton if None.
        notifications: Notification sink.  Module singleton if None.
        device_registry: Source of the settings snapshot.  Optional.
        runner: JobRunner executing backup/restore bodies.
        master_secret: Secret the per-owner archive keys derive from.
    """

    def __init__(
        self,
        backup_dir: Optional[Path] = None,
        backup_db: Optional[BackupDatabase] = None,
        item_store: Optional[VaultItemStore] = None,
        notifications: Optional[NotificationSink] = None,
        device_registry=None,
        runner: Optional[JobRunner] = None,
        master_secret: Optional[str] = None,
    ):
        from ..core.config import get_config
        config = get_config()

        self._backup_dir = Path(backup_dir) if backup_dir else config.backup_dir
        self._backup_dir.mkdir(parents=True, exist_ok=True)
        self._db = backup_db or BackupDatabase(str(config.db_path("backups.db")))
        self._items = item_store or get_item_store()
        self._notifications = notifications or get_notification_sink()
        self._devices = device_registry
        self._runner = runner or get_job_runner()
        self._master_secret = master_secret or config.master_secret

    # ── Create ───────────────────────────────────────────────────────

    def create_backup(
        self,
        owner_id: str,
        kind: str = "full",
        data_types: Optional[List[str]] = None,
        selection: Optional[Dict[str, List[str]]] = None,
        backup_type: str = "manual",
        device_id: Optional[str] = None,
    ) -> dict:
        """Create an ``initiated`` backup record and schedule its body.

        Returns:
            The new backup record.

        Raises:
            ConflictError: The owner already has an active backup.
            ValueError: Unknown kind/type/data type, or an empty selection.
        """
        if kind not in KINDS:
            raise ValueError(f"Unknown backup kind: {kind}")
        if backup_type not in BACKUP_TYPES:
            raise ValueError(f"Unknown backup type: {backup_type}")

        if kind == "selective":
            selection = {key: list((selection or {}).get(key) or []) for key in SELECTION_KEYS}
            data_types = [dt for key, dt in SELECTION_KEYS.items() if selection[key]]
            if not data_types:
                raise ValueError("Please select at least one item to backup")
        else:
            selection = None
            data_types = list(data_types or DEFAULT_DATA_TYPES)
            unknown = [dt for dt in data_types if dt not in BACKUP_DATA_TYPES]
            if unknown:
                raise ValueError(f"Unknown data types: {unknown}")

        backup_id = uuid4().hex
        record = self._db.insert_backup(
            backup_id=backup_id,
            owner_id=owner_id,
            kind=kind,
            backup_type=backup_type,
            data_types=data_types,
            selection=selection,
            metadata=BackupMetadata(device_id=device_id).to_dict(),
        )

        audit_owner_event(
            EventType.BACKUP_CREATED, owner_id,
            f"Backup initiated: {backup_id}",
            details={"backup_id": backup_id, "kind": kind, "data_types": data_types},
        )
        self._runner.submit("backup", backup_id, lambda: self._run_backup(backup_id))
        return record

    def _run_backup(self, backup_id: str) -> None:
        started = time.monotonic()
        try:
            self._execute_backup(backup_id, started)
        except Exception as exc:
            self._record_crash(backup_id, exc, started, ACTIVE_STATUSES)

    def _execute_backup(self, backup_id: str, started: float) -> None:
        record = self._db.get_backup(backup_id)
        if record is None or not self._db.transition(
            backup_id, (STATUS_INITIATED,), STATUS_IN_PROGRESS
        ):
            logger.warning("Backup %s is no longer initiated; body skipped", backup_id)
            return

        owner_id = record["owner_id"]
        default_code = "SELECTIVE_BACKUP_ERROR" if record["kind"] == "selective" else "BACKUP_ERROR"
        archive_path = self._archive_path(backup_id)

        try:
            manifest, counts = self._build_manifest(record)
            plaintext = json.dumps(manifest, sort_keys=True).encode("utf-8")
            checksum = EncryptionService.checksum(plaintext)
            encrypted = BackupCrypto.encrypt_bytes(plaintext, self._passphrase(owner_id))
            archive_path.write_bytes(encrypted)

            now = utcnow_iso()
            completed = self._db.transition(
                backup_id, (STATUS_IN_PROGRESS,), STATUS_COMPLETED,
                size_bytes=len(encrypted),
                items_backed_up=counts,
                item_count=sum(counts.values()),
                storage_path=str(archive_path),
                checksum=checksum,
                integrity_score=100,
                verification_status="verified",
                last_verified=now,
                completed_at=now,
                duration_ms=_elapsed_ms(started),
            )
        except Exception as exc:
            archive_path.unlink(missing_ok=True)
            self._fail(record, exc, started, default_code, (STATUS_IN_PROGRESS,))
            return

        if not completed:
            archive_path.unlink(missing_ok=True)
            logger.warning("Backup %s changed state during its run; archive discarded", backup_id)
            return

        total = sum(counts.values())
        logger.info("Backup completed: %s (%d items, %d bytes)", backup_id, total, len(encrypted))
        audit_owner_event(
            EventType.BACKUP_COMPLETED, owner_id,
            f"Backup completed: {backup_id}",
            details={"backup_id": backup_id, "item_count": total,
                     "size_bytes": len(encrypted)},
        )
        if record["kind"] == "selective":
            title = "Selective Backup Completed"
            message = (f"Successfully backed up {total} selected items "
                       f"({format_data_size(len(encrypted))}) with AES-256 encryption.")
        else:
            title = "Backup Completed"
            message = (f"Your data has been backed up successfully "
                       f"({format_data_size(len(encrypted))}).")
        self._notify(owner_id, Notification(
            title=title,
            message=message,
            type="success",
            priority="low",
            action=NotificationAction(label="View Backups", link=_BACKUP_LINK),
            metadata={"resource_type": "backup", "resource_id": backup_id,
                      "backup_size": len(encrypted)},
        ))

    def _build_manifest(self, record: dict):
        """Collect the items to back up. Returns (manifest, per-category counts)."""
        owner_id = record["owner_id"]
        counts = {name: 0 for name in _COUNTED_TYPES}
        items: Dict[str, List[dict]] = {}
        manifest = {
            "version": _MANIFEST_VERSION,
            "backup_id": record["backup_id"],
            "owner_id": owner_id,
            "kind": record["kind"],
            "created_at": utcnow_iso(),
            "items": items,
        }

        if record["kind"] == "selective":
            for key, data_type in SELECTION_KEYS.items():
                wanted = record["selection"].get(key) or []
                if not wanted:
                    continue
                found = self._repo_call(
                    self._items.get_items_by_ids, owner_id, data_type, wanted
                )
                missing = sorted(set(wanted) - {item.item_id for item in found})
                if missing:
                    raise NotFoundError(f"Selected {data_type} not found: {', '.join(missing)}")
                items[data_type] = [item.to_dict() for item in found]
                counts[data_type] = len(found)
        else:
            for data_type in record["data_types"]:
                if data_type == "settings":
                    manifest["settings"] = self._settings_snapshot(owner_id)
                    counts["settings"] = 1
                elif data_type == "devices":
                    devices = self._repo_call(self._list_devices, owner_id)
                    manifest["devices"] = devices
                    counts["devices"] = len(devices)
                else:
                    found = self._repo_call(self._items.list_active_items, owner_id, data_type)
                    items[data_type] = [item.to_dict() for item in found]
                    counts[data_type] = len(found)

        manifest["items_backed_up"] = counts
        return manifest, counts

    def _list_devices(self, owner_id: str) -> List[dict]:
        return self._devices.list_devices(owner_id) if self._devices else []

    def _settings_snapshot(self, owner_id: str) -> dict:
        devices = self._repo_call(self._list_devices, owner_id)
        return {
            "devices": {
                d["device_id"]: {
                    "sync_enabled": d["sync_enabled"],
                    "auto_sync_enabled": d["auto_sync_enabled"],
                    "sync_settings": d["sync_settings"],
                }
                for d in devices
            },
        }

    # ── Restore ──────────────────────────────────────────────────────

    def restore_backup(self, backup_id: str, owner_id: Optional[str] = None) -> dict:
        """Start a verification-only restore of a completed backup.

        Raises:
            NotFoundError: No completed, restorable backup with this id.
        """
        record = self._get_owned(backup_id, owner_id)
        if record["status"] != STATUS_COMPLETED or not record["restorable"]:
            raise NotFoundError("Backup not found or not restorable")
        if not self._db.transition(backup_id, (STATUS_COMPLETED,), STATUS_RESTORING):
            raise NotFoundError("Backup not found or not restorable")

        self._runner.submit("restore", backup_id, lambda: self._run_restore(backup_id))
        return self._db.get_backup(backup_id)

    def _run_restore(self, backup_id: str) -> None:
        started = time.monotonic()
        try:
            self._execute_restore(backup_id, started)
        except Exception as exc:
            self._record_crash(backup_id, exc, started, (STATUS_RESTORING,), restore=True)

    def _execute_restore(self, backup_id: str, started: float) -> None:
        record = self._db.get_backup(backup_id)
        if record is None or record["status"] != STATUS_RESTORING:
            return
        owner_id = record["owner_id"]

        try:
            self._open_archive(record)
        except Exception as exc:
            self._fail(record, exc, started, "RESTORE_ERROR", (STATUS_RESTORING,),
                       restore=True)
            return

        if not self._db.transition(backup_id, (STATUS_RESTORING,), STATUS_COMPLETED):
            return

        logger.info("Backup restore verified: %s", backup_id)
        audit_owner_event(
            EventType.BACKUP_RESTORED, owner_id,
            f"Backup restored: {backup_id}",
            details={"backup_id": backup_id, "item_count": record["item_count"]},
        )
        self._notify(owner_id, Notification(
            title="Restore Completed",
            message=f"Backup verified and ready to restore ({record['item_count']} items).",
            type="success",
            priority="low",
            action=NotificationAction(label="View Backups", link=_BACKUP_LINK),
            metadata={"resource_type": "backup", "resource_id": backup_id},
        ))

    def _open_archive(self, record: dict) -> dict:
        """Decrypt an archive and check it against its record. Returns the manifest.

        Raises:
            CorruptPayloadError: Decryption, checksum or manifest check failed.
            OSError: The archive file cannot be read.
        """
        encrypted = Path(record["storage_path"]).read_bytes()
        plaintext = BackupCrypto.decrypt_bytes(encrypted, self._passphrase(record["owner_id"]))
        if EncryptionService.checksum(plaintext) != record["checksum"]:
            raise CorruptPayloadError("Backup checksum mismatch")
        try:
            manifest = json.loads(plaintext)
        except ValueError:
            raise CorruptPayloadError("Backup manifest is not valid JSON")
        if manifest.get("backup_id") != record["backup_id"]:
            raise CorruptPayloadError("Backup manifest belongs to a different backup")
        if manifest.get("items_backed_up") != record["items_backed_up"]:
            raise CorruptPayloadError("Backup manifest item counts do not match the record")
        return manifest

    # ── Verify ───────────────────────────────────────────────────────

    def verify_backup(self, backup_id: str, owner_id: Optional[str] = None) -> dict:
        """Re-check the archive and refresh health metrics. Status is unchanged."""
        record = self._get_owned(backup_id, owner_id)
        if record["status"] in ACTIVE_STATUSES or record["status"] == STATUS_RESTORING:
            raise InvalidStateError("Backup is still running")

        if record["status"] == STATUS_FAILED:
            verification = "failed"
        else:
            try:
                self._open_archive(record)
                verification = "verified"
            except CorruptPayloadError:
                verification = "corrupted"
            except OSError:
                verification = "failed"

        now = utcnow_iso()
        score = calculate_health_score(
            dict(record, verification_status=verification, last_verified=now)
        )
        self._db.update_health(backup_id, score, verification, now)

        audit_owner_event(
            EventType.BACKUP_VERIFIED, record["owner_id"],
            f"Backup verified: {backup_id}",
            details={"backup_id": backup_id, "verification_status": verification,
                     "health_score": score},
            severity=EventSeverity.INFO if verification == "verified"
            else EventSeverity.INVESTIGATE,
        )
        return {
            "backup_id": backup_id,
            "verification_status": verification,
            "health_score": score,
            "last_verified": now,
        }

    # ── Queries ──────────────────────────────────────────────────────

    def get_backup_status(self, backup_id: str, owner_id: Optional[str] = None) -> dict:
        return self._get_owned(backup_id, owner_id)

    def list_backups(
        self, owner_id: str, status: Optional[str] = None, limit: int = 50
    ) -> List[dict]:
        return self._db.list_backups(owner_id, status=status, limit=limit)

    def get_backup_stats(self, owner_id: str) -> dict:
        backups = self._db.list_backups(owner_id, limit=None)
        completed = [b for b in backups if b["status"] == STATUS_COMPLETED]
        failed = [b for b in backups if b["status"] == STATUS_FAILED]
        durations = [b["duration_ms"] for b in completed + failed]

        last = max(completed, key=lambda b: b["completed_at"] or "", default=None)
        return {
            "total_backups": len(backups),
            "total_size": sum(b["size_bytes"] for b in backups),
            "completed": len(completed),
            "failed": len(failed),
            "total_items": sum(b["item_count"] for b in backups),
            "avg_duration_ms": round(sum(durations) / len(durations)) if durations else 0,
            "success_rate": round(len(completed) / len(backups) * 100, 1) if backups else 0.0,
            "last_backup": {
                "backup_id": last["backup_id"],
                "completed_at": last["completed_at"],
                "size_bytes": last["size_bytes"],
                "item_count": last["item_count"],
            } if last else None,
            "type_breakdown": dict(Counter(b["backup_type"] for b in backups)),
        }

    def get_health(self, owner_id: str, now=None) -> dict:
        """Overall backup health rating for an owner."""
        return overall_health(self._db.list_backups(owner_id, limit=None), now=now)

    # ── Delete ───────────────────────────────────────────────────────

    def delete_backup(self, backup_id: str, owner_id: Optional[str] = None) -> bool:
        """Delete a terminal backup's archive and record."""
        record = self._get_owned(backup_id, owner_id)
        if record["status"] not in (STATUS_COMPLETED, STATUS_FAILED):
            raise InvalidStateError("Cannot delete a backup that is still running")
        if not self._db.delete_backup_record(backup_id):
            raise InvalidStateError("Cannot delete a backup that is still running")

        if record["storage_path"]:
            Path(record["storage_path"]).unlink(missing_ok=True)

        audit_owner_event(
            EventType.BACKUP_DELETED, record["owner_id"],
            f"Backup deleted: {backup_id}",
            details={"backup_id": backup_id},
        )
        return True

    # ── Helpers ──────────────────────────────────────────────────────

    def _get_owned(self, backup_id: str, owner_id: Optional[str]) -> dict:
        record = self._db.get_backup(backup_id)
        if record is None or (owner_id is not None and record["owner_id"] != owner_id):
            raise NotFoundError("Backup not found")
        return record

    def _archive_path(self, backup_id: str) -> Path:
        return self._backup_dir / f"{backup_id}.encrypted"

    def _passphrase(self, owner_id: str) -> str:
        return BackupCrypto.owner_passphrase(self._master_secret, owner_id)

    @staticmethod
    def _repo_call(fn, *args):
        """Call a collaborator, surfacing storage errors as DependencyFailureError."""
        try:
            return fn(*args)
        except sqlite3.Error as exc:
            raise DependencyFailureError(f"Repository call failed: {exc}")

    def _record_crash(
        self,
        backup_id: str,
        exc: Exception,
        started: float,
        from_statuses,
        restore: bool = False,
    ) -> None:
        """Last resort for errors escaping a body: the record must not stay active."""
        logger.error("Backup job %s crashed: %s", backup_id, exc, exc_info=True)
        try:
            record = self._db.get_backup(backup_id)
            if record is None:
                return
            if restore:
                default_code = "RESTORE_ERROR"
            elif record["kind"] == "selective":
                default_code = "SELECTIVE_BACKUP_ERROR"
            else:
                default_code = "BACKUP_ERROR"
            self._fail(record, exc, started, default_code, from_statuses, restore=restore)
        except Exception:
            logger.critical("Could not record failure of backup %s", backup_id, exc_info=True)

    def _fail(
        self,
        record: dict,
        exc: Exception,
        started: float,
        default_code: str,
        from_statuses,
        restore: bool = False,
    ) -> None:
        """Capture a body failure into the record's terminal ``failed`` state."""
        backup_id = record["backup_id"]
        owner_id = record["owner_id"]
        if isinstance(exc, VaultEngineError):
            code = exc.code
        elif isinstance(exc, sqlite3.Error):
            code = DependencyFailureError.code
        else:
            code = default_code
        error = {
            "message": str(exc) or exc.__class__.__name__,
            "code": code,
            "stack": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        }
        fields = dict(
            error=error,
            restorable=False,
            completed_at=utcnow_iso(),
            duration_ms=_elapsed_ms(started),
        )
        if restore:
            corrupt = isinstance(exc, CorruptPayloadError)
            fields.update(
                verification_status="corrupted" if corrupt else "failed",
                integrity_score=0,
                last_verified=utcnow_iso(),
            )
            # duration of the original backup run is kept
            del fields["duration_ms"]
            del fields["completed_at"]

        if not self._db.transition(backup_id, from_statuses, STATUS_FAILED, **fields):
            logger.warning("Backup %s already terminal; failure not recorded", backup_id)
            return

        logger.error("%s failed: %s (%s)", "Restore" if restore else "Backup",
                     backup_id, error["message"])
        audit_owner_event(
            EventType.BACKUP_FAILED, owner_id,
            f"{'Restore' if restore else 'Backup'} failed: {backup_id}",
            details={"backup_id": backup_id, "code": code, "message": error["message"]},
            severity=EventSeverity.ALERT,
        )
        self._notify(owner_id, Notification(
            title="Restore Failed" if restore else "Backup Failed",
            message=f"{'Restore' if restore else 'Backup'} process failed: {error['message']}",
            type="alert",
            priority="high",
            action=NotificationAction(label="View Backup Settings", link=_BACKUP_LINK),
            metadata={"resource_type": "backup", "resource_id": backup_id,
                      "error": error["message"], "code": code},
        ))

    def _notify(self, owner_id: str, notification: Notification) -> None:
        """Best-effort append: a failing sink never changes the record's outcome."""
        try:
            self._notifications.append_notification(owner_id, notification)
        except Exception:
            logger.error("Failed to append notification for %s: %s",
                         owner_id, notification.title, exc_info=True)
