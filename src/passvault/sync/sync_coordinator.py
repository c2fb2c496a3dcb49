"""Sync coordinator — per-device synchronization runs with conflict detection.

How it works:
    1. ``initiate_sync()`` checks the device (exists, owned, sync enabled),
       inserts an ``initiated`` log (the partial unique index rejects a
       second active sync for the device), flips the device to
       ``syncing`` and hands the body to the JobRunner.
    2. The body moves the log to ``in_progress`` and, per data type,
       reconciles the owner's local vault items against the remote state
       the device reported. A field whose values differ on both sides
       becomes a Conflict carrying both values and no resolution.
    3. Counts, bytes and conflicts are written together with the
       ``completed`` status; the device goes back ``online``.
    4. Any exception lands the log in ``failed`` and the device ``offline``.

Key design:
    - Terminal writes are conditional on a non-terminal current status,
      so ``cancel_sync()`` always wins over a body that is still running
    - Conflicts are only appended inside the completing transaction;
      afterwards only ``resolve_conflict()`` touches them

Remote state shape (per data type)::

    {"passwords": [{"item_id": "p1", "version": 3,
                    "fields": {"title": "Mail"}, "deleted": False}]}
"""

import json
import logging
import sqlite3
import time
import traceback
from collections import Counter
from typing import Dict, List, Optional
from uuid import uuid4

from ..core.audit_log import EventSeverity, EventType, audit_owner_event
from ..core.db import parse_iso, utcnow_iso
from ..core.errors import (
    DependencyFailureError,
    InvalidStateError,
    NotFoundError,
    VaultEngineError,
)
from ..core.jobs import JobRunner, get_job_runner
from ..devices.device_registry import DeviceRegistry, enabled_data_types, get_device_registry
from ..notifications.notification_sink import (
    Notification,
    NotificationAction,
    NotificationSink,
    format_data_size,
    get_notification_sink,
)
from ..vault.item_store import VaultItem, VaultItemStore, get_item_store
from .sync_database import (
    ACTIVE_STATUSES,
    STATUS_FAILED,
    STATUS_IN_PROGRESS,
    STATUS_INITIATED,
    Conflict,
    SyncDatabase,
)

logger = logging.getLogger(__name__)

SYNC_TYPES = ("manual", "auto", "scheduled", "forced")
SYNC_DATA_TYPES = ("passwords", "documents", "settings", "notes", "qrcodes")
DEFAULT_SYNC_TYPES = ["passwords", "documents", "settings", "notes", "qrcodes"]
RESOLUTIONS = ("server_wins", "client_wins", "manual")

USER_CANCELLED = "USER_CANCELLED"

_SYNC_LINK = "/features/sync"


def detect_conflicts(item_type: str, local: VaultItem, remote: dict) -> List[Conflict]:
    """Conflicts between one local item and the device's view of it.

    A remote deletion of a live item is one ``deletion`` conflict. Otherwise
    each reported field whose value differs locally is a conflict; it is a
    ``version`` conflict when the device edited a stale version, else a
    ``modification`` conflict.
    """
    if remote.get("deleted"):
        return [Conflict(
            item_type=item_type,
            item_id=local.item_id,
            field="*",
            conflict_type="deletion",
            local_value=local.title,
            remote_value=None,
        )]

    stale = "version" in remote and remote["version"] != local.version
    conflicts = []
    for name, remote_value in sorted((remote.get("fields") or {}).items()):
        local_value = local.field_value(name)
        if local_value != remote_value:
            conflicts.append(Conflict(
                item_type=item_type,
                item_id=local.item_id,
                field=name,
                conflict_type="version" if stale else "modification",
                local_value=local_value,
                remote_value=remote_value,
            ))
    return conflicts


class SyncCoordinator:
    """Drives sync logs through their state machine.

    Args:
        sync_db: SyncDatabase instance.  Created from config if None.
        device_registry: Device registry.  Module singleton if None.
        item_store: Vault item repository.  Module singleton if None.
        notifications: Notification sink.  Module singleton if None.
        runner: JobRunner executing sync bodies.
    """

    def __init__(
        self,
        sync_db: Optional[SyncDatabase] = None,
        device_registry: Optional[DeviceRegistry] = None,
        item_store: Optional[VaultItemStore] = None,
        notifications: Optional[NotificationSink] = None,
        runner: Optional[JobRunner] = None,
    ):
        if sync_db is None:
            from ..core.config import get_config
            sync_db = SyncDatabase(str(get_config().db_path("sync.db")))
        self._db = sync_db
        self._devices = device_registry or get_device_registry()
        self._items = item_store or get_item_store()
        self._notifications = notifications or get_notification_sink()
        self._runner = runner or get_job_runner()

    # ── Trigger ──────────────────────────────────────────────────────

    def initiate_sync(
        self,
        owner_id: str,
        device_id: str,
        data_types: Optional[List[str]] = None,
        remote_state: Optional[Dict[str, List[dict]]] = None,
        sync_type: str = "manual",
    ) -> dict:
        """Start a sync run for one device.

        Raises:
            NotFoundError: Unknown device, or owned by somebody else.
            InvalidStateError: Sync is disabled for the device.
            ConflictError: The device already has an active sync.
        """
        if sync_type not in SYNC_TYPES:
            raise ValueError(f"Unknown sync type: {sync_type}")
        data_types = list(data_types or DEFAULT_SYNC_TYPES)
        unknown = [dt for dt in data_types if dt not in SYNC_DATA_TYPES]
        if unknown:
            raise ValueError(f"Unknown data types: {unknown}")

        device = self._device_call(self._devices.get_device, device_id)
        if device is None or device["owner_id"] != owner_id:
            raise NotFoundError("Device not found")
        if not device["sync_enabled"]:
            raise InvalidStateError("Sync is disabled for this device")

        sync_log_id = uuid4().hex
        log = self._db.insert_sync_log(
            sync_log_id=sync_log_id,
            owner_id=owner_id,
            device_id=device_id,
            sync_type=sync_type,
            data_types=data_types,
        )
        try:
            self._device_call(self._devices.set_device_status, device_id, "syncing")
        except DependencyFailureError as exc:
            # release the device's active slot before reporting
            self._db.transition(
                sync_log_id, ACTIVE_STATUSES, STATUS_FAILED,
                error={"message": str(exc), "code": exc.code, "stack": ""},
                duration_ms=0,
                completed_at=utcnow_iso(),
            )
            raise

        logger.info("Sync initiated: %s for device %s", sync_log_id, device_id)
        audit_owner_event(
            EventType.SYNC_INITIATED, owner_id,
            f"Sync initiated: {sync_log_id}",
            details={"sync_log_id": sync_log_id, "device_id": device_id,
                     "sync_type": sync_type, "data_types": data_types},
        )
        self._runner.submit(
            "sync", sync_log_id, lambda: self._run_sync(sync_log_id, remote_state or {})
        )
        return log

    def sync_device(
        self,
        owner_id: str,
        device_id: str,
        remote_state: Optional[Dict[str, List[dict]]] = None,
    ) -> dict:
        """Device-triggered sync over the data types enabled in its settings."""
        device = self._devices.get_owned_device(owner_id, device_id)
        return self.initiate_sync(
            owner_id,
            device_id,
            data_types=enabled_data_types(device) or None,
            remote_state=remote_state,
        )

    # ── Body ─────────────────────────────────────────────────────────

    def _run_sync(self, sync_log_id: str, remote_state: Dict[str, List[dict]]) -> None:
        started = time.monotonic()
        try:
            self._execute_sync(sync_log_id, remote_state, started)
        except Exception as exc:
            self._record_crash(sync_log_id, exc, started)

    def _execute_sync(
        self, sync_log_id: str, remote_state: Dict[str, List[dict]], started: float
    ) -> None:
        log = self._db.get_sync_log(sync_log_id)
        if log is None or not self._db.transition(
            sync_log_id, (STATUS_INITIATED,), STATUS_IN_PROGRESS
        ):
            logger.info("Sync %s is no longer initiated; body skipped", sync_log_id)
            return

        try:
            items_synced, data_synced, conflicts = self._reconcile(log, remote_state)
            total = sum(items_synced.values())
            completed = self._db.complete_sync_log(
                sync_log_id,
                conflicts,
                items_synced=items_synced,
                total_items=total,
                data_synced=data_synced,
                duration_ms=int((time.monotonic() - started) * 1000),
                completed_at=utcnow_iso(),
            )
        except Exception as exc:
            self._fail(log, exc, started)
            return

        if not completed:
            logger.info("Sync %s was cancelled; result discarded", sync_log_id)
            return

        owner_id = log["owner_id"]
        self._set_device_quietly(self._devices.mark_synced, log["device_id"])
        logger.info("Sync completed: %s (%d items, %d conflicts)",
                    sync_log_id, total, len(conflicts))
        audit_owner_event(
            EventType.SYNC_COMPLETED, owner_id,
            f"Sync completed: {sync_log_id}",
            details={"sync_log_id": sync_log_id, "device_id": log["device_id"],
                     "total_items": total, "data_synced": data_synced,
                     "conflicts": len(conflicts)},
        )
        self._notify(owner_id, Notification(
            title="Sync Completed",
            message=(f"Successfully synced {total} items "
                     f"({format_data_size(data_synced)}) across your devices."),
            type="success",
            category="sync",
            priority="low",
            action=NotificationAction(label="View Sync History", link=_SYNC_LINK),
            metadata={"resource_type": "sync", "resource_id": sync_log_id,
                      "item_count": total, "data_size": data_synced,
                      "conflicts": len(conflicts)},
        ))

    def _reconcile(self, log: dict, remote_state: Dict[str, List[dict]]):
        """Compare local items with the remote state.

        Returns (items_synced per category, bytes synced, conflicts).
        """
        owner_id = log["owner_id"]
        items_synced = {name: 0 for name in SYNC_DATA_TYPES}
        data_synced = 0
        conflicts: List[Conflict] = []

        for data_type in log["data_types"]:
            if data_type == "settings":
                device = self._device_call(self._devices.get_device, log["device_id"])
                settings = device["sync_settings"] if device else {}
                data_synced += len(json.dumps(settings).encode("utf-8"))
                items_synced["settings"] = 1
                continue

            local = self._repo_call(self._items.list_active_items, owner_id, data_type)
            local_by_id = {item.item_id: item for item in local}
            synced_ids = set(local_by_id)
            data_synced += sum(item.payload_size for item in local)

            for entry in remote_state.get(data_type) or []:
                item_id = entry["item_id"]
                item = local_by_id.get(item_id)
                if item is not None:
                    conflicts.extend(detect_conflicts(data_type, item, entry))
                elif item_id not in synced_ids:
                    synced_ids.add(item_id)
                    data_synced += len(json.dumps(entry).encode("utf-8"))

            items_synced[data_type] = len(synced_ids)

        return items_synced, data_synced, conflicts

    def _record_crash(self, sync_log_id: str, exc: Exception, started: float) -> None:
        """Last-resort failure write for a body that raised outside its own guard."""
        logger.error("Sync job %s crashed: %s", sync_log_id, exc, exc_info=True)
        try:
            log = self._db.get_sync_log(sync_log_id)
            if log is not None:
                self._fail(log, exc, started)
        except Exception:
            logger.critical("Could not record failure of sync %s", sync_log_id, exc_info=True)

    def _fail(self, log: dict, exc: Exception, started: float) -> None:
        sync_log_id = log["sync_log_id"]
        if isinstance(exc, VaultEngineError):
            code = exc.code
        elif isinstance(exc, sqlite3.Error):
            code = DependencyFailureError.code
        else:
            code = "SYNC_ERROR"
        error = {
            "message": str(exc) or exc.__class__.__name__,
            "code": code,
            "stack": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        }
        changed = self._db.transition(
            sync_log_id, ACTIVE_STATUSES, STATUS_FAILED,
            error=error,
            duration_ms=int((time.monotonic() - started) * 1000),
            completed_at=utcnow_iso(),
        )
        if not changed:
            logger.info("Sync %s already terminal; failure not recorded", sync_log_id)
            return

        self._set_device_quietly(self._devices.set_device_status, log["device_id"], "offline")
        logger.error("Sync failed: %s (%s)", sync_log_id, error["message"])
        audit_owner_event(
            EventType.SYNC_FAILED, log["owner_id"],
            f"Sync failed: {sync_log_id}",
            details={"sync_log_id": sync_log_id, "device_id": log["device_id"],
                     "code": code, "message": error["message"]},
            severity=EventSeverity.ALERT,
        )
        self._notify(log["owner_id"], Notification(
            title="Sync Failed",
            message=f"Unable to sync your data: {error['message']}",
            type="alert",
            category="sync",
            priority="high",
            action=NotificationAction(label="Retry Sync", link=_SYNC_LINK),
            metadata={"resource_type": "sync", "resource_id": sync_log_id,
                      "error": error["message"], "code": code},
        ))

    # ── Conflicts / cancel ───────────────────────────────────────────

    def resolve_conflict(
        self,
        sync_log_id: str,
        conflict_index: int,
        resolution: str,
        resolved_by: str = "user",
        owner_id: Optional[str] = None,
    ) -> dict:
        """Resolve one conflict; other conflicts of the log are untouched.

        Raises:
            NotFoundError: Unknown sync log, or no conflict at that index.
        """
        if resolution not in RESOLUTIONS:
            raise ValueError(f"Unknown resolution: {resolution}")
        log = self._get_owned(sync_log_id, owner_id, "Sync log not found")
        if not self._db.resolve_conflict(sync_log_id, conflict_index, resolution, resolved_by):
            raise NotFoundError("Conflict not found")

        audit_owner_event(
            EventType.SYNC_CONFLICT_RESOLVED, log["owner_id"],
            f"Sync conflict resolved: {sync_log_id}#{conflict_index}",
            details={"sync_log_id": sync_log_id, "conflict_index": conflict_index,
                     "resolution": resolution, "resolved_by": resolved_by},
        )
        return self._db.get_sync_log(sync_log_id)

    def cancel_sync(self, sync_log_id: str, owner_id: Optional[str] = None) -> dict:
        """Cancel an active sync: ``failed`` with USER_CANCELLED, device back online.

        The body may still be running; its completing write is conditional
        and will not overwrite the cancellation.
        """
        log = self._get_owned(sync_log_id, owner_id, "Active sync not found")
        if log["status"] not in ACTIVE_STATUSES:
            raise NotFoundError("Active sync not found")
        started = parse_iso(log["started_at"])
        now = utcnow_iso()
        changed = self._db.transition(
            sync_log_id, ACTIVE_STATUSES, STATUS_FAILED,
            error={"message": "Sync cancelled by user", "code": USER_CANCELLED},
            completed_at=now,
            duration_ms=int((parse_iso(now) - started).total_seconds() * 1000),
        )
        if not changed:
            raise NotFoundError("Active sync not found")

        self._set_device_quietly(self._devices.set_device_status, log["device_id"], "online")
        logger.info("Sync cancelled: %s", sync_log_id)
        audit_owner_event(
            EventType.SYNC_CANCELLED, log["owner_id"],
            f"Sync cancelled: {sync_log_id}",
            details={"sync_log_id": sync_log_id, "device_id": log["device_id"]},
        )
        return self._db.get_sync_log(sync_log_id)

    # ── Queries ──────────────────────────────────────────────────────

    def get_sync_status(self, sync_log_id: str, owner_id: Optional[str] = None) -> dict:
        return self._get_owned(sync_log_id, owner_id, "Sync log not found")

    def list_sync_history(
        self,
        owner_id: str,
        device_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> List[dict]:
        return self._db.list_sync_logs(owner_id, device_id=device_id, status=status,
                                       limit=limit)

    def list_unresolved_conflicts(self, owner_id: str) -> List[dict]:
        return self._db.unresolved_conflicts(owner_id)

    def get_sync_stats(self, owner_id: str) -> dict:
        logs = self._db.list_sync_logs(owner_id, limit=None)
        finished = [log for log in logs if log["status"] not in ACTIVE_STATUSES]
        durations = [log["duration_ms"] for log in finished]
        return {
            "total_syncs": len(logs),
            "completed_syncs": sum(1 for log in logs if log["status"] == "completed"),
            "failed_syncs": sum(1 for log in logs if log["status"] == STATUS_FAILED),
            "total_data_synced": sum(log["data_synced"] for log in logs),
            "total_items_synced": sum(log["total_items"] for log in logs),
            "avg_duration_ms": round(sum(durations) / len(durations)) if durations else 0,
            "total_conflicts": sum(log["conflict_count"] for log in logs),
            "unresolved_conflicts": sum(log["unresolved_conflicts"] for log in logs),
            "status_breakdown": dict(Counter(log["status"] for log in logs)),
            "type_breakdown": dict(Counter(log["sync_type"] for log in logs)),
            "data_type_totals": {
                name: sum((log["items_synced"] or {}).get(name, 0) for log in logs)
                for name in SYNC_DATA_TYPES
            },
        }

    # ── Helpers ──────────────────────────────────────────────────────

    def _get_owned(self, sync_log_id: str, owner_id: Optional[str], missing: str) -> dict:
        log = self._db.get_sync_log(sync_log_id)
        if log is None or (owner_id is not None and log["owner_id"] != owner_id):
            raise NotFoundError(missing)
        return log

    @staticmethod
    def _repo_call(fn, *args):
        try:
            return fn(*args)
        except sqlite3.Error as exc:
            raise DependencyFailureError(f"Vault item repository call failed: {exc}")

    @staticmethod
    def _device_call(fn, *args):
        try:
            return fn(*args)
        except sqlite3.Error as exc:
            raise DependencyFailureError(f"Device registry call failed: {exc}")

    @staticmethod
    def _set_device_quietly(fn, *args) -> None:
        """Best-effort device status reset after a terminal write."""
        try:
            fn(*args)
        except Exception:
            logger.warning("Device status update failed: %s", args, exc_info=True)

    def _notify(self, owner_id: str, notification: Notification) -> None:
        try:
            self._notifications.append_notification(owner_id, notification)
        except Exception:
            logger.error("Failed to append notification for %s: %s",
                         owner_id, notification.title, exc_info=True)
