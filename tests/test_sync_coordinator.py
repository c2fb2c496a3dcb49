"""Tests for device sync: conflict detection, sync runs, cancel and stats.

Covers: detect_conflicts(), SyncCoordinator trigger/body/cancel/resolve,
per-device exclusivity, failure capture, history and statistics.
"""

import sqlite3
import threading

import pytest


class _HeldRunner:
    """JobRunner stand-in that queues bodies instead of running them."""

    def __init__(self):
        self.jobs = []

    def submit(self, kind, resource_id, fn):
        self.jobs.append(fn)
        return resource_id

    def run_all(self):
        jobs, self.jobs = self.jobs, []
        for fn in jobs:
            fn()


def _coordinator(engine, tmp_path, runner=None, item_store=None, notifications=None,
                 sync_db=None):
    from passvault.sync.sync_coordinator import SyncCoordinator
    from passvault.sync.sync_database import SyncDatabase

    return SyncCoordinator(
        sync_db=sync_db or SyncDatabase(str(tmp_path / "data" / "sync.db")),
        device_registry=engine.devices,
        item_store=item_store or engine.items,
        notifications=notifications or engine.notifications,
        runner=runner or engine.runner,
    )


def _seed(engine, owner="owner-1"):
    engine.items.add_item(owner, "passwords", "Mail", data={"username": "me"}, item_id="p1")
    engine.items.add_item(owner, "passwords", "Bank", item_id="p2")
    engine.items.add_item(owner, "documents", "Passport", item_id="d1")
    return engine.devices.register_device(owner, "Laptop", "laptop")


REMOTE_STATE = {
    "passwords": [
        {"item_id": "p1", "version": 1,
         "fields": {"title": "Mail (work)", "username": "me"}},
        {"item_id": "p2", "version": 0, "fields": {"title": "Old bank"}},
        {"item_id": "p3", "version": 1, "fields": {"title": "New on phone"}},
    ],
}


def _run(coord, engine, owner, device_id, **kwargs):
    log = coord.initiate_sync(owner, device_id, **kwargs)
    assert engine.runner.wait_for_resource(log["sync_log_id"], timeout=10)
    return coord.get_sync_status(log["sync_log_id"])


# ── Conflict Detection Tests ────────────────────────────────────────


class TestDetectConflicts:

    def _item(self, **kwargs):
        from passvault.vault.item_store import VaultItem

        defaults = dict(item_id="p1", owner_id="o", item_type="passwords",
                        title="Mail", data={"username": "me"}, version=2)
        defaults.update(kwargs)
        return VaultItem(**defaults)

    def test_equal_values_no_conflict(self):
        from passvault.sync.sync_coordinator import detect_conflicts

        remote = {"item_id": "p1", "version": 2, "fields": {"title": "Mail", "username": "me"}}
        assert detect_conflicts("passwords", self._item(), remote) == []

    def test_modification_conflict_carries_both_values(self):
        from passvault.sync.sync_coordinator import detect_conflicts

        remote = {"item_id": "p1", "version": 2, "fields": {"username": "you"}}
        [conflict] = detect_conflicts("passwords", self._item(), remote)
        assert conflict.conflict_type == "modification"
        assert conflict.field == "username"
        assert conflict.local_value == "me"
        assert conflict.remote_value == "you"
        assert conflict.resolution is None
        assert not conflict.is_resolved

    def test_stale_version_is_version_conflict(self):
        from passvault.sync.sync_coordinator import detect_conflicts

        remote = {"item_id": "p1", "version": 1, "fields": {"title": "Old"}}
        [conflict] = detect_conflicts("passwords", self._item(), remote)
        assert conflict.conflict_type == "version"

    def test_remote_deletion(self):
        from passvault.sync.sync_coordinator import detect_conflicts

        [conflict] = detect_conflicts("passwords", self._item(), {"item_id": "p1", "deleted": True})
        assert conflict.conflict_type == "deletion"
        assert conflict.local_value == "Mail"
        assert conflict.remote_value is None


# ── Sync Run Tests ──────────────────────────────────────────────────


class TestSyncRun:
    """initiate_sync() and the sync body."""

    def test_sync_completes_with_conflicts(self, engine, tmp_path):
        device = _seed(engine)
        coord = _coordinator(engine, tmp_path)

        log = _run(coord, engine, "owner-1", device["device_id"],
                   data_types=["passwords", "documents", "settings"],
                   remote_state=REMOTE_STATE)
        assert log["status"] == "completed"
        assert log["items_synced"]["passwords"] == 3
        assert log["items_synced"]["documents"] == 1
        assert log["items_synced"]["settings"] == 1
        assert log["items_synced"]["notes"] == 0
        assert log["total_items"] == 5
        assert log["data_synced"] > 0
        assert log["completed_at"]

        assert [(c["item_id"], c["field"], c["conflict_type"]) for c in log["conflicts"]] == [
            ("p1", "title", "modification"),
            ("p2", "title", "version"),
        ]
        assert log["conflicts"][0]["local_value"] == "Mail"
        assert log["conflicts"][0]["remote_value"] == "Mail (work)"

        refreshed = engine.devices.get_device(device["device_id"])
        assert refreshed["status"] == "online"
        assert refreshed["last_synced_at"]
        assert engine.notifications.list_notifications("owner-1")[0]["title"] == "Sync Completed"

    def test_initiated_log_and_device_syncing(self, engine, tmp_path):
        device = _seed(engine)
        runner = _HeldRunner()
        coord = _coordinator(engine, tmp_path, runner=runner)

        log = coord.initiate_sync("owner-1", device["device_id"])
        assert log["status"] == "initiated"
        assert log["data_types"] == ["passwords", "documents", "settings", "notes", "qrcodes"]
        assert engine.devices.get_device(device["device_id"])["status"] == "syncing"

        runner.run_all()
        assert coord.get_sync_status(log["sync_log_id"])["status"] == "completed"

    def test_unknown_or_foreign_device(self, engine, tmp_path):
        from passvault.core.errors import NotFoundError

        device = _seed(engine)
        coord = _coordinator(engine, tmp_path)
        with pytest.raises(NotFoundError):
            coord.initiate_sync("owner-1", "no-such-device")
        with pytest.raises(NotFoundError):
            coord.initiate_sync("owner-2", device["device_id"])

    def test_sync_disabled_device(self, engine, tmp_path):
        from passvault.core.errors import InvalidStateError

        device = _seed(engine)
        engine.devices.update_sync_settings("owner-1", device["device_id"], sync_enabled=False)
        with pytest.raises(InvalidStateError):
            _coordinator(engine, tmp_path).initiate_sync("owner-1", device["device_id"])

    def test_invalid_arguments(self, engine, tmp_path):
        device = _seed(engine)
        coord = _coordinator(engine, tmp_path)
        with pytest.raises(ValueError):
            coord.initiate_sync("owner-1", device["device_id"], sync_type="nightly")
        with pytest.raises(ValueError):
            coord.initiate_sync("owner-1", device["device_id"], data_types=["photos"])

    def test_one_active_sync_per_device(self, engine, tmp_path):
        from passvault.core.errors import ConflictError

        device = _seed(engine)
        coord = _coordinator(engine, tmp_path, runner=_HeldRunner())
        coord.initiate_sync("owner-1", device["device_id"])
        with pytest.raises(ConflictError):
            coord.initiate_sync("owner-1", device["device_id"])

        # a second device of the same owner is independent
        other = engine.devices.register_device("owner-1", "Phone", "mobile")
        assert coord.initiate_sync("owner-1", other["device_id"])["status"] == "initiated"

    def test_concurrent_initiates_yield_one_log(self, engine, tmp_path):
        from passvault.core.errors import ConflictError

        device = _seed(engine)
        coord = _coordinator(engine, tmp_path, runner=_HeldRunner())
        barrier = threading.Barrier(3)
        started, conflicts = [], []

        def attempt():
            barrier.wait()
            try:
                started.append(coord.initiate_sync("owner-1", device["device_id"]))
            except ConflictError:
                conflicts.append(True)

        threads = [threading.Thread(target=attempt) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert len(started) == 1
        assert len(conflicts) == 2
        assert len(coord.list_sync_history("owner-1")) == 1

    def test_repository_failure_fails_the_sync(self, engine, tmp_path):
        class BrokenStore:
            def list_active_items(self, owner_id, item_type):
                raise sqlite3.OperationalError("database is locked")

        device = _seed(engine)
        coord = _coordinator(engine, tmp_path, item_store=BrokenStore())
        log = _run(coord, engine, "owner-1", device["device_id"], data_types=["passwords"])

        assert log["status"] == "failed"
        assert log["error"]["code"] == "DEPENDENCY_FAILURE"
        assert log["conflicts"] == []
        assert engine.devices.get_device(device["device_id"])["status"] == "offline"

        latest = engine.notifications.list_notifications("owner-1")[0]
        assert latest["title"] == "Sync Failed"
        assert latest["category"] == "sync"

    def test_device_status_failure_releases_the_device(self, engine, tmp_path, monkeypatch):
        from passvault.core.errors import DependencyFailureError

        device = _seed(engine)
        runner = _HeldRunner()
        coord = _coordinator(engine, tmp_path, runner=runner)
        real_set_status = engine.devices.set_device_status
        calls = []

        def flaky_set_status(device_id, status):
            calls.append(status)
            if len(calls) == 1:
                raise sqlite3.OperationalError("database is locked")
            return real_set_status(device_id, status)

        monkeypatch.setattr(engine.devices, "set_device_status", flaky_set_status)

        with pytest.raises(DependencyFailureError):
            coord.initiate_sync("owner-1", device["device_id"])
        assert runner.jobs == []

        [failed] = coord.list_sync_history("owner-1")
        assert failed["status"] == "failed"
        assert failed["error"]["code"] == "DEPENDENCY_FAILURE"

        retry = coord.initiate_sync("owner-1", device["device_id"])
        assert retry["status"] == "initiated"

    def test_store_failure_outside_body_guard_fails_the_sync(self, engine, tmp_path):
        from passvault.sync.sync_database import SyncDatabase

        class FlakySyncDatabase(SyncDatabase):
            failures = 1

            def transition(self, *args, **kwargs):
                if self.failures:
                    self.failures -= 1
                    raise sqlite3.OperationalError("disk I/O error")
                return super().transition(*args, **kwargs)

        device = _seed(engine)
        runner = _HeldRunner()
        coord = _coordinator(
            engine, tmp_path, runner=runner,
            sync_db=FlakySyncDatabase(str(tmp_path / "data" / "sync.db")),
        )
        log = coord.initiate_sync("owner-1", device["device_id"])
        runner.run_all()

        status = coord.get_sync_status(log["sync_log_id"])
        assert status["status"] == "failed"
        assert status["error"]["code"] == "DEPENDENCY_FAILURE"
        assert status["completed_at"]
        assert engine.devices.get_device(device["device_id"])["status"] == "offline"
        assert engine.notifications.list_notifications("owner-1")[0]["title"] == "Sync Failed"

        assert coord.initiate_sync("owner-1", device["device_id"])["status"] == "initiated"

    def test_device_triggered_sync_uses_enabled_types(self, engine, tmp_path):
        device = _seed(engine)
        coord = _coordinator(engine, tmp_path)

        log = coord.sync_device("owner-1", device["device_id"], remote_state=REMOTE_STATE)
        assert log["data_types"] == ["passwords", "documents", "settings"]
        assert engine.runner.wait_for_resource(log["sync_log_id"], timeout=10)


# ── Conflict Resolution / Cancel Tests ──────────────────────────────


class TestResolveAndCancel:

    def test_resolving_one_conflict_leaves_the_other(self, engine, tmp_path):
        device = _seed(engine)
        coord = _coordinator(engine, tmp_path)
        log = _run(coord, engine, "owner-1", device["device_id"],
                   data_types=["passwords"], remote_state=REMOTE_STATE)

        updated = coord.resolve_conflict(log["sync_log_id"], 0, "server_wins",
                                         owner_id="owner-1")
        first, second = updated["conflicts"]
        assert first["resolution"] == "server_wins"
        assert first["resolved_by"] == "user"
        assert first["resolved_at"]
        assert second["resolution"] is None

        unresolved = coord.list_unresolved_conflicts("owner-1")
        assert [(c["sync_log_id"], c["conflict_index"]) for c in unresolved] == [
            (log["sync_log_id"], 1),
        ]

    def test_resolve_errors(self, engine, tmp_path):
        from passvault.core.errors import NotFoundError

        device = _seed(engine)
        coord = _coordinator(engine, tmp_path)
        log = _run(coord, engine, "owner-1", device["device_id"],
                   data_types=["passwords"], remote_state=REMOTE_STATE)

        with pytest.raises(ValueError):
            coord.resolve_conflict(log["sync_log_id"], 0, "coin_flip")
        with pytest.raises(NotFoundError, match="Conflict not found"):
            coord.resolve_conflict(log["sync_log_id"], 7, "manual")
        with pytest.raises(NotFoundError, match="Sync log not found"):
            coord.resolve_conflict("missing", 0, "manual")
        with pytest.raises(NotFoundError):
            coord.resolve_conflict(log["sync_log_id"], 0, "manual", owner_id="owner-2")

    def test_cancel_initiated_sync(self, engine, tmp_path):
        device = _seed(engine)
        runner = _HeldRunner()
        coord = _coordinator(engine, tmp_path, runner=runner)
        log = coord.initiate_sync("owner-1", device["device_id"])

        cancelled = coord.cancel_sync(log["sync_log_id"], owner_id="owner-1")
        assert cancelled["status"] == "failed"
        assert cancelled["error"]["code"] == "USER_CANCELLED"
        assert cancelled["completed_at"]
        assert engine.devices.get_device(device["device_id"])["status"] == "online"

        # the queued body sees a non-initiated log and does nothing
        runner.run_all()
        assert coord.get_sync_status(log["sync_log_id"])["status"] == "failed"

    def test_cancel_wins_over_running_body(self, engine, tmp_path):
        device = _seed(engine)
        runner = _HeldRunner()

        class CancellingStore:
            """Cancels the sync from inside the body, then answers normally."""

            coordinator = None
            sync_log_id = None

            def list_active_items(self, owner_id, item_type):
                self.coordinator.cancel_sync(self.sync_log_id)
                return engine.items.list_active_items(owner_id, item_type)

        store = CancellingStore()
        coord = _coordinator(engine, tmp_path, runner=runner, item_store=store)
        store.coordinator = coord
        log = coord.initiate_sync("owner-1", device["device_id"],
                                  data_types=["passwords"], remote_state=REMOTE_STATE)
        store.sync_log_id = log["sync_log_id"]
        runner.run_all()

        final = coord.get_sync_status(log["sync_log_id"])
        assert final["status"] == "failed"
        assert final["error"]["code"] == "USER_CANCELLED"
        assert final["conflicts"] == []
        assert final["total_items"] == 0

    def test_cancel_finished_sync_rejected(self, engine, tmp_path):
        from passvault.core.errors import NotFoundError

        device = _seed(engine)
        coord = _coordinator(engine, tmp_path)
        log = _run(coord, engine, "owner-1", device["device_id"])
        with pytest.raises(NotFoundError, match="Active sync not found"):
            coord.cancel_sync(log["sync_log_id"])


# ── History / Stats Tests ───────────────────────────────────────────


class TestSyncHistory:

    def test_history_and_stats(self, engine, tmp_path):
        device = _seed(engine)
        coord = _coordinator(engine, tmp_path)
        done = _run(coord, engine, "owner-1", device["device_id"],
                    data_types=["passwords"], remote_state=REMOTE_STATE)

        held = _HeldRunner()
        pending = _coordinator(engine, tmp_path, runner=held).initiate_sync(
            "owner-1", device["device_id"], sync_type="auto"
        )
        coord.cancel_sync(pending["sync_log_id"])

        history = coord.list_sync_history("owner-1")
        assert [log["sync_log_id"] for log in history] == [
            pending["sync_log_id"], done["sync_log_id"],
        ]
        assert history[1]["conflict_count"] == 2
        assert history[1]["unresolved_conflicts"] == 2
        assert coord.list_sync_history("owner-1", status="completed")[0]["sync_log_id"] \
            == done["sync_log_id"]
        assert coord.list_sync_history("owner-2") == []

        stats = coord.get_sync_stats("owner-1")
        assert stats["total_syncs"] == 2
        assert stats["completed_syncs"] == 1
        assert stats["failed_syncs"] == 1
        assert stats["total_items_synced"] == 3
        assert stats["total_conflicts"] == 2
        assert stats["unresolved_conflicts"] == 2
        assert stats["status_breakdown"] == {"completed": 1, "failed": 1}
        assert stats["type_breakdown"] == {"manual": 1, "auto": 1}
        assert stats["data_type_totals"]["passwords"] == 3

    def test_status_is_owner_scoped(self, engine, tmp_path):
        from passvault.core.errors import NotFoundError

        device = _seed(engine)
        coord = _coordinator(engine, tmp_path)
        log = _run(coord, engine, "owner-1", device["device_id"])
        with pytest.raises(NotFoundError):
            coord.get_sync_status(log["sync_log_id"], owner_id="owner-2")
