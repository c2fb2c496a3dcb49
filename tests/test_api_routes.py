"""
Tests for the engine's HTTP surface.

Uses FastAPI TestClient against real managers wired to tmp_path.
Background bodies are queued by a held runner and run explicitly, so
every request sees a deterministic record state.
"""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

TOKEN = "test-session-token"
HEADERS = {"X-Session-Token": TOKEN, "X-Owner-Id": "owner-1"}
OTHER = {"X-Session-Token": TOKEN, "X-Owner-Id": "owner-2"}


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


@pytest.fixture
def api(engine, tmp_path):
    from passvault.alerts.alert_database import AlertDatabase
    from passvault.alerts.expiration_engine import ExpirationAlertEngine
    from passvault.api import alert_routes, backup_routes, security, sync_routes
    from passvault.api.main import app
    from passvault.backup.backup_database import BackupDatabase
    from passvault.backup.backup_manager import BackupManager
    from passvault.devices.device_registry import set_device_registry
    from passvault.notifications.notification_sink import set_notification_sink
    from passvault.sync.sync_coordinator import SyncCoordinator
    from passvault.sync.sync_database import SyncDatabase
    from passvault.vault.item_store import set_item_store

    data = tmp_path / "data"
    runner = _HeldRunner()
    security._SESSION_TOKEN = TOKEN
    set_item_store(engine.items)
    set_device_registry(engine.devices)
    set_notification_sink(engine.notifications)
    backup_routes.set_backup_manager(BackupManager(
        backup_dir=tmp_path / "backups",
        backup_db=BackupDatabase(str(data / "backups.db")),
        item_store=engine.items,
        notifications=engine.notifications,
        device_registry=engine.devices,
        runner=runner,
        master_secret="test-master-secret",
    ))
    sync_routes.set_sync_coordinator(SyncCoordinator(
        sync_db=SyncDatabase(str(data / "sync.db")),
        device_registry=engine.devices,
        item_store=engine.items,
        notifications=engine.notifications,
        runner=runner,
    ))
    alert_routes.set_alert_engine(ExpirationAlertEngine(
        alert_db=AlertDatabase(str(data / "alerts.db")),
        item_store=engine.items,
        window_days=30,
    ))
    return SimpleNamespace(client=TestClient(app), runner=runner, engine=engine)


def _seed_vault(items):
    items.add_item("owner-1", "passwords", "Mail", data={"username": "me"},
                   secret="pw-1", item_id="p1")
    items.add_item("owner-1", "passwords", "Bank", secret="pw-2", item_id="p2")
    items.add_item("owner-1", "documents", "Passport", item_id="d1")


# ── Auth Tests ──────────────────────────────────────────────────────


class TestSessionAuth:

    def test_health_is_open(self, api):
        resp = api.client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    def test_missing_token(self, api):
        resp = api.client.get("/api/backups", headers={"X-Owner-Id": "owner-1"})
        assert resp.status_code == 401

    def test_wrong_token(self, api):
        resp = api.client.get("/api/backups",
                              headers={"X-Session-Token": "nope", "X-Owner-Id": "owner-1"})
        assert resp.status_code == 401

    def test_missing_owner(self, api):
        resp = api.client.get("/api/alerts", headers={"X-Session-Token": TOKEN})
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Missing X-Owner-Id header"

    def test_token_not_initialized(self, api):
        from passvault.api import security

        security._SESSION_TOKEN = None
        resp = api.client.get("/api/devices", headers=HEADERS)
        assert resp.status_code == 503


# ── Backup Route Tests ──────────────────────────────────────────────


class TestBackupRoutes:

    def test_backup_lifecycle(self, api):
        _seed_vault(api.engine.items)

        resp = api.client.post("/api/backups", json={}, headers=HEADERS)
        assert resp.status_code == 202
        backup_id = resp.json()["backup_id"]
        assert resp.json()["status"] == "initiated"

        api.runner.run_all()
        status = api.client.get(f"/api/backups/{backup_id}/status", headers=HEADERS).json()
        assert status["status"] == "completed"
        assert status["items_backed_up"]["passwords"] == 2
        assert status["size_bytes"] > 0
        assert set(status) == {
            "backup_id", "status", "items_backed_up", "item_count", "size_bytes",
            "error", "started_at", "completed_at",
        }

        listed = api.client.get("/api/backups", headers=HEADERS).json()
        assert listed["total"] == 1

        resp = api.client.post(f"/api/backups/{backup_id}/restore", headers=HEADERS)
        assert resp.status_code == 202
        assert resp.json()["status"] == "restoring"
        api.runner.run_all()

        verified = api.client.post(f"/api/backups/{backup_id}/verify", headers=HEADERS).json()
        assert verified["verification_status"] == "verified"

        stats = api.client.get("/api/backups/stats", headers=HEADERS).json()
        assert stats["completed"] == 1
        assert stats["success_rate"] == 100.0

        resp = api.client.delete(f"/api/backups/{backup_id}", headers=HEADERS)
        assert resp.json() == {"deleted": True}
        resp = api.client.get(f"/api/backups/{backup_id}", headers=HEADERS)
        assert resp.status_code == 404
        assert resp.json()["detail"]["code"] == "NOT_FOUND"

    def test_second_active_backup_conflicts(self, api):
        assert api.client.post("/api/backups", json={}, headers=HEADERS).status_code == 202
        resp = api.client.post("/api/backups", json={}, headers=HEADERS)
        assert resp.status_code == 409
        assert resp.json()["detail"]["code"] == "CONFLICT"

        # another owner is unaffected
        assert api.client.post("/api/backups", json={}, headers=OTHER).status_code == 202

    def test_running_backup_cannot_be_deleted(self, api):
        backup_id = api.client.post("/api/backups", json={}, headers=HEADERS).json()["backup_id"]
        resp = api.client.delete(f"/api/backups/{backup_id}", headers=HEADERS)
        assert resp.status_code == 400
        assert resp.json()["detail"]["code"] == "INVALID_STATE"

    def test_invalid_input(self, api):
        resp = api.client.post("/api/backups/selective", json={}, headers=HEADERS)
        assert resp.status_code == 400
        assert resp.json()["detail"]["code"] == "INVALID_INPUT"

        resp = api.client.post("/api/backups", json={"data_types": ["photos"]}, headers=HEADERS)
        assert resp.status_code == 400

    def test_selective_backup(self, api):
        _seed_vault(api.engine.items)
        resp = api.client.post("/api/backups/selective",
                               json={"password_ids": ["p1"], "document_ids": ["d1"]},
                               headers=HEADERS)
        assert resp.status_code == 202
        api.runner.run_all()

        record = api.client.get(f"/api/backups/{resp.json()['backup_id']}",
                                headers=HEADERS).json()
        assert record["status"] == "completed"
        assert record["item_count"] == 2

    def test_backups_are_owner_scoped(self, api):
        backup_id = api.client.post("/api/backups", json={}, headers=HEADERS).json()["backup_id"]
        assert api.client.get(f"/api/backups/{backup_id}", headers=OTHER).status_code == 404
        assert api.client.get("/api/backups", headers=OTHER).json()["total"] == 0

    def test_restore_requires_completed_backup(self, api):
        backup_id = api.client.post("/api/backups", json={}, headers=HEADERS).json()["backup_id"]
        resp = api.client.post(f"/api/backups/{backup_id}/restore", headers=HEADERS)
        assert resp.status_code == 404

    def test_health(self, api):
        health = api.client.get("/api/backups/health", headers=HEADERS).json()
        assert health["score"] == 0
        assert health["rating"] == "No Backups"


# ── Sync Route Tests ────────────────────────────────────────────────


REMOTE_STATE = {
    "passwords": [
        {"item_id": "p1", "version": 1,
         "fields": {"title": "Mail (work)", "username": "me"}},
    ],
}


class TestSyncRoutes:

    def _device(self, api, headers=HEADERS):
        resp = api.client.post("/api/devices", json={"name": "Laptop", "device_type": "laptop"},
                               headers=headers)
        assert resp.status_code == 201
        return resp.json()["device_id"]

    def test_sync_with_conflict_and_resolution(self, api):
        _seed_vault(api.engine.items)
        device_id = self._device(api)

        resp = api.client.post("/api/sync/initiate", headers=HEADERS, json={
            "device_id": device_id, "data_types": ["passwords"], "remote_state": REMOTE_STATE,
        })
        assert resp.status_code == 202
        sync_log_id = resp.json()["sync_log_id"]
        api.runner.run_all()

        log = api.client.get(f"/api/sync/{sync_log_id}", headers=HEADERS).json()
        assert log["status"] == "completed"
        assert len(log["conflicts"]) == 1
        assert api.client.get("/api/sync/conflicts", headers=HEADERS).json()["total"] == 1

        resp = api.client.post(f"/api/sync/{sync_log_id}/resolve-conflict", headers=HEADERS,
                               json={"conflict_index": 0, "resolution": "client_wins"})
        assert resp.status_code == 200
        conflict = resp.json()["conflicts"][0]
        assert conflict["resolution"] == "client_wins"
        assert conflict["resolved_by"] == "owner-1"
        assert api.client.get("/api/sync/conflicts", headers=HEADERS).json()["total"] == 0

        history = api.client.get("/api/sync/history", headers=HEADERS).json()
        assert history["total"] == 1

    def test_resolve_errors(self, api):
        device_id = self._device(api)
        sync_log_id = api.client.post("/api/sync/initiate", headers=HEADERS,
                                      json={"device_id": device_id}).json()["sync_log_id"]
        api.runner.run_all()

        resp = api.client.post(f"/api/sync/{sync_log_id}/resolve-conflict", headers=HEADERS,
                               json={"conflict_index": 0, "resolution": "coin_flip"})
        assert resp.status_code == 400
        resp = api.client.post(f"/api/sync/{sync_log_id}/resolve-conflict", headers=HEADERS,
                               json={"conflict_index": 0, "resolution": "server_wins"})
        assert resp.status_code == 404
        resp = api.client.post(f"/api/sync/{sync_log_id}/resolve-conflict", headers=HEADERS,
                               json={"conflict_index": -1, "resolution": "server_wins"})
        assert resp.status_code == 422

    def test_cancel(self, api):
        device_id = self._device(api)
        sync_log_id = api.client.post("/api/sync/initiate", headers=HEADERS,
                                      json={"device_id": device_id}).json()["sync_log_id"]

        resp = api.client.post(f"/api/sync/{sync_log_id}/cancel", headers=HEADERS)
        assert resp.status_code == 200
        assert resp.json()["status"] == "failed"
        assert resp.json()["error"]["code"] == "USER_CANCELLED"

        api.runner.run_all()
        resp = api.client.post(f"/api/sync/{sync_log_id}/cancel", headers=HEADERS)
        assert resp.status_code == 404

    def test_initiate_errors(self, api):
        device_id = self._device(api)
        foreign = self._device(api, headers=OTHER)

        resp = api.client.post("/api/sync/initiate", headers=HEADERS,
                               json={"device_id": foreign})
        assert resp.status_code == 404

        assert api.client.post("/api/sync/initiate", headers=HEADERS,
                               json={"device_id": device_id}).status_code == 202
        resp = api.client.post("/api/sync/initiate", headers=HEADERS,
                               json={"device_id": device_id})
        assert resp.status_code == 409

        api.client.put(f"/api/devices/{foreign}/sync-settings", headers=OTHER,
                       json={"sync_enabled": False})
        resp = api.client.post("/api/sync/initiate", headers=OTHER,
                               json={"device_id": foreign})
        assert resp.status_code == 400
        assert resp.json()["detail"]["code"] == "INVALID_STATE"

    def test_device_triggered_sync(self, api):
        device_id = self._device(api)
        resp = api.client.post(f"/api/devices/{device_id}/sync", headers=HEADERS, json={})
        assert resp.status_code == 202
        assert resp.json()["data_types"] == ["passwords", "documents", "settings"]

        api.runner.run_all()
        stats = api.client.get("/api/sync/stats", headers=HEADERS).json()
        assert stats["completed_syncs"] == 1


# ── Alert Route Tests ───────────────────────────────────────────────


class TestAlertRoutes:

    def _seed(self, api):
        soon = (datetime.now(timezone.utc) + timedelta(days=3)).isoformat()
        api.engine.items.add_item("owner-1", "passwords", "VPN", expires_at=soon, item_id="p9")

    def test_listing_scans_and_dedups(self, api):
        self._seed(api)
        page = api.client.get("/api/alerts", headers=HEADERS).json()
        assert page["total"] == 1
        assert page["alerts"][0]["alert_type"] == "password_expiry"

        assert api.client.post("/api/alerts/scan", headers=HEADERS).json() == {"created": 0}
        assert api.client.get("/api/alerts", headers=HEADERS).json()["total"] == 1
        assert api.client.get("/api/alerts", headers=OTHER).json()["total"] == 0

    def test_read_resolve_delete(self, api):
        self._seed(api)
        alert_id = api.client.get("/api/alerts", headers=HEADERS).json()["alerts"][0]["alert_id"]
        assert api.client.get("/api/alerts/unread-count", headers=HEADERS).json() == {"count": 1}

        resp = api.client.post(f"/api/alerts/{alert_id}/read", headers=HEADERS)
        assert resp.json()["is_read"] is True
        assert api.client.get("/api/alerts/unread-count", headers=HEADERS).json() == {"count": 0}

        resp = api.client.post(f"/api/alerts/{alert_id}/resolve", headers=HEADERS)
        assert resp.json()["resolved_by"] == "owner-1"

        assert api.client.delete(f"/api/alerts/{alert_id}", headers=HEADERS).json() == \
            {"deleted": True}
        resp = api.client.delete(f"/api/alerts/{alert_id}", headers=HEADERS)
        assert resp.status_code == 404

    def test_foreign_alert_is_not_found(self, api):
        self._seed(api)
        alert_id = api.client.get("/api/alerts", headers=HEADERS).json()["alerts"][0]["alert_id"]
        assert api.client.post(f"/api/alerts/{alert_id}/read", headers=OTHER).status_code == 404

    def test_stats_read_all_and_cleanup(self, api):
        self._seed(api)
        api.client.post("/api/alerts/scan", headers=HEADERS)

        stats = api.client.get("/api/alerts/stats", headers=HEADERS).json()
        assert stats["total"] == 1
        assert stats["by_severity"] == {"high": 1}
        assert api.client.get("/api/alerts/critical", headers=HEADERS).json()["total"] == 0

        assert api.client.post("/api/alerts/read-all", headers=HEADERS).json() == {"updated": 1}
        # password alerts are not refreshed by cleanup
        assert api.client.post("/api/alerts/cleanup", headers=HEADERS).json() == {"deleted": 0}


# ── Device & Notification Route Tests ───────────────────────────────


class TestDeviceRoutes:

    def test_register_list_and_primary(self, api):
        first = api.client.post("/api/devices", json={"name": "Laptop"}, headers=HEADERS).json()
        second = api.client.post("/api/devices", json={"name": "Phone", "device_type": "mobile"},
                                 headers=HEADERS).json()
        assert first["is_primary"] and not second["is_primary"]

        listed = api.client.get("/api/devices", headers=HEADERS).json()
        assert listed["total"] == 2

        resp = api.client.post(f"/api/devices/{second['device_id']}/primary", headers=HEADERS)
        assert resp.json()["is_primary"] is True

        resp = api.client.delete(f"/api/devices/{second['device_id']}", headers=HEADERS)
        assert resp.status_code == 400
        resp = api.client.delete(f"/api/devices/{first['device_id']}", headers=HEADERS)
        assert resp.json() == {"deleted": True}

    def test_register_validation(self, api):
        resp = api.client.post("/api/devices", json={"name": "Fridge", "device_type": "fridge"},
                               headers=HEADERS)
        assert resp.status_code == 400
        assert api.client.post("/api/devices", json={"name": ""},
                               headers=HEADERS).status_code == 422

    def test_foreign_device_hidden(self, api):
        device = api.client.post("/api/devices", json={"name": "Laptop"}, headers=HEADERS).json()
        assert api.client.get(f"/api/devices/{device['device_id']}",
                              headers=OTHER).status_code == 404

    def test_sync_settings(self, api):
        device = api.client.post("/api/devices", json={"name": "Laptop"}, headers=HEADERS).json()
        resp = api.client.put(f"/api/devices/{device['device_id']}/sync-settings",
                              headers=HEADERS, json={"sync_settings": {"notes": True}})
        assert resp.json()["sync_settings"]["notes"] is True
        assert resp.json()["sync_settings"]["passwords"] is True

    def test_notifications_feed(self, api):
        api.client.post("/api/backups", json={}, headers=HEADERS)
        api.runner.run_all()

        feed = api.client.get("/api/notifications", headers=HEADERS).json()
        assert feed["total"] == 1
        note = feed["notifications"][0]
        assert note["title"] == "Backup Completed"

        resp = api.client.post(f"/api/notifications/{note['notification_id']}/read",
                               headers=HEADERS)
        assert resp.json() == {"read": True}
        unread = api.client.get("/api/notifications?unread_only=true", headers=HEADERS).json()
        assert unread["total"] == 0
        assert api.client.post("/api/notifications/missing/read",
                               headers=HEADERS).status_code == 404
