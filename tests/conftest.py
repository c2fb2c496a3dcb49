"""
Shared pytest fixtures for the PassVault engine test suite.

Autouse fixtures below isolate tests from live engine data:
  - Config          -> temp data / backup / audit directories
  - Singletons      -> reset (audit logger, job runner, repositories, routers)
  - Backup KDF      -> low PBKDF2 iteration count (600k per archive is slow)
"""

from types import SimpleNamespace

import pytest


@pytest.fixture(autouse=True)
def _isolate_engine(tmp_path, monkeypatch):
    """Point every lazily created engine singleton at tmp_path.

    Without this, a test that calls ``get_audit_logger()`` or any
    ``get_*()`` repository getter writes into ./data and ./audit_logs.
    """
    from passvault.core import audit_log, config, jobs
    from passvault.devices import device_registry
    from passvault.notifications import notification_sink
    from passvault.vault import item_store
    from passvault.api import alert_routes, backup_routes, security, sync_routes

    config.set_config(config.EngineConfig(
        data_dir=tmp_path / "data",
        audit_log_dir=tmp_path / "audit_logs",
        master_secret="test-master-secret",
    ))
    audit_log._audit_logger = None
    jobs.set_job_runner(None)
    item_store.set_item_store(None)
    notification_sink.set_notification_sink(None)
    device_registry.set_device_registry(None)
    backup_routes.set_backup_manager(None)
    sync_routes.set_sync_coordinator(None)
    alert_routes.set_alert_engine(None)
    old_token = security._SESSION_TOKEN

    yield

    # Let background bodies finish before tmp_path goes away
    if jobs._runner is not None:
        jobs._runner.wait_all(timeout=10)
    config.set_config(None)
    audit_log._audit_logger = None
    jobs.set_job_runner(None)
    item_store.set_item_store(None)
    notification_sink.set_notification_sink(None)
    device_registry.set_device_registry(None)
    backup_routes.set_backup_manager(None)
    sync_routes.set_sync_coordinator(None)
    alert_routes.set_alert_engine(None)
    security._SESSION_TOKEN = old_token


@pytest.fixture(autouse=True)
def _fast_backup_kdf(monkeypatch):
    """Backup archives derive their key with PBKDF2; keep it cheap in tests."""
    from passvault.backup.backup_crypto import BackupCrypto

    monkeypatch.setattr(BackupCrypto, "PBKDF2_ITERATIONS", 1_000)


@pytest.fixture
def engine(tmp_path):
    """Repositories, sink, registry and a JobRunner wired to tmp_path."""
    from passvault.core.jobs import JobRunner, JobStore
    from passvault.devices.device_registry import DeviceRegistry
    from passvault.notifications.notification_sink import NotificationSink
    from passvault.vault.item_store import VaultItemStore

    data = tmp_path / "data"
    env = SimpleNamespace(
        items=VaultItemStore(str(data / "vault_items.db")),
        notifications=NotificationSink(str(data / "notifications.db")),
        devices=DeviceRegistry(str(data / "devices.db")),
        runner=JobRunner(JobStore()),
    )
    yield env
    env.runner.wait_all(timeout=10)
