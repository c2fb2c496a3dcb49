"""
Tests for the device registry and the notification sink.
"""

import pytest


# ── DeviceRegistry Tests ────────────────────────────────────────────


class TestDeviceRegistry:
    """Registration, primary-device rules and sync settings."""

    def test_first_device_is_primary_and_trusted(self, engine):
        first = engine.devices.register_device("owner-1", "Laptop", "laptop")
        second = engine.devices.register_device("owner-1", "Phone", "mobile")

        assert first["is_primary"] and first["is_trusted"]
        assert not second["is_primary"] and not second["is_trusted"]
        assert first["status"] == "online"
        assert first["sync_settings"] == {
            "passwords": True, "documents": True, "settings": True, "notes": False,
        }

    def test_primary_is_per_owner(self, engine):
        engine.devices.register_device("owner-1", "Laptop")
        other = engine.devices.register_device("owner-2", "Laptop")
        assert other["is_primary"]

    def test_unknown_device_type_rejected(self, engine):
        with pytest.raises(ValueError):
            engine.devices.register_device("owner-1", "Toaster", "toaster")

    def test_list_devices_primary_first(self, engine):
        engine.devices.register_device("owner-1", "Laptop")
        engine.devices.register_device("owner-1", "Phone")
        engine.devices.register_device("owner-2", "Other")

        devices = engine.devices.list_devices("owner-1")
        assert [d["name"] for d in devices][0] == "Laptop"
        assert len(devices) == 2

    def test_get_owned_device_hides_foreign_devices(self, engine):
        from passvault.core.errors import NotFoundError

        device = engine.devices.register_device("owner-1", "Laptop")
        with pytest.raises(NotFoundError):
            engine.devices.get_owned_device("owner-2", device["device_id"])

    def test_update_sync_settings_merges(self, engine):
        from passvault.devices.device_registry import enabled_data_types

        device = engine.devices.register_device("owner-1", "Laptop")
        updated = engine.devices.update_sync_settings(
            "owner-1", device["device_id"],
            auto_sync_enabled=False,
            sync_settings={"notes": True, "documents": False},
        )
        assert updated["auto_sync_enabled"] is False
        assert updated["sync_enabled"] is True
        assert enabled_data_types(updated) == ["passwords", "settings", "notes"]

    def test_set_primary_moves_flag(self, engine):
        first = engine.devices.register_device("owner-1", "Laptop")
        second = engine.devices.register_device("owner-1", "Phone")

        promoted = engine.devices.set_primary("owner-1", second["device_id"])
        assert promoted["is_primary"] and promoted["is_trusted"]
        assert not engine.devices.get_device(first["device_id"])["is_primary"]

    def test_cannot_remove_primary_while_others_exist(self, engine):
        from passvault.core.errors import InvalidStateError

        first = engine.devices.register_device("owner-1", "Laptop")
        second = engine.devices.register_device("owner-1", "Phone")

        with pytest.raises(InvalidStateError):
            engine.devices.remove_device("owner-1", first["device_id"])

        assert engine.devices.remove_device("owner-1", second["device_id"])
        assert engine.devices.remove_device("owner-1", first["device_id"])
        assert engine.devices.list_devices("owner-1") == []

    def test_status_updates(self, engine):
        device = engine.devices.register_device("owner-1", "Laptop")
        engine.devices.set_device_status(device["device_id"], "syncing")
        assert engine.devices.get_device(device["device_id"])["status"] == "syncing"

        engine.devices.mark_synced(device["device_id"])
        refreshed = engine.devices.get_device(device["device_id"])
        assert refreshed["status"] == "online"
        assert refreshed["last_synced_at"]

        with pytest.raises(ValueError):
            engine.devices.set_device_status(device["device_id"], "asleep")


# ── NotificationSink Tests ──────────────────────────────────────────


class TestNotificationSink:

    def test_append_and_list_newest_first(self, engine):
        from passvault.notifications.notification_sink import (
            Notification,
            NotificationAction,
        )

        engine.notifications.append_notification(
            "owner-1", Notification(title="First", message="one")
        )
        stored = engine.notifications.append_notification(
            "owner-1",
            Notification(
                title="Second", message="two", type="success",
                action=NotificationAction(label="View", link="/x"),
                metadata={"resource_id": "b1"},
            ),
        )
        assert stored["is_read"] is False

        listed = engine.notifications.list_notifications("owner-1")
        assert [n["title"] for n in listed] == ["Second", "First"]
        assert listed[0]["action"] == {"type": "internal", "label": "View", "link": "/x"}
        assert listed[0]["metadata"] == {"resource_id": "b1"}
        assert engine.notifications.list_notifications("owner-2") == []

    def test_mark_read_is_owner_scoped(self, engine):
        from passvault.notifications.notification_sink import Notification

        stored = engine.notifications.append_notification(
            "owner-1", Notification(title="Hi", message="there")
        )
        assert not engine.notifications.mark_notification_read(
            "owner-2", stored["notification_id"]
        )
        assert engine.notifications.mark_notification_read(
            "owner-1", stored["notification_id"]
        )
        assert engine.notifications.list_notifications("owner-1", unread_only=True) == []

    @pytest.mark.parametrize("size, expected", [
        (0, "0 B"),
        (512, "512 B"),
        (2048, "2.00 KB"),
        (1536, "1.50 KB"),
        (5 * 1024 * 1024, "5.00 MB"),
    ])
    def test_format_data_size(self, size, expected):
        from passvault.notifications.notification_sink import format_data_size

        assert format_data_size(size) == expected
