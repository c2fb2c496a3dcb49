"""PassVault - Device registry (owner devices, primary flag, sync settings)."""

from .device_registry import (
    DEFAULT_SYNC_SETTINGS,
    DEVICE_TYPES,
    DeviceRegistry,
    enabled_data_types,
    get_device_registry,
    set_device_registry,
)

__all__ = [
    "DEFAULT_SYNC_SETTINGS",
    "DEVICE_TYPES",
    "DeviceRegistry",
    "enabled_data_types",
    "get_device_registry",
    "set_device_registry",
]
