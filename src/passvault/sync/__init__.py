"""PassVault - Multi-device sync (sync logs, conflict detection/resolution)."""

from .sync_coordinator import RESOLUTIONS, SyncCoordinator, detect_conflicts
from .sync_database import Conflict, SyncDatabase

__all__ = [
    "Conflict",
    "RESOLUTIONS",
    "SyncCoordinator",
    "SyncDatabase",
    "detect_conflicts",
]
