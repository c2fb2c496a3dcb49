# PassVault Engine - Main Package
#
# Vault protection & synchronization engine: per-item encryption,
# verifiable backups, multi-device sync with conflict detection and
# deduplicated expiration alerts.

__version__ = "1.0.0"
__author__ = "PassVault Team"
__description__ = "Vault protection and synchronization engine"

from .core import (
    EventSeverity,
    EventType,
    get_audit_logger,
    get_config,
)

__all__ = [
    "__version__",
    "EventType",
    "EventSeverity",
    "get_audit_logger",
    "get_config",
]
