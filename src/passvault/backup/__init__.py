"""PassVault - Backup and restore (full and selective, verifiable)."""

from .backup_crypto import BackupCrypto
from .backup_database import BackupDatabase
from .backup_manager import BackupManager, BackupMetadata
from .health import calculate_health_score, overall_health

__all__ = [
    "BackupCrypto",
    "BackupDatabase",
    "BackupManager",
    "BackupMetadata",
    "calculate_health_score",
    "overall_health",
]
