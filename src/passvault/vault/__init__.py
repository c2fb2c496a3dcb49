# Vault Module - Encrypted Item Storage
#
# Per-item AES-256-GCM encryption with detached SHA-256 checksums
# Item repository read by the backup, sync and alert engines

from .encryption import EncryptedBlob, EncryptionService
from .item_store import ITEM_TYPES, VaultItem, VaultItemStore, get_item_store, set_item_store

__all__ = [
    "EncryptedBlob",
    "EncryptionService",
    "ITEM_TYPES",
    "VaultItem",
    "VaultItemStore",
    "get_item_store",
    "set_item_store",
]
