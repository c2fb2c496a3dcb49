"""Backup archive encryption with an owner-scoped key.

Uses the vault Cipher Module (vault/encryption.py) for the primitives:
- PBKDF2-SHA256 derives the owner key from the engine master secret
  and the owner id, with a random salt per archive
- AES-256-GCM encrypts the serialized manifest with a fresh nonce

Archive format: salt(32) + nonce(12) + ciphertext+tag
"""

from ..core.errors import CorruptPayloadError
from ..vault.encryption import EncryptionService


class BackupCrypto:
    """Encrypt/decrypt backup archives for one vault owner."""

    PBKDF2_ITERATIONS = EncryptionService.PBKDF2_ITERATIONS
    SALT_LENGTH = EncryptionService.SALT_LENGTH
    NONCE_LENGTH = EncryptionService.NONCE_LENGTH

    # Minimum header size: salt + nonce
    _HEADER_SIZE = SALT_LENGTH + NONCE_LENGTH

    @staticmethod
    def owner_passphrase(master_secret: str, owner_id: str) -> str:
        """Bind the key to the owner so one owner's archive never opens under another's."""
        return f"{master_secret}:{owner_id}"

    @staticmethod
    def derive_key(passphrase: str, salt: bytes) -> bytes:
        return EncryptionService.derive_key(
            passphrase, salt, iterations=BackupCrypto.PBKDF2_ITERATIONS
        )

    @staticmethod
    def encrypt_bytes(data: bytes, passphrase: str) -> bytes:
        """Encrypt data with AES-256-GCM.

        Returns: salt(32) + nonce(12) + ciphertext_with_tag
        """
        salt = EncryptionService.generate_salt()
        key = BackupCrypto.derive_key(passphrase, salt)
        nonce, ciphertext = EncryptionService.encrypt(data, key)
        return salt + nonce + ciphertext

    @staticmethod
    def decrypt_bytes(blob: bytes, passphrase: str) -> bytes:
        """Decrypt an encrypted archive blob.

        Raises:
            CorruptPayloadError: Wrong key, corrupt data, or a blob too short
                to contain the header.
        """
        if len(blob) < BackupCrypto._HEADER_SIZE:
            raise CorruptPayloadError("Encrypted data too short to be a valid backup archive.")
        salt = blob[: BackupCrypto.SALT_LENGTH]
        nonce = blob[BackupCrypto.SALT_LENGTH : BackupCrypto._HEADER_SIZE]
        ciphertext = blob[BackupCrypto._HEADER_SIZE :]
        key = BackupCrypto.derive_key(passphrase, salt)
        return EncryptionService.decrypt(ciphertext, key, nonce)
