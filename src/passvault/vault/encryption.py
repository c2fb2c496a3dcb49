# Vault - Cipher Module
#
# Per-item key generation (random 256-bit key)
# Secret/file encryption (AES-256-GCM, fresh 96-bit IV per call)
# Plaintext checksum (SHA-256) computed before encryption and
# verified after decryption

import base64
import hashlib
import os
from dataclasses import dataclass
from typing import Tuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..core.errors import CorruptPayloadError

ALGORITHM = "AES-256-GCM"


@dataclass
class EncryptedBlob:
    """A protected item payload plus everything needed to open it.

    key_material is generated per item and stored alongside the record
    (no master key). checksum is the SHA-256 of the plaintext; it detects
    corruption, the GCM tag detects tampering.
    """

    algorithm: str
    key_material: bytes
    iv: bytes
    ciphertext: bytes
    checksum: str

    def to_dict(self) -> dict:
        """Storage form: binary fields base64-encoded."""
        return {
            "algorithm": self.algorithm,
            "key_material": EncryptionService.encode_for_storage(self.key_material),
            "iv": EncryptionService.encode_for_storage(self.iv),
            "ciphertext": EncryptionService.encode_for_storage(self.ciphertext),
            "checksum": self.checksum,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EncryptedBlob":
        return cls(
            algorithm=data.get("algorithm", ALGORITHM),
            key_material=EncryptionService.decode_from_storage(data["key_material"]),
            iv=EncryptionService.decode_from_storage(data["iv"]),
            ciphertext=EncryptionService.decode_from_storage(data["ciphertext"]),
            checksum=data["checksum"],
        )


class EncryptionService:
    """
    Handles encryption/decryption of vault secrets, files and backups.

    Flow:
    1. generate_key() creates a fresh 256-bit key for each protected item
    2. checksum() digests the plaintext
    3. AES-256-GCM encrypts with a fresh random nonce per call
    4. decrypt() authenticates, then the caller re-checks the checksum
    """

    KEY_LENGTH = 32  # 256 bits for AES-256
    SALT_LENGTH = 32  # 256-bit salt
    NONCE_LENGTH = 12  # 96-bit nonce for GCM (recommended)
    PBKDF2_ITERATIONS = 600_000  # OWASP 2023: 600k iterations for PBKDF2-SHA256

    @staticmethod
    def generate_key() -> bytes:
        """Generate a random per-item encryption key."""
        return os.urandom(EncryptionService.KEY_LENGTH)

    @staticmethod
    def generate_salt() -> bytes:
        """Generate cryptographically random salt."""
        return os.urandom(EncryptionService.SALT_LENGTH)

    @staticmethod
    def derive_key(secret: str, salt: bytes, iterations: int = PBKDF2_ITERATIONS) -> bytes:
        """
        Derive a 256-bit key from a secret and salt using PBKDF2-SHA256.

        Used for owner-scoped backup keys; per-item keys come from
        generate_key() instead.
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=EncryptionService.KEY_LENGTH,
            salt=salt,
            iterations=iterations,
            backend=default_backend(),
        )
        return kdf.derive(secret.encode("utf-8"))

    @staticmethod
    def encrypt(plaintext: Union[str, bytes], key: bytes) -> Tuple[bytes, bytes]:
        """
        Encrypt plaintext using AES-256-GCM.

        Args:
            plaintext: Secret or file content to encrypt
            key: 256-bit encryption key

        Returns:
            Tuple of (iv, ciphertext). Both needed for decryption.
        """
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")

        # A fresh nonce per call; (iv, key) reuse breaks GCM
        iv = os.urandom(EncryptionService.NONCE_LENGTH)
        ciphertext = AESGCM(key).encrypt(iv, plaintext, None)
        return iv, ciphertext

    @staticmethod
    def decrypt(ciphertext: bytes, key: bytes, iv: bytes) -> bytes:
        """
        Decrypt ciphertext using AES-256-GCM.

        Raises:
            CorruptPayloadError: If authentication fails (corrupt or
                substituted ciphertext, wrong key, wrong IV)
        """
        if len(iv) != EncryptionService.NONCE_LENGTH:
            raise CorruptPayloadError("Invalid initialization vector length")
        try:
            return AESGCM(key).decrypt(iv, ciphertext, None)
        except InvalidTag:
            raise CorruptPayloadError("Ciphertext failed authentication")
        except ValueError as exc:
            raise CorruptPayloadError(f"Ciphertext could not be decrypted: {exc}")

    @staticmethod
    def checksum(data: Union[str, bytes]) -> str:
        """SHA-256 hex digest used for corruption detection."""
        if isinstance(data, str):
            data = data.encode("utf-8")
        return hashlib.sha256(data).hexdigest()

    @staticmethod
    def protect(plaintext: Union[str, bytes]) -> EncryptedBlob:
        """Encrypt one item under a freshly generated key."""
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")
        key = EncryptionService.generate_key()
        checksum = EncryptionService.checksum(plaintext)
        iv, ciphertext = EncryptionService.encrypt(plaintext, key)
        return EncryptedBlob(
            algorithm=ALGORITHM,
            key_material=key,
            iv=iv,
            ciphertext=ciphertext,
            checksum=checksum,
        )

    @staticmethod
    def unprotect(blob: EncryptedBlob) -> bytes:
        """Decrypt a blob and verify the stored plaintext checksum."""
        plaintext = EncryptionService.decrypt(blob.ciphertext, blob.key_material, blob.iv)
        if EncryptionService.checksum(plaintext) != blob.checksum:
            raise CorruptPayloadError("Checksum mismatch after decryption")
        return plaintext

    @staticmethod
    def encode_for_storage(data: bytes) -> str:
        """
        Encode binary data for database storage (base64).

        SQLite TEXT columns and JSON manifests hold base64, not raw bytes.
        """
        return base64.b64encode(data).decode("utf-8")

    @staticmethod
    def decode_from_storage(data: str) -> bytes:
        """Decode base64-encoded data from database."""
        return base64.b64decode(data.encode("utf-8"))
