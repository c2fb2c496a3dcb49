"""
Tests for the vault cipher module and backup archive encryption.

Covers: per-item key generation, AES-256-GCM round trip, tamper and
wrong-key detection, checksum verification, storage encoding, and the
owner-scoped backup archive format.
"""

import pytest


# ── EncryptionService Tests ─────────────────────────────────────────


class TestEncryptionService:
    """AES-256-GCM primitives and the protect/unprotect pair."""

    def test_generate_key_is_256_bits_and_random(self):
        from passvault.vault.encryption import EncryptionService

        k1 = EncryptionService.generate_key()
        k2 = EncryptionService.generate_key()
        assert len(k1) == 32
        assert k1 != k2

    def test_encrypt_decrypt_round_trip(self):
        from passvault.vault.encryption import EncryptionService

        key = EncryptionService.generate_key()
        iv, ciphertext = EncryptionService.encrypt("hunter2", key)
        assert len(iv) == 12
        assert b"hunter2" not in ciphertext
        assert EncryptionService.decrypt(ciphertext, key, iv) == b"hunter2"

    def test_fresh_iv_per_call(self):
        from passvault.vault.encryption import EncryptionService

        key = EncryptionService.generate_key()
        iv1, c1 = EncryptionService.encrypt(b"same", key)
        iv2, c2 = EncryptionService.encrypt(b"same", key)
        assert iv1 != iv2
        assert c1 != c2

    def test_tampered_ciphertext_is_corrupt(self):
        from passvault.core.errors import CorruptPayloadError
        from passvault.vault.encryption import EncryptionService

        key = EncryptionService.generate_key()
        iv, ciphertext = EncryptionService.encrypt(b"secret", key)
        tampered = bytes([ciphertext[0] ^ 0x01]) + ciphertext[1:]
        with pytest.raises(CorruptPayloadError):
            EncryptionService.decrypt(tampered, key, iv)

    def test_wrong_key_is_corrupt(self):
        from passvault.core.errors import CorruptPayloadError
        from passvault.vault.encryption import EncryptionService

        iv, ciphertext = EncryptionService.encrypt(b"secret", EncryptionService.generate_key())
        with pytest.raises(CorruptPayloadError):
            EncryptionService.decrypt(ciphertext, EncryptionService.generate_key(), iv)

    def test_bad_iv_length_is_corrupt(self):
        from passvault.core.errors import CorruptPayloadError
        from passvault.vault.encryption import EncryptionService

        key = EncryptionService.generate_key()
        _, ciphertext = EncryptionService.encrypt(b"secret", key)
        with pytest.raises(CorruptPayloadError):
            EncryptionService.decrypt(ciphertext, key, b"short")

    def test_protect_unprotect(self):
        from passvault.vault.encryption import ALGORITHM, EncryptionService

        blob = EncryptionService.protect("correct horse battery staple")
        assert blob.algorithm == ALGORITHM
        assert blob.checksum == EncryptionService.checksum("correct horse battery staple")
        assert EncryptionService.unprotect(blob) == b"correct horse battery staple"

    def test_unprotect_detects_checksum_mismatch(self):
        from passvault.core.errors import CorruptPayloadError
        from passvault.vault.encryption import EncryptionService

        blob = EncryptionService.protect("payload")
        blob.checksum = EncryptionService.checksum("something else")
        with pytest.raises(CorruptPayloadError):
            EncryptionService.unprotect(blob)

    def test_blob_dict_round_trip(self):
        from passvault.vault.encryption import EncryptedBlob, EncryptionService

        blob = EncryptionService.protect(b"\x00\x01binary")
        restored = EncryptedBlob.from_dict(blob.to_dict())
        assert restored == blob
        assert EncryptionService.unprotect(restored) == b"\x00\x01binary"

    def test_storage_encoding(self):
        from passvault.vault.encryption import EncryptionService

        raw = bytes(range(256))
        encoded = EncryptionService.encode_for_storage(raw)
        assert isinstance(encoded, str)
        assert EncryptionService.decode_from_storage(encoded) == raw

    def test_derive_key_is_deterministic_per_salt(self):
        from passvault.vault.encryption import EncryptionService

        salt = EncryptionService.generate_salt()
        k1 = EncryptionService.derive_key("secret", salt, iterations=1000)
        k2 = EncryptionService.derive_key("secret", salt, iterations=1000)
        k3 = EncryptionService.derive_key("secret", EncryptionService.generate_salt(),
                                          iterations=1000)
        assert k1 == k2
        assert k1 != k3
        assert len(k1) == 32


# ── BackupCrypto Tests ──────────────────────────────────────────────


class TestBackupCrypto:
    """Archive format: salt(32) + nonce(12) + ciphertext."""

    def test_round_trip(self):
        from passvault.backup.backup_crypto import BackupCrypto

        passphrase = BackupCrypto.owner_passphrase("master", "owner-1")
        blob = BackupCrypto.encrypt_bytes(b'{"items": {}}', passphrase)
        assert len(blob) > 44
        assert BackupCrypto.decrypt_bytes(blob, passphrase) == b'{"items": {}}'

    def test_other_owner_cannot_decrypt(self):
        from passvault.backup.backup_crypto import BackupCrypto
        from passvault.core.errors import CorruptPayloadError

        blob = BackupCrypto.encrypt_bytes(
            b"data", BackupCrypto.owner_passphrase("master", "owner-1")
        )
        with pytest.raises(CorruptPayloadError):
            BackupCrypto.decrypt_bytes(blob, BackupCrypto.owner_passphrase("master", "owner-2"))

    def test_short_blob_is_corrupt(self):
        from passvault.backup.backup_crypto import BackupCrypto
        from passvault.core.errors import CorruptPayloadError

        with pytest.raises(CorruptPayloadError):
            BackupCrypto.decrypt_bytes(b"too short", "pass")
