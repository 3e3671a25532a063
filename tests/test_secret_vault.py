"""Tests for the secret vault."""

import pytest

from conftest import TEST_ENCRYPTION_KEY
from invoice_ingest.errors import EncryptionNotConfiguredError
from invoice_ingest.services.secret_vault import SecretVault, SecretVaultError


class TestSecretVault:
    def test_encrypt_decrypt(self, vault):
        sealed = vault.encrypt("hunter2")

        assert "hunter2" not in sealed
        assert len(sealed.split(":")) == 3
        assert vault.decrypt(sealed) == "hunter2"

    def test_random_iv_per_secret(self, vault):
        assert vault.encrypt("same") != vault.encrypt("same")

    def test_tampered_ciphertext_rejected(self, vault):
        iv, tag, ciphertext = vault.encrypt("hunter2").split(":")
        flipped = f"{int(ciphertext[:2], 16) ^ 1:02x}{ciphertext[2:]}"

        with pytest.raises(SecretVaultError):
            vault.decrypt(f"{iv}:{tag}:{flipped}")

    def test_malformed_ciphertext_rejected(self, vault):
        with pytest.raises(SecretVaultError):
            vault.decrypt("not-a-secret")

    def test_other_key_cannot_decrypt(self, vault):
        other = SecretVault(SecretVault.generate_key())
        with pytest.raises(SecretVaultError):
            other.decrypt(vault.encrypt("hunter2"))

    def test_unconfigured_vault(self):
        vault = SecretVault(None)

        assert not vault.is_configured()
        with pytest.raises(EncryptionNotConfiguredError):
            vault.encrypt("hunter2")

    def test_key_length_enforced(self):
        with pytest.raises(ValueError):
            SecretVault(TEST_ENCRYPTION_KEY[:32])

    def test_generated_key_is_usable(self):
        key = SecretVault.generate_key()
        assert len(key) == 64
        assert SecretVault(key).is_configured()
