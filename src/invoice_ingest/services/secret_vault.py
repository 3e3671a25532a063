"""
Secret vault for mailbox credentials.

AES-256-GCM with a random 12-byte IV per secret. Ciphertexts are stored as
"iv:tag:ciphertext", each part hex encoded.
"""

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..errors import EncryptionNotConfiguredError

IV_LENGTH = 12
TAG_LENGTH = 16


class SecretVaultError(Exception):
    """Ciphertext could not be decrypted."""

    pass


class SecretVault:
    """Encrypts and decrypts short secrets."""

    def __init__(self, key_hex: str | None):
        self._aesgcm: AESGCM | None = None
        if key_hex:
            key = bytes.fromhex(key_hex)
            if len(key) != 32:
                raise ValueError("Encryption key must be 32 bytes (64 hex characters)")
            self._aesgcm = AESGCM(key)

    @staticmethod
    def generate_key() -> str:
        """New random key as hex (for ENCRYPTION_KEY)."""
        return AESGCM.generate_key(bit_length=256).hex()

    def is_configured(self) -> bool:
        return self._aesgcm is not None

    def _cipher(self) -> AESGCM:
        if self._aesgcm is None:
            raise EncryptionNotConfiguredError()
        return self._aesgcm

    def encrypt(self, plaintext: str) -> str:
        cipher = self._cipher()
        iv = os.urandom(IV_LENGTH)
        sealed = cipher.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, encrypted: str) -> str:
        cipher = self._cipher()
        try:
            iv_hex, tag_hex, ciphertext_hex = encrypted.split(":")
            iv = bytes.fromhex(iv_hex)
            tag = bytes.fromhex(tag_hex)
            ciphertext = bytes.fromhex(ciphertext_hex)
        except ValueError:
            raise SecretVaultError("Malformed ciphertext") from None
        try:
            return cipher.decrypt(iv, ciphertext + tag, None).decode("utf-8")
        except InvalidTag:
            raise SecretVaultError("Ciphertext failed authentication") from None
