"""
Field-level encryption for encrypted columns.

Values are sealed with AES-256-GCM. The random nonce is prefixed to the
ciphertext so each stored value is self-contained.
"""

import base64
import binascii
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from core.config import settings
from core.exceptions import DecryptionError

KEY_SIZE = 32
NONCE_SIZE = 12


def generate_key() -> bytes:
    """Generate a new random 32 byte encryption key."""
    return AESGCM.generate_key(bit_length=KEY_SIZE * 8)


class FieldCipher:
    """Encrypt and decrypt column values with a single symmetric key."""

    def __init__(self, key: bytes):
        if len(key) != KEY_SIZE:
            raise ValueError(f"encryption keys must be {KEY_SIZE} bytes")
        self._aead = AESGCM(key)

    @classmethod
    def from_settings(cls) -> Optional["FieldCipher"]:
        """Build a cipher from ENCRYPTION_KEY, or None when no key is configured."""
        if not settings.ENCRYPTION_KEY:
            return None
        try:
            key = base64.b64decode(settings.ENCRYPTION_KEY, validate=True)
        except binascii.Error as e:
            raise ValueError("ENCRYPTION_KEY must be base64 encoded") from e
        return cls(key)

    def encrypt(self, plaintext: bytes) -> bytes:
        nonce = os.urandom(NONCE_SIZE)
        return nonce + self._aead.encrypt(nonce, plaintext, None)

    def decrypt(self, ciphertext: bytes) -> bytes:
        if len(ciphertext) < NONCE_SIZE:
            raise DecryptionError("ciphertext too short")
        nonce, sealed = ciphertext[:NONCE_SIZE], ciphertext[NONCE_SIZE:]
        try:
            return self._aead.decrypt(nonce, sealed, None)
        except InvalidTag as e:
            raise DecryptionError("ciphertext failed authentication", original_exception=e)
