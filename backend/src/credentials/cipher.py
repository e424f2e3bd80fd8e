"""AES-256-GCM cipher for stored credentials.

Storage format: base64(nonce (12 bytes) + ciphertext + auth tag (16 bytes)).

Key material comes from ENCRYPTION_KEY. When its UTF-8 encoding is exactly
32 bytes it is used as-is; otherwise the key is SHA-256(material).
"""

import base64
import binascii
import hashlib
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from config import settings

logger = logging.getLogger(__name__)

NONCE_SIZE = 12
KEY_SIZE = 32


class EncryptionError(Exception):
    """Raised when encryption or decryption fails."""
    pass


def derive_key(key_material: str) -> bytes:
    """Derive the 256-bit AES key from configured key material.

    Raises:
        EncryptionError: If key material is empty
    """
    if not key_material:
        raise EncryptionError("ENCRYPTION_KEY is not set")
    raw = key_material.encode("utf-8")
    if len(raw) == KEY_SIZE:
        return raw
    return hashlib.sha256(raw).digest()


class CredentialCipher:
    """Encrypts and decrypts credential strings.

    Example:
        cipher = CredentialCipher("my-key-material")
        token = cipher.encrypt("client-secret")
        assert cipher.decrypt(token) == "client-secret"
    """

    def __init__(self, key_material: Optional[str] = None):
        self._key = derive_key(key_material if key_material is not None else settings.ENCRYPTION_KEY)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt plaintext and return the base64 storage form.

        Raises:
            EncryptionError: If plaintext is None or encryption fails
        """
        if plaintext is None:
            raise EncryptionError("Cannot encrypt None")

        # Random 96-bit nonce per operation
        nonce = os.urandom(NONCE_SIZE)
        try:
            ciphertext = AESGCM(self._key).encrypt(nonce, plaintext.encode("utf-8"), None)
        except (TypeError, ValueError) as e:
            logger.error("Credential encryption failed", extra={"error": str(e)})
            raise EncryptionError(f"Failed to encrypt credential: {e}") from e

        return base64.b64encode(nonce + ciphertext).decode("ascii")

    def decrypt(self, token: str) -> str:
        """Decrypt a base64 storage form back to plaintext.

        Raises:
            EncryptionError: If the token is malformed, tampered with or was
                encrypted under another key
        """
        try:
            data = base64.b64decode(token.encode("ascii"), validate=True)
        except (binascii.Error, ValueError, AttributeError) as e:
            raise EncryptionError(f"Encrypted value is not valid base64: {e}") from e

        # GCM tag alone is 16 bytes, so an empty plaintext is still nonce + 16
        if len(data) < NONCE_SIZE + 16:
            raise EncryptionError("Encrypted value is too short (missing nonce or tag)")

        nonce, ciphertext = data[:NONCE_SIZE], data[NONCE_SIZE:]
        try:
            plaintext = AESGCM(self._key).decrypt(nonce, ciphertext, None)
        except InvalidTag as e:
            logger.error("Credential decryption failed: authentication tag verification failed")
            raise EncryptionError(
                "Decryption failed: data has been tampered with or wrong encryption key"
            ) from e

        return plaintext.decode("utf-8")
