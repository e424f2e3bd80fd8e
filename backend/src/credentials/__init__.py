"""Encrypted credential storage."""

from .cipher import CredentialCipher, EncryptionError
from .vault import CredentialNotFoundError, CredentialVault

__all__ = ["CredentialCipher", "CredentialVault", "CredentialNotFoundError", "EncryptionError"]
