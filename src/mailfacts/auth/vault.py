"""Credential vault for provider OAuth tokens.

Tokens are encrypted with Fernet (AES-128-CBC + HMAC-SHA256) before they are
written to the store. The Fernet key is derived from the operator-supplied
passphrase in ``TOKEN_ENCRYPTION_KEY``.

Decryption is deliberately forgiving: a token written under a different key,
or a corrupted value, decrypts to "" so callers treat it as "no credential"
and refresh or fail with an authentication error.
"""

import base64
import hashlib
import os

from cryptography.fernet import Fernet, InvalidToken

from mailfacts.core.errors import VaultKeyError
from mailfacts.core.logging import get_logger

logger = get_logger(__name__)

VAULT_KEY_ENV = "TOKEN_ENCRYPTION_KEY"
MIN_KEY_LENGTH = 32


class CredentialVault:
    """Symmetric encrypt/decrypt of credential strings.

    Usage:
        vault = CredentialVault.from_env()
        stored = vault.encrypt(refresh_token)
        refresh_token = vault.decrypt(stored)
    """

    def __init__(self, key: str):
        if not key or len(key) < MIN_KEY_LENGTH:
            raise VaultKeyError(
                f"{VAULT_KEY_ENV} must be at least {MIN_KEY_LENGTH} characters. "
                "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(48))\""
            )
        digest = hashlib.sha256(key.encode("utf-8")).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(digest))

    @classmethod
    def from_env(cls) -> "CredentialVault":
        """Build a vault from the TOKEN_ENCRYPTION_KEY environment variable."""
        return cls(os.environ.get(VAULT_KEY_ENV, ""))

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a credential. The empty string encrypts to the empty string."""
        if not plaintext:
            return ""
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a credential, returning "" if it cannot be decrypted."""
        if not ciphertext:
            return ""
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError):
            logger.warning("credential_decrypt_failed", ciphertext_length=len(ciphertext))
            return ""
