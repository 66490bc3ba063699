"""
Encryption for provider OAuth tokens stored on integrations.

Access and refresh tokens are Fernet-encrypted before they reach the
integrations table and decrypted only when a provider call needs them.
"""

import logging
from typing import Optional
from cryptography.fernet import Fernet, InvalidToken
from app.core.config import settings

logger = logging.getLogger(__name__)


class TokenDecryptionError(Exception):
    """Stored token could not be decrypted with the configured key."""
    pass


class TokenCipher:
    """
    Symmetric cipher for integration secrets.

    Without ENCRYPTION_KEY the cipher is a pass-through so local development
    works; a warning is logged once at startup.
    """

    def __init__(self, key: Optional[str] = None):
        key = settings.ENCRYPTION_KEY if key is None else key
        if not key:
            logger.warning(
                "ENCRYPTION_KEY not set. Integration tokens will be stored unencrypted."
            )
            self._fernet = None
        else:
            self._fernet = Fernet(key.encode())

    @property
    def enabled(self) -> bool:
        return self._fernet is not None

    def encrypt(self, token: Optional[str]) -> Optional[str]:
        if token is None or not self._fernet:
            return token
        return self._fernet.encrypt(token.encode()).decode()

    def decrypt(self, stored: Optional[str]) -> Optional[str]:
        if stored is None or not self._fernet:
            return stored
        try:
            return self._fernet.decrypt(stored.encode()).decode()
        except InvalidToken as e:
            logger.error("Integration token could not be decrypted; was ENCRYPTION_KEY rotated?")
            raise TokenDecryptionError("Stored integration token is unreadable") from e


# Singleton instance
token_cipher = TokenCipher()
