"""
Token encryption service for secure storage of OAuth tokens
"""
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class TokenEncryptionService:
    """Encrypts and decrypts OAuth tokens for secure storage."""

    def __init__(self, key: Optional[str] = None):
        if not key:
            # Tokens written with a generated key are unreadable after restart
            logger.warning("No ENCRYPTION_KEY configured, generating an ephemeral key")
            key = Fernet.generate_key().decode()
        self.cipher = Fernet(key.encode() if isinstance(key, str) else key)

    def encrypt(self, token: str) -> str:
        """Encrypt a token to a string."""
        return self.cipher.encrypt(token.encode()).decode()

    def decrypt(self, encrypted_token: str) -> str:
        """Decrypt a stored token."""
        try:
            return self.cipher.decrypt(encrypted_token.encode()).decode()
        except InvalidToken:
            logger.error("Error decrypting token: ciphertext invalid or key rotated")
            raise

