"""Fernet encryption for credentials parked in session_handoffs."""
from cryptography.fernet import Fernet, InvalidToken

from app.core.config import settings


class TokenCipher:
    """Encrypts and decrypts handoff tokens with the configured Fernet key."""

    def __init__(self, key: str | None = None) -> None:
        self.fernet = Fernet((key or settings.handoff_encryption_key).encode())

    def encrypt(self, plaintext: str) -> str:
        return self.fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """Raises cryptography.fernet.InvalidToken on tampering or a rotated key."""
        return self.fernet.decrypt(ciphertext.encode()).decode()


__all__ = ["TokenCipher", "InvalidToken"]
