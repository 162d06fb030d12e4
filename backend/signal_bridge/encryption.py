"""
Encryption utilities for exchange credentials at rest.

Uses Fernet symmetric encryption (AES-128-CBC with HMAC-SHA256). Secrets
are decrypted only while building an adapter and never written back in
plaintext.
"""

import logging

from cryptography.fernet import Fernet, InvalidToken

from signal_bridge.config import settings

logger = logging.getLogger(__name__)

_fernet = None


def _get_fernet() -> Fernet:
    """Get or create the Fernet instance from the configured encryption key."""
    global _fernet
    if _fernet is None:
        key = settings.encryption_key
        if not key:
            raise RuntimeError("ENCRYPTION_KEY not set in .env")
        _fernet = Fernet(key.encode() if isinstance(key, str) else key)
    return _fernet


def encrypt_value(plaintext: str) -> str:
    """Encrypt a secret (API key, private key, refresh token) for storage."""
    if not plaintext:
        return plaintext
    return _get_fernet().encrypt(plaintext.encode()).decode()


def decrypt_value(ciphertext: str) -> str:
    """Decrypt a stored secret. Raises InvalidToken on a wrong key."""
    if not ciphertext:
        return ciphertext
    try:
        return _get_fernet().decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        logger.error("Failed to decrypt credential: invalid token or wrong encryption key")
        raise


def is_encrypted(value: str) -> bool:
    """Fernet tokens start with 'gAAAAA'."""
    if not value:
        return False
    return value.startswith("gAAAAA")
