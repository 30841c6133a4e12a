"""Encryption utilities for bank credentials and card authorization codes"""
import logging
from typing import Optional
from cryptography.fernet import Fernet, InvalidToken
from creatorpay.core.config import settings
from creatorpay.core.exceptions import DecryptionError

logger = logging.getLogger(__name__)

_cipher = None

KEY_HELP = (
    "Generate one with: python -c \"from cryptography.fernet import Fernet; "
    "print(Fernet.generate_key().decode())\""
)


def get_cipher() -> Fernet:
    """Build the Fernet cipher from ENCRYPTION_KEY on first use"""
    global _cipher
    if _cipher is None:
        key = settings.ENCRYPTION_KEY
        if not key:
            raise ValueError(f"ENCRYPTION_KEY environment variable is required. {KEY_HELP}")
        try:
            _cipher = Fernet(key.encode() if isinstance(key, str) else key)
        except ValueError as e:
            raise ValueError(
                f"Invalid ENCRYPTION_KEY format: {e}. "
                f"The key must be 32 bytes, base64-encoded (URL-safe), resulting in 44 characters. {KEY_HELP}"
            )
    return _cipher


def encrypt(plaintext: Optional[str]) -> Optional[str]:
    """Encrypt a string; empty values stay empty"""
    if not plaintext:
        return None
    return get_cipher().encrypt(plaintext.encode()).decode()


def decrypt(ciphertext: Optional[str]) -> Optional[str]:
    """Decrypt a string

    Raises:
        DecryptionError: If decryption fails (invalid token, wrong key, corrupted data)
    """
    if not ciphertext:
        return None
    try:
        return get_cipher().decrypt(ciphertext.encode()).decode()
    except (InvalidToken, ValueError) as e:
        logger.error(f"Decryption failed: {type(e).__name__}")
        raise DecryptionError(f"Decryption failed: {type(e).__name__}")
