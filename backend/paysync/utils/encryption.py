"""Encryption utilities for provider tokens at rest.

Encrypted values carry a version prefix (``enc:v1:``) so rows written before
encryption was introduced can be recognised and upgraded in place.
"""
import logging
from typing import Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken

from paysync.core.config import settings
from paysync.core.exceptions import CredentialDecryptError

logger = logging.getLogger(__name__)

ENCRYPTED_PREFIX = "enc:v1:"

_cipher = None


def get_cipher() -> Fernet:
    """Build the Fernet cipher from ENCRYPTION_KEY on first use"""
    global _cipher
    if _cipher is None:
        key = settings.ENCRYPTION_KEY
        if not key:
            raise ValueError(
                "ENCRYPTION_KEY environment variable is required. "
                "Generate one with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
            )
        try:
            _cipher = Fernet(key.encode() if isinstance(key, str) else key)
        except ValueError as e:
            raise ValueError(
                f"Invalid ENCRYPTION_KEY format: {e}. "
                "The key must be 32 bytes, base64-encoded (URL-safe), resulting in 44 characters."
            )
    return _cipher


def reset_cipher() -> None:
    """Forget the cached cipher (key rotation, tests)"""
    global _cipher
    _cipher = None


def is_encrypted(value: Optional[str]) -> bool:
    return bool(value) and value.startswith(ENCRYPTED_PREFIX)


def encrypt(plaintext: str) -> str:
    """Encrypt a string and tag it with the version prefix"""
    if not plaintext:
        return ""
    return ENCRYPTED_PREFIX + get_cipher().encrypt(plaintext.encode()).decode()


def decrypt(ciphertext: str) -> Optional[str]:
    """Decrypt a prefixed value

    Raises:
        CredentialDecryptError: If decryption fails (invalid token, wrong key, corrupted data)
    """
    if not ciphertext:
        return None
    if not is_encrypted(ciphertext):
        raise CredentialDecryptError("Value is not in the encrypted format")
    try:
        return get_cipher().decrypt(ciphertext[len(ENCRYPTED_PREFIX):].encode()).decode()
    except (InvalidToken, ValueError, UnicodeDecodeError) as e:
        logger.error(f"Decryption failed: {type(e).__name__}: {str(e)}")
        raise CredentialDecryptError(f"Decryption failed: {type(e).__name__}")


def read_stored_token(value: Optional[str]) -> Tuple[Optional[str], bool]:
    """Return ``(plaintext, is_legacy)`` for a stored token.

    Values without the prefix are legacy plaintext and are returned unchanged
    with ``is_legacy=True`` so the caller can re-encrypt them.
    """
    if not value:
        return None, False
    if is_encrypted(value):
        return decrypt(value), False
    return value, True
