"""
Encryption at rest for platform access and refresh credentials.

Fernet (``cryptography``) keyed from ENCRYPTION_KEY. Several comma-separated
keys may be configured: the first encrypts and every key is tried on decrypt,
so any save of an account re-encrypts its credentials under the current key.

Without a key (development only) values pass through unchanged.
"""

import logging
from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from adsync.config import get_settings

logger = logging.getLogger(__name__)

_cipher: MultiFernet | None = None
_NO_KEY_WARNING_EMITTED = False


def _get_cipher() -> MultiFernet | None:
    global _cipher, _NO_KEY_WARNING_EMITTED
    if _cipher is not None:
        return _cipher

    settings = get_settings()
    keys = settings.encryption_keys

    if not keys:
        if settings.is_production:
            raise RuntimeError("ENCRYPTION_KEY must be set in production.")
        if not _NO_KEY_WARNING_EMITTED:
            logger.warning("ENCRYPTION_KEY not set, platform credentials are stored in plaintext (development only).")
            _NO_KEY_WARNING_EMITTED = True
        return None

    try:
        _cipher = MultiFernet([Fernet(key.encode()) for key in keys])
    except Exception as exc:
        raise RuntimeError(f"Invalid ENCRYPTION_KEY: {exc}") from exc

    return _cipher


def reset_cipher() -> None:
    """Drop the cached cipher so the next call re-reads the configured keys."""
    global _cipher
    _cipher = None


def encrypt_value(plaintext: str | None) -> str | None:
    if plaintext is None:
        return None
    cipher = _get_cipher()
    if cipher is None:
        return plaintext
    return cipher.encrypt(plaintext.encode()).decode()


def decrypt_value(ciphertext: str | None) -> str | None:
    if ciphertext is None:
        return None
    cipher = _get_cipher()
    if cipher is None:
        return ciphertext
    try:
        return cipher.decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        # Rows written before encryption was enabled hold plaintext
        logger.warning("Credential did not decrypt with any configured key, returning it as stored.")
        return ciphertext

