"""
Field-level encryption for ad-account OAuth tokens and provider API keys.

Uses Fernet symmetric encryption from the `cryptography` package, keyed by
ENCRYPTION_KEY. Without a key (development only) values are stored as-is.
"""

import logging
from typing import Optional
from cryptography.fernet import Fernet, InvalidToken
from app.config import get_settings

logger = logging.getLogger(__name__)

_fernet: Optional[Fernet] = None
_warned_plaintext = False


def _get_fernet() -> Optional[Fernet]:
    global _fernet, _warned_plaintext
    if _fernet is not None:
        return _fernet

    settings = get_settings()
    key = settings.encryption_key
    if not key:
        if settings.is_production:
            raise RuntimeError("ENCRYPTION_KEY must be set in production.")
        if not _warned_plaintext:
            logger.warning("ENCRYPTION_KEY not set; tokens and API keys are stored in plaintext (dev only).")
            _warned_plaintext = True
        return None

    try:
        _fernet = Fernet(key.encode())
    except ValueError as exc:
        raise RuntimeError(f"Invalid ENCRYPTION_KEY: {exc}") from exc
    return _fernet


def encrypt_value(plaintext: Optional[str]) -> Optional[str]:
    if plaintext is None:
        return None
    f = _get_fernet()
    if f is None:
        return plaintext
    return f.encrypt(plaintext.encode()).decode()


def decrypt_value(ciphertext: Optional[str]) -> Optional[str]:
    if ciphertext is None:
        return None
    f = _get_fernet()
    if f is None:
        return ciphertext
    try:
        return f.decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        # Rows written before a key was configured hold plaintext
        logger.warning("Stored secret is not a Fernet token; returning it unchanged.")
        return ciphertext


def mask_secret(value: Optional[str], visible: int = 4) -> Optional[str]:
    """'sk-abc...wxyz' style mask for showing a configured key in the UI."""
    if not value:
        return None
    if len(value) <= visible * 2:
        return "*" * len(value)
    return f"{value[:visible]}...{value[-visible:]}"
