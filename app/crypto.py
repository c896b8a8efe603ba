"""
At-rest protection for the Shopify access token.

The token is stored as a Fernet ciphertext under ``shopify_token``. The key
comes from CONFIG_ENCRYPTION_KEY (environment first, then settings). A value
that is not a valid Fernet key is treated as a passphrase and stretched to
one. Neither the token nor the key is ever written to the log.
"""
from __future__ import annotations

import base64
import logging
import os

from cryptography.fernet import Fernet, InvalidToken

from app.config import get_settings

logger = logging.getLogger(__name__)

_fernet: Fernet | None = None


def _configured_key() -> str:
    value = os.environ.get("CONFIG_ENCRYPTION_KEY") or get_settings().config_encryption_key
    return (value or "").strip()


def _key_from_passphrase(passphrase: str) -> bytes:
    return base64.urlsafe_b64encode(passphrase[:32].ljust(32).encode())


def _get_fernet() -> Fernet:
    global _fernet
    if _fernet is not None:
        return _fernet

    key = _configured_key()
    if not key:
        raise RuntimeError(
            "No token encryption key: set CONFIG_ENCRYPTION_KEY to a Fernet key "
            "(cryptography.fernet.Fernet.generate_key()) or a passphrase"
        )
    try:
        _fernet = Fernet(key.encode())
    except ValueError:
        logger.info("CONFIG_ENCRYPTION_KEY is not a Fernet key; deriving one from it")
        _fernet = Fernet(_key_from_passphrase(key))
    return _fernet


def reset_key_cache() -> None:
    """Forget the cached cipher so the next call re-reads the key."""
    global _fernet
    _fernet = None


def encrypt(plaintext: str) -> str:
    """Ciphertext for *plaintext* as text. Empty stays empty."""
    if not plaintext:
        return ""
    return _get_fernet().encrypt(plaintext.encode()).decode()


def decrypt(ciphertext: str) -> str:
    """
    Plaintext for a value produced by ``encrypt``. Raises InvalidToken when
    the value was written under another key or has been altered.
    """
    if not ciphertext:
        return ""
    try:
        return _get_fernet().decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        logger.error("Stored access token could not be decrypted with the configured key")
        raise


def mask(secret: str | None) -> str:
    """Last four characters of *secret*, for status output."""
    if not secret:
        return ""
    return "…" + secret[-4:] if len(secret) > 8 else "…"
