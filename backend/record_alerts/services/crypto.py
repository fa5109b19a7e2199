"""Fernet encryption for API tokens persisted in api_tokens."""

import logging

from cryptography.fernet import Fernet, InvalidToken

from record_alerts.config import settings

logger = logging.getLogger(__name__)


def get_fernet() -> Fernet | None:
    if not settings.encryption_key:
        return None
    return Fernet(settings.encryption_key.encode())


def encrypt_token(value: str | None) -> str:
    if not value:
        return ""
    f = get_fernet()
    if f is None:
        return value  # dev: no key, stored as-is
    return f.encrypt(value.encode()).decode()


def decrypt_token(stored: str | None) -> str:
    """Return the plaintext token, or "" when it cannot be decrypted (rotated key, corrupt row)."""
    if not stored:
        return ""
    f = get_fernet()
    if f is None:
        return stored
    try:
        return f.decrypt(stored.encode()).decode()
    except InvalidToken:
        logger.warning("Stored API token could not be decrypted; it will be replaced on next login")
        return ""
