"""Webhook-key hashing and Fernet encryption of stored channel credentials."""

import hashlib
import hmac
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from app.config import settings
from app.logging_config import get_logger

logger = get_logger("crypto_service")


class CredentialError(Exception):
    """Stored channel credentials could not be decrypted or the key is missing."""


def hash_webhook_key(webhook_key: str) -> str:
    return hashlib.sha256(webhook_key.encode("utf-8")).hexdigest()


def verify_webhook_key(webhook_key: str, stored_hash: Optional[str]) -> bool:
    if not webhook_key or not stored_hash:
        return False
    return hmac.compare_digest(hash_webhook_key(webhook_key), stored_hash.strip().lower())


def _get_fernet(keys: Optional[str] = None) -> MultiFernet:
    """Comma-separated keys; the first encrypts, all are tried on decrypt (rotation)."""
    raw = keys if keys is not None else settings.credential_encryption_key
    key_list = [k.strip() for k in (raw or "").split(",") if k.strip()]
    if not key_list:
        raise CredentialError("CREDENTIAL_ENCRYPTION_KEY not configured")
    try:
        return MultiFernet([Fernet(k.encode("utf-8")) for k in key_list])
    except (ValueError, TypeError) as e:
        logger.error(f"Invalid credential encryption key: {e}")
        raise CredentialError(f"Invalid encryption key: {e}") from e


def encrypt_secret(value: str, keys: Optional[str] = None) -> bytes:
    if not value:
        raise CredentialError("Secret must be a non-empty string")
    return _get_fernet(keys).encrypt(value.encode("utf-8"))


def decrypt_secret(token: Optional[bytes], keys: Optional[str] = None) -> str:
    if not token:
        raise CredentialError("Encrypted secret is empty")
    if isinstance(token, memoryview):
        token = token.tobytes()
    try:
        return _get_fernet(keys).decrypt(bytes(token)).decode("utf-8")
    except InvalidToken as e:
        raise CredentialError("Invalid or corrupted credential") from e


def generate_key() -> str:
    return Fernet.generate_key().decode("utf-8")
