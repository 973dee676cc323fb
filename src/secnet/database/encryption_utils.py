"""
Column-level encryption utilities.

Audit metadata and other sensitive columns are encrypted with AES-256-GCM
before they reach the database. The key comes from the DB_ENCRYPTION_KEY
environment variable; it is stretched to 256 bits with SHA-256.

Stored format: base64(iv || ciphertext || tag)
"""

import base64
import hashlib
import json
import logging
import os
import secrets
from typing import Any, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)

ENCRYPTION_KEY_ENV = "DB_ENCRYPTION_KEY"
IV_SIZE = 12  # 96 bits, recommended for GCM
_DEVELOPMENT_KEY = "development-only-db-encryption-key"


def get_encryption_key() -> str:
    """
    Get the column encryption key from the environment.

    Raises:
        RuntimeError: if the key is missing in production
    """
    key = os.getenv(ENCRYPTION_KEY_ENV)
    if key:
        return key

    if os.getenv("FLASK_ENV") == "production":
        raise RuntimeError(f"{ENCRYPTION_KEY_ENV} must be set in production")

    logger.warning(f"{ENCRYPTION_KEY_ENV} not set, using development key")
    return _DEVELOPMENT_KEY


def _derive_aes_key(key: str) -> bytes:
    return hashlib.sha256(key.encode("utf-8")).digest()


def encrypt_column_data(plaintext: str, key: Optional[str] = None) -> str:
    """
    Encrypt a string for storage in a text column.

    Args:
        plaintext: Value to encrypt
        key: Optional key (defaults to DB_ENCRYPTION_KEY)

    Returns:
        Base64 string containing iv, ciphertext and tag
    """
    aes = AESGCM(_derive_aes_key(key or get_encryption_key()))
    iv = secrets.token_bytes(IV_SIZE)
    ciphertext = aes.encrypt(iv, plaintext.encode("utf-8"), None)
    return base64.b64encode(iv + ciphertext).decode("ascii")


def decrypt_column_data(encrypted: str, key: Optional[str] = None) -> str:
    """
    Decrypt a value produced by encrypt_column_data.

    Raises:
        ValueError: if the value is malformed or the key is wrong
    """
    try:
        raw = base64.b64decode(encrypted.encode("ascii"), validate=True)
    except (ValueError, UnicodeEncodeError) as e:
        raise ValueError(f"Malformed encrypted value: {e}")

    if len(raw) <= IV_SIZE:
        raise ValueError("Malformed encrypted value: too short")

    aes = AESGCM(_derive_aes_key(key or get_encryption_key()))
    try:
        plaintext = aes.decrypt(raw[:IV_SIZE], raw[IV_SIZE:], None)
    except InvalidTag:
        raise ValueError("Decryption failed: wrong key or tampered data")
    return plaintext.decode("utf-8")


def encrypt_json_metadata(metadata: dict[str, Any], key: Optional[str] = None) -> str:
    """Serialize and encrypt a metadata dictionary."""
    return encrypt_column_data(json.dumps(metadata, default=str, sort_keys=True), key)


def decrypt_json_metadata(encrypted: str, key: Optional[str] = None) -> dict[str, Any]:
    """Decrypt and deserialize a metadata dictionary."""
    return json.loads(decrypt_column_data(encrypted, key))
