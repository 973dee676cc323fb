"""Hashing helpers shared by proofs, credentials, storage and the ledger."""

import hashlib
import json
from typing import Any, Union


def canonical_json(value: Any) -> str:
    """Compact, key-sorted JSON used wherever a structure is hashed."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def sha256_hex(value: Union[str, bytes]) -> str:
    """SHA-256 digest as lowercase hex."""
    if isinstance(value, str):
        value = value.encode("utf-8")
    return hashlib.sha256(value).hexdigest()


def hash_json(value: Any) -> str:
    """SHA-256 of the canonical JSON form of ``value``."""
    return sha256_hex(canonical_json(value))
