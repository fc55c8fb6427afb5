"""
Hashing Utilities for DeepGuard
===============================
Deterministic hashing helpers shared by the forensics services.

Features:
- Canonical (sorted-key) JSON serialization
- Order-independent pattern signatures
- SHA-256 helpers for bytes and strings
"""

import hashlib
import json
from typing import Any


def hash_bytes(data: bytes) -> str:
    """
    Calculates SHA-256 hash of bytes.

    Args:
        data: Bytes to hash

    Returns:
        Hex digest of the SHA-256 hash
    """
    return hashlib.sha256(data).hexdigest()


def hash_string(data: str) -> str:
    """
    Calculates SHA-256 hash of a string.

    Args:
        data: String to hash

    Returns:
        Hex digest of the SHA-256 hash
    """
    return hashlib.sha256(data.encode('utf-8')).hexdigest()


def canonical_json(data: Any) -> str:
    """
    Serializes data to its canonical JSON form.

    Keys are sorted at every nesting level and separators are compact,
    so two structurally equal payloads always produce the same string.
    Values JSON cannot represent natively are stringified.
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(',', ':'),
        ensure_ascii=False,
        default=str
    )


def hash_pattern(data: Any) -> str:
    """
    Computes the deduplication signature of a pattern payload.

    Args:
        data: JSON-compatible payload (any key order)

    Returns:
        SHA-256 hex digest of the canonical JSON form
    """
    return hash_string(canonical_json(data))


def validate_hash_format(hash_str: str) -> bool:
    """
    Validates that a string is a valid SHA-256 hex hash.

    Args:
        hash_str: String to validate

    Returns:
        True if valid SHA-256 hash format
    """
    if not hash_str or len(hash_str) != 64:
        return False

    try:
        int(hash_str, 16)
        return True
    except ValueError:
        return False


def truncate_text(text: str, limit: int) -> str:
    """Returns at most `limit` characters of text."""
    return text[:limit] if text else text
