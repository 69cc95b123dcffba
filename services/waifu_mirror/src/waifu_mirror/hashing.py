"""Content addressing for downloaded images."""

from __future__ import annotations

import hashlib
import re

# SHA-256 truncated to 128 bits, hex encoded.
HASH_BYTES = 16
HASH_LENGTH = HASH_BYTES * 2

_HASH_RE = re.compile(rf"[0-9a-f]{{{HASH_LENGTH}}}")


def content_hash(data: bytes) -> str:
    """Return the stable identifier used as dedup key and filename stem."""
    return hashlib.sha256(data).digest()[:HASH_BYTES].hex()


def is_content_hash(value: str) -> bool:
    """True when ``value`` has the exact shape produced by :func:`content_hash`."""
    return bool(_HASH_RE.fullmatch(value))


__all__ = ["HASH_LENGTH", "content_hash", "is_content_hash"]
