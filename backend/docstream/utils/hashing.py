"""Hashing utilities."""

from __future__ import annotations

import hashlib
from typing import Iterable


def sha256_bytes(data: bytes) -> str:
    """Return hex digest for bytes input."""
    return hashlib.sha256(data).hexdigest()


def sha256_parts(parts: Iterable[bytes]) -> str:
    """Return hex digest for a sequence of byte parts hashed in order."""
    h = hashlib.sha256()
    for part in parts:
        h.update(part)
    return h.hexdigest()
