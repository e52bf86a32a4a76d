"""ID helpers."""

from __future__ import annotations

import uuid

from docstream.utils.time import now_ms


def new_id(prefix: str | None = None, timestamped: bool = False) -> str:
    """Generate a random UUID4 string with optional prefix.

    Timestamped ids embed the creation time in milliseconds so they sort
    roughly by age, which keeps job and upload ids readable in logs.
    """
    base = uuid.uuid4().hex
    if timestamped:
        base = f"{now_ms()}_{base[:12]}"
    return f"{prefix}_{base}" if prefix else base
