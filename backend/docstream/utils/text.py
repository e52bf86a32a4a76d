"""Text processing helpers."""

from __future__ import annotations

import re


_INLINE_SPACE_RE = re.compile(r"[ \t\f\v\r]+")
_PARAGRAPH_RE = re.compile(r"\n\s*\n")


def normalize_paragraphs(text: str) -> str:
    """Collapse whitespace inside paragraphs but keep blank-line paragraph breaks."""
    paragraphs = []
    for block in _PARAGRAPH_RE.split(text):
        lines = [_INLINE_SPACE_RE.sub(" ", line).strip() for line in block.split("\n")]
        joined = " ".join(line for line in lines if line)
        if joined:
            paragraphs.append(joined)
    return "\n\n".join(paragraphs)


def count_words(text: str) -> int:
    """Count whitespace-delimited tokens."""
    return len(text.split())
