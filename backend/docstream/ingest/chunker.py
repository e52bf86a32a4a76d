"""Chunking utilities."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Literal

from docstream.core.errors import InvalidStrategy
from docstream.utils.text import count_words

ChunkMode = Literal["granular", "standard"]

_PARAGRAPH_RE = re.compile(r"\n\s*\n")
_SENTENCE_RE = re.compile(r"[.!?][\"')\]]*\s+")
_HEADER_RE = re.compile(r"^(#{1,6}\s+.+|.+\n[-=]{3,})$", re.MULTILINE)
_BULLET_RE = re.compile(r"^\s*([-*•]|\d+\.)\s+", re.MULTILINE)
_QUOTE_RE = re.compile(r"\"[^\"]{10,}\"|“[^”]{10,}”")

MODE_PRESETS: dict[str, tuple[int, int]] = {
    # mode -> (target_size, overlap) in characters
    "granular": (600, 100),
    "standard": (2000, 200),
}


@dataclass(frozen=True, slots=True)
class ChunkStrategy:
    """How a document's text is split into windows.

    ``lookback`` bounds how far before the hard cut a paragraph or sentence
    boundary is searched for; it defaults to a fifth of ``target_size``.
    """

    target_size: int
    overlap: int
    mode: ChunkMode = "standard"
    lookback: int | None = None

    @classmethod
    def for_mode(cls, mode: str, target_size: int | None = None, overlap: int | None = None) -> "ChunkStrategy":
        if mode not in MODE_PRESETS:
            raise InvalidStrategy(f"Unknown chunking mode {mode!r}")
        preset_target, preset_overlap = MODE_PRESETS[mode]
        return cls(
            target_size=target_size if target_size is not None else preset_target,
            overlap=overlap if overlap is not None else preset_overlap,
            mode=mode,  # type: ignore[arg-type]
        )

    def validate(self) -> None:
        if self.mode not in MODE_PRESETS:
            raise InvalidStrategy(f"Unknown chunking mode {self.mode!r}")
        if self.target_size <= 0:
            raise InvalidStrategy("target_size must be positive")
        if self.overlap < 0:
            raise InvalidStrategy("overlap cannot be negative")
        if self.overlap >= self.target_size:
            raise InvalidStrategy(
                f"overlap ({self.overlap}) must be smaller than target_size ({self.target_size})"
            )
        if self.lookback is not None and self.lookback < 0:
            raise InvalidStrategy("lookback cannot be negative")

    @property
    def effective_lookback(self) -> int:
        if self.lookback is not None:
            return self.lookback
        return max(1, self.target_size // 5)


@dataclass(frozen=True, slots=True)
class WindowRef:
    document_id: str
    index: int

    def __str__(self) -> str:
        return f"{self.document_id}:{self.index}"


@dataclass(frozen=True, slots=True)
class TextWindow:
    document_id: str
    index: int
    text: str
    start_offset: int
    end_offset: int
    word_count: int
    meta: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def ref(self) -> WindowRef:
        return WindowRef(self.document_id, self.index)


class DocumentChunker:
    """Split document text into ordered, optionally overlapping windows."""

    def __init__(self, default_strategy: ChunkStrategy | None = None) -> None:
        self.default_strategy = default_strategy or ChunkStrategy.for_mode("standard")

    def chunk(
        self,
        document_id: str,
        text: str,
        strategy: ChunkStrategy | None = None,
    ) -> list[TextWindow]:
        strategy = strategy or self.default_strategy
        strategy.validate()
        return [
            TextWindow(
                document_id=document_id,
                index=index,
                text=text[start:end],
                start_offset=start,
                end_offset=end,
                word_count=count_words(text[start:end]),
                meta=analyze_window_content(text[start:end]),
            )
            for index, (start, end) in enumerate(window_spans(text, strategy))
        ]


def window_spans(text: str, strategy: ChunkStrategy) -> list[tuple[int, int]]:
    """Return ``(start, end)`` character spans covering ``text`` in reading order."""
    strategy.validate()
    if not text.strip():
        return []

    length = len(text)
    lookback = strategy.effective_lookback
    spans: list[tuple[int, int]] = []
    start = 0
    previous_end = 0

    while start < length:
        hard_end = min(start + strategy.target_size, length)
        end = hard_end
        if hard_end < length:
            floor = max(start + 1, previous_end + 1, hard_end - lookback)
            boundary = _find_boundary(text, floor, hard_end)
            if boundary is not None:
                end = boundary
        spans.append((start, end))
        if end >= length:
            break
        previous_end = end
        start = max(end - strategy.overlap, start + 1)

    return spans


def _find_boundary(text: str, floor: int, ceiling: int) -> int | None:
    """Last paragraph break, else last sentence end, within ``(floor, ceiling]``."""
    if floor >= ceiling:
        return None
    region_start = max(0, floor - 1)
    region = text[region_start:ceiling]
    for pattern in (_PARAGRAPH_RE, _SENTENCE_RE):
        best = None
        for match in pattern.finditer(region):
            position = region_start + match.end()
            if floor <= position <= ceiling:
                best = position
        if best is not None:
            return best
    return None


def analyze_window_content(text: str) -> dict[str, Any]:
    has_headers = bool(_HEADER_RE.search(text))
    has_bullets = bool(_BULLET_RE.search(text))
    has_quotes = bool(_QUOTE_RE.search(text))
    if has_headers and has_bullets:
        content_type = "mixed"
    elif has_bullets:
        content_type = "list"
    else:
        content_type = "narrative"
    return {
        "has_headers": has_headers,
        "has_bullet_points": has_bullets,
        "has_quotes": has_quotes,
        "content_type": content_type,
    }


__all__ = [
    "ChunkStrategy",
    "DocumentChunker",
    "TextWindow",
    "WindowRef",
    "MODE_PRESETS",
    "window_spans",
    "analyze_window_content",
]
