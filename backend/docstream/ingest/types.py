"""Common ingestion data structures."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from docstream.ingest.chunker import ChunkStrategy


@dataclass(slots=True)
class ProcessingOptions:
    """What the worker does with a document once its text is extracted.

    ``chunk_mode`` picks the window preset; ``target_size`` and ``overlap``
    override the preset when given.
    """

    analyze: bool = True
    extract_themes: bool = True
    extract_quotes: bool = True
    extract_entities: bool = True
    generate_insights: bool = True
    generate_embeddings: bool = True
    chunk_mode: Literal["granular", "standard"] = "standard"
    target_size: int | None = None
    overlap: int | None = None
    source: str = "upload"
    category: str = "general"
    tags: list[str] = field(default_factory=list)

    def strategy(self) -> ChunkStrategy:
        strategy = ChunkStrategy.for_mode(self.chunk_mode, self.target_size, self.overlap)
        strategy.validate()
        return strategy

    def cost_factor(self) -> float:
        """Relative processing cost, used only for duration estimates."""
        factor = 1.0
        if self.analyze:
            factor *= 3
        if self.analyze and self.generate_insights:
            factor *= 2
        if self.analyze and self.extract_entities:
            factor *= 1.5
        if self.generate_embeddings:
            factor *= 1.5
        if self.chunk_mode == "granular":
            factor *= 1.25
        return factor

    def to_dict(self) -> dict[str, Any]:
        return {
            "analyze": self.analyze,
            "extract_themes": self.extract_themes,
            "extract_quotes": self.extract_quotes,
            "extract_entities": self.extract_entities,
            "generate_insights": self.generate_insights,
            "generate_embeddings": self.generate_embeddings,
            "chunk_mode": self.chunk_mode,
            "target_size": self.target_size,
            "overlap": self.overlap,
            "source": self.source,
            "category": self.category,
            "tags": list(self.tags),
        }


@dataclass(slots=True)
class DocumentPayload:
    """Job payload for one document processing pass."""

    document_id: str
    data: bytes
    filename: str
    display_name: str
    options: ProcessingOptions

    @property
    def size_bytes(self) -> int:
        return len(self.data)


@dataclass(slots=True)
class ExtractedDocument:
    """Text and metadata pulled out of an uploaded file."""

    text: str
    mime: str
    title: str | None
    page_count: int
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ProcessingSummary:
    document_id: str
    windows: int
    embedded: int
    word_count: int
    page_count: int
    analysis: dict[str, list[str]]

    def to_dict(self) -> dict[str, Any]:
        return {
            "document_id": self.document_id,
            "windows": self.windows,
            "embedded": self.embedded,
            "word_count": self.word_count,
            "page_count": self.page_count,
            "analysis": self.analysis,
        }


def validate_options(options: ProcessingOptions) -> None:
    """Raise ``InvalidStrategy`` early, before the job is queued."""
    options.strategy()


__all__ = [
    "ProcessingOptions",
    "DocumentPayload",
    "ExtractedDocument",
    "ProcessingSummary",
    "validate_options",
]
