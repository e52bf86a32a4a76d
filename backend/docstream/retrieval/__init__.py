"""Retrieval orchestration components."""

from .vector_index import DocumentMatch, EmbeddingIndex, SearchResult
from .search import QueryService

__all__ = [
    "EmbeddingIndex",
    "SearchResult",
    "DocumentMatch",
    "QueryService",
]
