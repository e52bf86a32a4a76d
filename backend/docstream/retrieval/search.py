"""Search orchestration."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Sequence

import orjson

from docstream.core.config import Settings
from docstream.core.errors import DocumentNotFound
from docstream.core.metrics import REQUEST_COUNT, REQUEST_LATENCY
from docstream.db.sqlite import SQLiteDatabase
from docstream.ingest.embeddings import EmbeddingCapability
from docstream.retrieval.vector_index import EmbeddingIndex, SearchResult


@dataclass(slots=True)
class WindowHit:
    document_id: str
    window_index: int
    filename: str
    display_name: str | None
    text: str
    start_offset: int
    end_offset: int
    word_count: int
    meta: dict[str, Any]
    score: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "document_id": self.document_id,
            "window_index": self.window_index,
            "filename": self.filename,
            "display_name": self.display_name,
            "text": self.text,
            "start_offset": self.start_offset,
            "end_offset": self.end_offset,
            "word_count": self.word_count,
            "meta": self.meta,
            "score": self.score,
        }


class QueryService:
    """Embeds queries, ranks windows through the index, and hydrates them from SQLite."""

    def __init__(
        self,
        db: SQLiteDatabase,
        settings: Settings,
        vector_index: EmbeddingIndex,
        embedding_model: EmbeddingCapability,
    ) -> None:
        self.db = db
        self.settings = settings
        self.vector_index = vector_index
        self.embedding_model = embedding_model

    def query(
        self,
        query_text: str,
        k: int | None = None,
        threshold: float | None = None,
    ) -> dict[str, Any]:
        start_time = time.perf_counter()
        top_k = k or self.settings.top_k
        min_score = self.settings.query_threshold if threshold is None else threshold
        vector = self.embedding_model.embed(query_text)
        hits = self.vector_index.query(vector, self.embedding_model.model_name, top_k, min_score)
        results = self._hydrate(hits)

        duration = time.perf_counter() - start_time
        REQUEST_LATENCY.labels(endpoint="query", method="POST").observe(duration)
        REQUEST_COUNT.labels(endpoint="query", method="POST", status="200").inc()
        return {
            "query": query_text,
            "model": self.embedding_model.model_name,
            "threshold": min_score,
            "results": [hit.to_dict() for hit in results],
        }

    def similar_documents(
        self,
        document_id: str,
        k: int = 5,
        threshold: float | None = None,
    ) -> dict[str, Any]:
        row = self.db.query_one("SELECT id FROM documents WHERE id = ?", [document_id])
        if row is None:
            raise DocumentNotFound(f"Document {document_id} not found")
        min_score = self.settings.query_threshold if threshold is None else threshold
        matches = self.vector_index.similar_documents(document_id, self.embedding_model.model_name, k, min_score)
        names = self._document_names([match.document_id for match in matches])
        return {
            "document_id": document_id,
            "results": [
                {
                    "document_id": match.document_id,
                    "filename": names.get(match.document_id, (None, None))[0],
                    "display_name": names.get(match.document_id, (None, None))[1],
                    "score": match.score,
                }
                for match in matches
                if match.document_id in names
            ],
        }

    # ------------------------------------------------------------------

    def _hydrate(self, hits: Sequence[SearchResult]) -> list[WindowHit]:
        if not hits:
            return []
        clauses = " OR ".join("(w.document_id = ? AND w.window_index = ?)" for _ in hits)
        params: list[Any] = []
        for hit in hits:
            params.extend([hit.window_ref.document_id, hit.window_ref.index])
        rows = self.db.query(
            f"""
            SELECT
              w.document_id,
              w.window_index,
              w.text,
              w.start_offset,
              w.end_offset,
              w.word_count,
              w.meta_json,
              d.filename,
              d.display_name
            FROM text_windows w
            JOIN documents d ON d.id = w.document_id
            WHERE {clauses}
            """,
            params,
        )
        row_map = {(row["document_id"], row["window_index"]): row for row in rows}
        results: list[WindowHit] = []
        for hit in hits:
            row = row_map.get((hit.window_ref.document_id, hit.window_ref.index))
            if not row:
                continue
            results.append(
                WindowHit(
                    document_id=row["document_id"],
                    window_index=row["window_index"],
                    filename=row["filename"],
                    display_name=row["display_name"],
                    text=row["text"],
                    start_offset=row["start_offset"],
                    end_offset=row["end_offset"],
                    word_count=row["word_count"],
                    meta=orjson.loads(row["meta_json"]) if row["meta_json"] else {},
                    score=hit.score,
                )
            )
        return results

    def _document_names(self, document_ids: Sequence[str]) -> dict[str, tuple[str, str | None]]:
        if not document_ids:
            return {}
        placeholders = ",".join("?" for _ in document_ids)
        rows = self.db.query(
            f"SELECT id, filename, display_name FROM documents WHERE id IN ({placeholders})",
            list(document_ids),
        )
        return {row["id"]: (row["filename"], row["display_name"]) for row in rows}


__all__ = ["QueryService", "WindowHit"]
