"""Vector index abstraction."""

from __future__ import annotations

import math
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Iterable, Sequence

from docstream.core.errors import DimensionMismatch
from docstream.core.metrics import INDEX_SIZE
from docstream.db.sqlite import SQLiteDatabase
from docstream.ingest.chunker import WindowRef
from docstream.ingest.embeddings import vector_from_bytes


@dataclass(frozen=True, slots=True)
class EmbeddingRecord:
    window_ref: WindowRef
    vector: tuple[float, ...]
    model: str
    norm: float
    seq: int


@dataclass(slots=True)
class SearchResult:
    window_ref: WindowRef
    score: float


@dataclass(slots=True)
class DocumentMatch:
    document_id: str
    score: float


class _ModelSpace:
    """Vectors of a single embedding model; they all share one dimension."""

    __slots__ = ("dim", "records")

    def __init__(self, dim: int) -> None:
        self.dim = dim
        self.records: OrderedDict[WindowRef, EmbeddingRecord] = OrderedDict()


class EmbeddingIndex:
    """In-memory cosine-similarity index partitioned by embedding model.

    Writes are serialized by a lock; queries copy a snapshot of the model's
    records under the lock and score them outside it, so a query may miss a
    vector indexed concurrently.
    """

    def __init__(self) -> None:
        self._spaces: dict[str, _ModelSpace] = {}
        self._lock = threading.RLock()
        self._seq = 0

    @property
    def size(self) -> int:
        with self._lock:
            return sum(len(space.records) for space in self._spaces.values())

    def dimension(self, model: str) -> int | None:
        with self._lock:
            space = self._spaces.get(model)
            return space.dim if space else None

    def index(self, window_ref: WindowRef, vector: Sequence[float], model: str) -> None:
        """Store ``vector`` for ``window_ref``; replaces an earlier vector for the same model."""
        values = tuple(float(value) for value in vector)
        if not values:
            raise DimensionMismatch("Cannot index an empty vector")
        with self._lock:
            space = self._spaces.get(model)
            if space is None:
                space = self._spaces[model] = _ModelSpace(len(values))
            elif len(values) != space.dim:
                raise DimensionMismatch(
                    f"Model {model} stores {space.dim}-dimensional vectors, got {len(values)}"
                )
            existing = space.records.get(window_ref)
            if existing is not None:
                # Replacement keeps the original insertion position for tie-breaking.
                seq = existing.seq
            else:
                self._seq += 1
                seq = self._seq
            space.records[window_ref] = EmbeddingRecord(
                window_ref=window_ref,
                vector=values,
                model=model,
                norm=_norm(values),
                seq=seq,
            )
        INDEX_SIZE.set(self.size)

    def index_many(self, refs: Sequence[WindowRef], vectors: Sequence[Sequence[float]], model: str) -> None:
        if len(refs) != len(vectors):
            raise ValueError("refs and vectors must have the same length")
        for ref, vector in zip(refs, vectors):
            self.index(ref, vector, model)

    def query(
        self,
        vector: Sequence[float],
        model: str,
        k: int,
        threshold: float = 0.0,
    ) -> list[SearchResult]:
        """Top ``k`` windows of ``model`` scoring strictly above ``threshold``."""
        records = self._snapshot(model, len(vector))
        if not records or k <= 0:
            return []
        query_norm = _norm(vector)
        scored = [
            (_cosine(vector, query_norm, record.vector, record.norm), record.seq, record.window_ref)
            for record in records
        ]
        hits = [item for item in scored if item[0] > threshold]
        hits.sort(key=lambda item: (-item[0], item[1]))
        return [SearchResult(window_ref=ref, score=score) for score, _, ref in hits[:k]]

    def document_vector(self, document_id: str, model: str) -> list[float] | None:
        """Component-wise mean of a document's window vectors."""
        with self._lock:
            space = self._spaces.get(model)
            if space is None:
                return None
            vectors = [record.vector for ref, record in space.records.items() if ref.document_id == document_id]
        return _mean(vectors)

    def similar_documents(
        self,
        document_id: str,
        model: str,
        k: int = 5,
        threshold: float = 0.0,
    ) -> list[DocumentMatch]:
        """Rank other documents by cosine similarity of their averaged vectors."""
        with self._lock:
            space = self._spaces.get(model)
            if space is None:
                return []
            grouped: OrderedDict[str, list[tuple[float, ...]]] = OrderedDict()
            for ref, record in space.records.items():
                grouped.setdefault(ref.document_id, []).append(record.vector)
        target = _mean(grouped.pop(document_id, []))
        if target is None or k <= 0:
            return []
        target_norm = _norm(target)
        matches: list[tuple[float, int, str]] = []
        for order, (other_id, vectors) in enumerate(grouped.items()):
            average = _mean(vectors)
            if average is None:
                continue
            if len(average) != len(target):
                raise DimensionMismatch("Document vectors disagree in dimension")
            score = _cosine(target, target_norm, average, _norm(average))
            if score > threshold:
                matches.append((score, order, other_id))
        matches.sort(key=lambda item: (-item[0], item[1]))
        return [DocumentMatch(document_id=doc_id, score=score) for score, _, doc_id in matches[:k]]

    def delete_document(self, document_id: str) -> int:
        removed = 0
        with self._lock:
            for space in self._spaces.values():
                stale = [ref for ref in space.records if ref.document_id == document_id]
                for ref in stale:
                    del space.records[ref]
                removed += len(stale)
        INDEX_SIZE.set(self.size)
        return removed

    def rebuild(self, db: SQLiteDatabase, model: str | None = None) -> int:
        """Reload vectors persisted in SQLite, in their original insertion order."""
        sql = "SELECT document_id, window_index, model, vector FROM embeddings"
        params: list[object] = []
        if model is not None:
            sql += " WHERE model = ?"
            params.append(model)
        sql += " ORDER BY created_at ASC, rowid ASC"
        rows = db.query(sql, params)
        with self._lock:
            if model is None:
                self._spaces.clear()
            else:
                self._spaces.pop(model, None)
            for row in rows:
                self.index(
                    WindowRef(row["document_id"], int(row["window_index"])),
                    vector_from_bytes(row["vector"]),
                    row["model"],
                )
        return len(rows)

    def _snapshot(self, model: str, dim: int) -> list[EmbeddingRecord]:
        with self._lock:
            space = self._spaces.get(model)
            if space is None or not space.records:
                return []
            if dim != space.dim:
                raise DimensionMismatch(
                    f"Query vector has {dim} dimensions, model {model} stores {space.dim}"
                )
            return list(space.records.values())


def _norm(vector: Iterable[float]) -> float:
    return math.sqrt(sum(value * value for value in vector))


def _cosine(a: Sequence[float], a_norm: float, b: Sequence[float], b_norm: float) -> float:
    if a_norm == 0 or b_norm == 0:
        return 0.0
    return sum(x * y for x, y in zip(a, b)) / (a_norm * b_norm)


def _mean(vectors: Sequence[Sequence[float]]) -> list[float] | None:
    if not vectors:
        return None
    dim = len(vectors[0])
    if any(len(vector) != dim for vector in vectors):
        raise DimensionMismatch("Cannot average vectors of different dimensions")
    count = float(len(vectors))
    return [sum(vector[i] for vector in vectors) / count for i in range(dim)]


__all__ = ["EmbeddingIndex", "EmbeddingRecord", "SearchResult", "DocumentMatch"]
