"""Tests for retrieval utilities."""

import random
from pathlib import Path

import pytest

from docstream.core.errors import DimensionMismatch
from docstream.db.sqlite import SQLiteDatabase
from docstream.ingest.chunker import WindowRef
from docstream.ingest.embeddings import vector_to_bytes
from docstream.retrieval.vector_index import EmbeddingIndex

MODEL = "test-model"


def _random_index(count: int = 40, dim: int = 8, seed: int = 7) -> EmbeddingIndex:
    rng = random.Random(seed)
    index = EmbeddingIndex()
    for idx in range(count):
        index.index(WindowRef(f"doc-{idx % 5}", idx), [rng.uniform(-1, 1) for _ in range(dim)], MODEL)
    return index


def test_vector_index_basic() -> None:
    index = EmbeddingIndex()
    index.index(WindowRef("a", 0), [1.0, 0.0, 0.0], MODEL)
    index.index(WindowRef("b", 0), [0.0, 1.0, 0.0], MODEL)
    results = index.query([1.0, 0.0, 0.0], MODEL, k=1)
    assert results
    assert results[0].window_ref == WindowRef("a", 0)
    assert results[0].score == pytest.approx(1.0)


def test_threshold_is_strict_and_monotonic() -> None:
    index = _random_index()
    query = [0.3, -0.2, 0.9, 0.1, 0.0, -0.5, 0.4, 0.2]
    sizes = [len(index.query(query, MODEL, k=100, threshold=t)) for t in (-1.0, -0.5, 0.0, 0.25, 0.5, 0.9)]
    assert sizes == sorted(sizes, reverse=True)
    for result in index.query(query, MODEL, k=100, threshold=0.25):
        assert result.score > 0.25


def test_smaller_k_is_a_prefix() -> None:
    index = _random_index()
    query = [0.1] * 8
    full = index.query(query, MODEL, k=40, threshold=-1.0)
    for k in (1, 3, 10, 25):
        assert index.query(query, MODEL, k=k, threshold=-1.0) == full[:k]


def test_ties_break_by_insertion_order() -> None:
    index = EmbeddingIndex()
    index.index(WindowRef("late", 0), [0.0, 1.0], MODEL)
    index.index(WindowRef("first", 0), [1.0, 0.0], MODEL)
    index.index(WindowRef("second", 0), [2.0, 0.0], MODEL)
    refs = [result.window_ref.document_id for result in index.query([1.0, 0.0], MODEL, k=3, threshold=-1.0)]
    assert refs[:2] == ["first", "second"]


def test_replacement_keeps_insertion_position() -> None:
    index = EmbeddingIndex()
    index.index(WindowRef("a", 0), [1.0, 0.0], MODEL)
    index.index(WindowRef("b", 0), [1.0, 0.0], MODEL)
    index.index(WindowRef("a", 0), [1.0, 0.0], MODEL)
    assert index.size == 2
    results = index.query([1.0, 0.0], MODEL, k=2)
    assert [result.window_ref.document_id for result in results] == ["a", "b"]


def test_zero_vector_scores_zero() -> None:
    index = EmbeddingIndex()
    index.index(WindowRef("zero", 0), [0.0, 0.0], MODEL)
    index.index(WindowRef("one", 0), [1.0, 1.0], MODEL)
    assert index.query([0.0, 0.0], MODEL, k=5) == []
    scores = {r.window_ref.document_id: r.score for r in index.query([1.0, 0.0], MODEL, k=5, threshold=-1.0)}
    assert scores["zero"] == 0.0


def test_empty_index_and_unknown_model() -> None:
    index = EmbeddingIndex()
    assert index.query([1.0, 2.0], MODEL, k=3) == []
    index.index(WindowRef("a", 0), [1.0, 0.0], MODEL)
    assert index.query([1.0, 0.0, 0.0], "other-model", k=3) == []


def test_dimension_mismatch() -> None:
    index = EmbeddingIndex()
    index.index(WindowRef("a", 0), [1.0, 0.0], MODEL)
    with pytest.raises(DimensionMismatch):
        index.index(WindowRef("b", 0), [1.0, 0.0, 0.0], MODEL)
    with pytest.raises(DimensionMismatch):
        index.query([1.0, 0.0, 0.0], MODEL, k=1)
    index.index(WindowRef("b", 0), [1.0, 0.0, 0.0], "wide-model")
    assert index.dimension(MODEL) == 2
    assert index.dimension("wide-model") == 3


def test_similar_documents_uses_averaged_vectors() -> None:
    index = EmbeddingIndex()
    index.index(WindowRef("target", 0), [1.0, 0.0, 0.0], MODEL)
    index.index(WindowRef("target", 1), [0.8, 0.2, 0.0], MODEL)
    index.index(WindowRef("close", 0), [0.9, 0.1, 0.0], MODEL)
    index.index(WindowRef("far", 0), [0.0, 0.0, 1.0], MODEL)
    assert index.document_vector("target", MODEL) == pytest.approx([0.9, 0.1, 0.0])
    matches = index.similar_documents("target", MODEL, k=5)
    assert [match.document_id for match in matches] == ["close"]
    assert matches[0].score == pytest.approx(1.0)
    assert index.similar_documents("missing", MODEL) == []


def test_delete_document() -> None:
    index = _random_index(count=10)
    removed = index.delete_document("doc-0")
    assert removed == 2
    assert index.size == 8
    assert all(r.window_ref.document_id != "doc-0" for r in index.query([1.0] * 8, MODEL, k=10, threshold=-1.0))


def test_rebuild_from_sqlite(tmp_path: Path) -> None:
    db = SQLiteDatabase(tmp_path / "index.db")
    db.ensure_schema()
    with db.transaction():
        db.execute(
            "INSERT INTO documents (id, filename, created_at, updated_at) VALUES ('d1', 'a.txt', 1, 1)",
        )
        for idx, vector in enumerate(([1.0, 0.0], [0.0, 1.0])):
            db.execute(
                "INSERT INTO text_windows (document_id, window_index, text, start_offset, end_offset, word_count, created_at)"
                " VALUES ('d1', ?, 'x', 0, 1, 1, 1)",
                [idx],
            )
            db.execute(
                "INSERT INTO embeddings (document_id, window_index, model, dim, vector, created_at) VALUES ('d1', ?, ?, 2, ?, ?)",
                [idx, MODEL, vector_to_bytes(vector), idx],
            )
    index = EmbeddingIndex()
    assert index.rebuild(db, MODEL) == 2
    results = index.query([0.0, 1.0], MODEL, k=1)
    assert results[0].window_ref == WindowRef("d1", 1)
    db.close()
