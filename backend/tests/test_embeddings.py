"""Tests for embedding utilities."""

import pytest

from docstream.ingest.embeddings import EmbeddingModel, vector_from_bytes, vector_to_bytes


def test_embedding_vectors_are_normalised() -> None:
    model = EmbeddingModel.get("dummy-model", dim=64)
    vectors = model.embed_batch(["hello", "world"])
    assert len(vectors) == 2
    assert all(len(vec) == model.dim for vec in vectors)
    assert abs(sum(value * value for value in vectors[0]) - 1.0) < 1e-6


def test_embedding_is_deterministic_and_case_insensitive() -> None:
    model = EmbeddingModel.get("dummy-model", dim=64)
    assert model.embed("Clean water access") == model.embed("clean WATER access")


def test_empty_text_embeds_to_zero_vector() -> None:
    model = EmbeddingModel.get("dummy-model", dim=16)
    assert model.embed("  ... ") == [0.0] * 16


def test_models_are_cached_per_name_and_dimension() -> None:
    assert EmbeddingModel.get("m", 32) is EmbeddingModel.get("m", 32)
    assert EmbeddingModel.get("m", 32) is not EmbeddingModel.get("m", 16)


def test_vector_bytes_round_trip() -> None:
    vector = [0.5, -0.25, 1.0, 0.0]
    assert vector_from_bytes(vector_to_bytes(vector)) == pytest.approx(vector)
    assert len(vector_to_bytes(vector)) == 16
