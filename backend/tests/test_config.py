"""Tests for configuration loading."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from docstream.core.config import Settings


def test_yaml_sections_map_to_settings(tmp_path: Path) -> None:
    config = tmp_path / "config.yaml"
    config.write_text(
        "queue:\n"
        "  max_retries: 5\n"
        "embeddings:\n"
        "  model: test-embed\n"
        "  dim: 64\n"
        "chunking:\n"
        "  mode: granular\n"
        "retrieval:\n"
        "  top_k: 4\n"
        "  threshold: 0.2\n",
        encoding="utf-8",
    )
    settings = Settings.from_yaml(config)
    assert settings.default_max_retries == 5
    assert settings.embedding_model == "test-embed"
    assert settings.embedding_dim == 64
    assert settings.chunk_mode == "granular"
    assert settings.top_k == 4
    assert settings.query_threshold == pytest.approx(0.2)


def test_environment_overrides_yaml(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config = tmp_path / "config.yaml"
    config.write_text("retrieval:\n  top_k: 4\n", encoding="utf-8")
    monkeypatch.setenv("DSTR_TOP_K", "11")
    monkeypatch.setenv("DSTR_CONFIG", str(config))
    settings = Settings.from_yaml()
    assert settings.top_k == 11
    assert settings.worker_count == 2
    assert settings.db_path == tmp_path / "dstr.db"


def test_empty_spool_dir_keeps_chunks_in_memory(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DSTR_SPOOL_DIR", "")
    assert Settings.from_yaml().spool_dir is None


def test_invalid_values_are_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DSTR_WORKER_COUNT", "0")
    with pytest.raises(ValidationError):
        Settings.from_yaml()
    with pytest.raises(ValidationError):
        Settings(chunk_mode="enormous")


def test_chunk_limit_cannot_exceed_upload_limit() -> None:
    with pytest.raises(ValidationError):
        Settings(max_chunk_bytes=10, max_upload_bytes=5)
    with pytest.raises(ValidationError):
        Settings(retry_backoff_ms=500, retry_backoff_max_ms=100)
