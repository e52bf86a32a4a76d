"""Test fixtures for Docstream."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))


@pytest.fixture(autouse=True)
def reset_state(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Reset global singletons and environment between tests."""
    monkeypatch.setenv("DSTR_DB_PATH", str(tmp_path / "dstr.db"))
    monkeypatch.setenv("DSTR_SPOOL_DIR", str(tmp_path / "spool"))
    monkeypatch.setenv("DSTR_RETRY_BACKOFF_MS", "0")
    monkeypatch.setenv("DSTR_WORKER_COUNT", "2")
    monkeypatch.delenv("DSTR_CONFIG", raising=False)

    from docstream.ingest.embeddings import EmbeddingModel
    from docstream.api import dependencies as deps

    EmbeddingModel._instances.clear()
    deps.reset_dependencies()
    yield
    deps.reset_dependencies()
    EmbeddingModel._instances.clear()


@pytest.fixture(scope="session")
def sample_text() -> str:
    return "Title\n\nParagraph one.\n\nParagraph two is here."


@pytest.fixture
def long_text() -> str:
    paragraphs = []
    for idx in range(40):
        paragraphs.append(
            f"Section {idx} covers community water programs. "
            f"Residents reported that clinic {idx} needs more staff. "
            "Funding should improve access to clean water and health services."
        )
    return "\n\n".join(paragraphs)
