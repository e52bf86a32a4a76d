"""Tests for chunker."""

import pytest

from docstream.core.errors import InvalidStrategy
from docstream.ingest.chunker import ChunkStrategy, DocumentChunker, WindowRef, window_spans


def _assert_covers(text: str, windows) -> None:
    assert windows[0].start_offset == 0
    assert windows[-1].end_offset == len(text)
    for previous, current in zip(windows, windows[1:]):
        assert current.start_offset <= previous.end_offset, "gap between windows"
        assert current.start_offset > previous.start_offset
        assert current.end_offset > previous.end_offset
    for window in windows:
        assert window.text == text[window.start_offset : window.end_offset]


def test_chunk_boundaries_basic() -> None:
    text = ("Title\n\nPara1.\n\nPara2 is longer..." * 5).strip()
    windows = DocumentChunker().chunk("doc", text, ChunkStrategy(target_size=50, overlap=10))
    assert windows, "Should produce windows"
    assert [window.index for window in windows] == list(range(len(windows)))
    _assert_covers(text, windows)


@pytest.mark.parametrize("mode", ["granular", "standard"])
def test_windows_cover_long_text(mode: str, long_text: str) -> None:
    windows = DocumentChunker().chunk("doc", long_text, ChunkStrategy.for_mode(mode))
    assert len(windows) > 1
    _assert_covers(long_text, windows)
    assert all(window.word_count == len(window.text.split()) for window in windows)


@pytest.mark.parametrize(
    ("target", "overlap"),
    [(1, 0), (2, 1), (7, 3), (50, 0), (50, 49), (300, 120)],
)
def test_coverage_holds_for_edge_strategies(target: int, overlap: int) -> None:
    text = "One. Two three!\n\nFour five six? Seven.\n\n" * 20
    spans = window_spans(text, ChunkStrategy(target_size=target, overlap=overlap))
    assert spans[0][0] == 0
    assert spans[-1][1] == len(text)
    for (prev_start, prev_end), (start, end) in zip(spans, spans[1:]):
        assert prev_start < start <= prev_end
        assert end > prev_end


def test_empty_text_yields_no_windows() -> None:
    chunker = DocumentChunker()
    assert chunker.chunk("doc", "") == []
    assert chunker.chunk("doc", "   \n\n\t ") == []


def test_short_text_is_one_window(sample_text: str) -> None:
    windows = DocumentChunker().chunk("doc", sample_text)
    assert len(windows) == 1
    assert windows[0].text == sample_text
    assert windows[0].ref == WindowRef("doc", 0)


def test_prefers_paragraph_break() -> None:
    text = "A" * 45 + "\n\n" + "B" * 100
    spans = window_spans(text, ChunkStrategy(target_size=50, overlap=0))
    assert spans[0] == (0, 47)


def test_falls_back_to_sentence_end() -> None:
    text = "x" * 42 + ". " + "y" * 100
    spans = window_spans(text, ChunkStrategy(target_size=50, overlap=0))
    assert spans[0] == (0, 44)


def test_hard_cut_without_boundary() -> None:
    text = "z" * 200
    spans = window_spans(text, ChunkStrategy(target_size=50, overlap=10))
    assert spans[:3] == [(0, 50), (40, 90), (80, 130)]
    assert spans[-1][1] == 200


def test_window_meta_describes_content() -> None:
    text = "# Heading\n\n- first point\n- second point"
    window = DocumentChunker().chunk("doc", text)[0]
    assert window.meta["has_headers"] is True
    assert window.meta["has_bullet_points"] is True
    assert window.meta["content_type"] == "mixed"


@pytest.mark.parametrize(
    "strategy",
    [
        ChunkStrategy(target_size=0, overlap=0),
        ChunkStrategy(target_size=100, overlap=-1),
        ChunkStrategy(target_size=100, overlap=100),
        ChunkStrategy(target_size=100, overlap=150),
    ],
)
def test_invalid_strategies(strategy: ChunkStrategy) -> None:
    with pytest.raises(InvalidStrategy):
        DocumentChunker().chunk("doc", "text", strategy)


def test_unknown_mode() -> None:
    with pytest.raises(InvalidStrategy):
        ChunkStrategy.for_mode("enormous")


def test_mode_presets() -> None:
    assert ChunkStrategy.for_mode("granular") == ChunkStrategy(600, 100, "granular")
    assert ChunkStrategy.for_mode("standard").target_size == 2000
    assert ChunkStrategy.for_mode("standard", overlap=0).overlap == 0
