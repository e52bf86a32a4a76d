"""Tests for document processing through the service and job queue."""

from __future__ import annotations

from pathlib import Path

import pytest

from docstream.core.config import Settings
from docstream.core.errors import DocumentNotFound, InvalidStrategy, ProtocolViolation
from docstream.db.sqlite import SQLiteDatabase
from docstream.ingest.analysis import AnalysisResult, KeywordAnalyzer
from docstream.ingest.embeddings import EmbeddingModel
from docstream.ingest.pipeline import DocumentProcessor
from docstream.ingest.service import DocumentService
from docstream.ingest.types import ProcessingOptions
from docstream.jobs.queue import JobQueue, JobStatus, QueueOptions
from docstream.retrieval.vector_index import EmbeddingIndex

WAIT = 10.0


@pytest.fixture
def stack(tmp_path: Path):
    settings = Settings(db_path=tmp_path / "pipeline.db", spool_dir=None, retry_backoff_ms=0, embedding_dim=64)
    db = SQLiteDatabase(settings.db_path)
    db.ensure_schema()
    index = EmbeddingIndex()
    model = EmbeddingModel.get(settings.embedding_model, settings.embedding_dim)
    processor = DocumentProcessor(db, settings, embedding_model=model, vector_index=index)
    queue = JobQueue(processor, worker_count=1, retry_backoff_ms=0)
    service = DocumentService(db, queue, settings, vector_index=index)
    yield service, queue, index, db
    queue.stop()
    db.close()


def test_document_becomes_ready_with_windows_and_vectors(stack, long_text: str) -> None:
    service, queue, index, db = stack
    queue.start()
    job_id = service.add_job(long_text.encode("utf-8"), "report.txt", processing=ProcessingOptions(chunk_mode="granular"))
    summary = queue.result(job_id, timeout=WAIT)

    document_id = summary["document_id"]
    document = service.get_document(document_id)
    assert document["status"] == "READY"
    assert document["window_count"] == summary["windows"] > 1
    assert document["processed_at"] is not None
    assert index.size == summary["embedded"] == summary["windows"]
    assert "water" in document["analysis"]["themes"]

    windows = service.list_windows(document_id, limit=2)
    assert [window["index"] for window in windows] == [0, 1]
    assert windows[0]["analysis"] is not None

    stored = db.query_one("SELECT status, attempts FROM jobs WHERE id = ?", [job_id])
    assert (stored["status"], stored["attempts"]) == ("completed", 1)


def test_options_can_skip_analysis_and_embeddings(stack, sample_text: str) -> None:
    service, queue, index, _ = stack
    queue.start()
    options = ProcessingOptions(analyze=False, generate_embeddings=False)
    job_id = service.add_job(sample_text.encode("utf-8"), "plain.txt", processing=options)
    summary = queue.result(job_id, timeout=WAIT)
    assert summary["embedded"] == 0
    assert summary["analysis"] == AnalysisResult().to_dict()
    assert index.size == 0


def test_empty_or_invalid_requests_are_rejected_before_queueing(stack) -> None:
    service, queue, _, _ = stack
    with pytest.raises(ProtocolViolation):
        service.add_job(b"", "empty.txt")
    with pytest.raises(InvalidStrategy):
        service.add_job(b"text", "bad.txt", processing=ProcessingOptions(target_size=10, overlap=10))
    assert queue.stats().total == 0


def test_whitespace_only_document_fails(stack) -> None:
    service, queue, _, _ = stack
    queue.start()
    job_id = service.add_job(b"   \n\n  ", "blank.txt", queue_options=QueueOptions(max_retries=2))
    snapshot = queue.wait_for(job_id, timeout=WAIT)
    assert snapshot.status is JobStatus.FAILED
    assert snapshot.failure_code == "empty_document"
    assert snapshot.attempts == 1
    assert service.get_document(snapshot.reference)["status"] == "FAILED"


def test_queued_document_records_detected_mime(stack) -> None:
    service, queue, _, _ = stack
    job_id = service.add_job(b"# Notes\n\nQueued only.", "notes.md")
    document = service.get_document(queue.get_job(job_id).reference)
    assert document["status"] == "PROCESSING"
    assert document["mime"] == "text/markdown"


def test_deleting_a_queued_document_cancels_its_job(stack) -> None:
    service, queue, _, _ = stack
    job_id = service.add_job(b"Never processed.", "queued.txt")
    document_id = queue.get_job(job_id).reference
    service.delete_document(document_id)
    snapshot = queue.get_job(job_id)
    assert snapshot.status is JobStatus.FAILED
    assert snapshot.last_error == "Cancelled by user"
    with pytest.raises(DocumentNotFound):
        service.get_document(document_id)
    with pytest.raises(DocumentNotFound):
        service.list_windows(document_id)


def test_keyword_analyzer_extracts_signals() -> None:
    text = (
        'Residents of Green Valley said "the clinic is closed every second weekend". '
        "Clinic staff need more funding. The clinic also lacks clean water."
    )
    result = KeywordAnalyzer().analyze(text)
    assert result.themes[0] == "clinic"
    assert result.quotes == ["the clinic is closed every second weekend"]
    assert result.insights[0].startswith("Clinic staff need")
    assert result.entities == ["Residents of Green Valley"]


def test_analysis_merge_keeps_first_seen_order() -> None:
    merged = AnalysisResult.merge(
        [AnalysisResult(themes=["water", "clinic"]), AnalysisResult(themes=["clinic", "funding"])]
    )
    assert merged.themes == ["water", "clinic", "funding"]


class _DeletingProcessor(DocumentProcessor):
    """Deletes the document next to persistence, as a concurrent DELETE request would."""

    def __init__(self, *args, delete_first: bool, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.delete_first = delete_first
        self.service: DocumentService | None = None

    def _persist(self, payload, *args) -> bool:
        if self.delete_first:
            self.service.delete_document(payload.document_id)
            return super()._persist(payload, *args)
        persisted = super()._persist(payload, *args)
        self.service.delete_document(payload.document_id)
        return persisted


@pytest.mark.parametrize(
    ("delete_first", "status", "failure_code"),
    [(True, JobStatus.FAILED, "document_not_found"), (False, JobStatus.COMPLETED, None)],
)
def test_delete_during_processing_leaves_no_vectors(
    tmp_path: Path, long_text: str, delete_first: bool, status: JobStatus, failure_code: str | None
) -> None:
    settings = Settings(db_path=tmp_path / "race.db", spool_dir=None, retry_backoff_ms=0, embedding_dim=64)
    db = SQLiteDatabase(settings.db_path)
    db.ensure_schema()
    index = EmbeddingIndex()
    model = EmbeddingModel.get(settings.embedding_model, settings.embedding_dim)
    processor = _DeletingProcessor(db, settings, embedding_model=model, vector_index=index, delete_first=delete_first)
    queue = JobQueue(processor, worker_count=1, retry_backoff_ms=0)
    service = DocumentService(db, queue, settings, vector_index=index)
    processor.service = service
    try:
        queue.start()
        job_id = service.add_job(long_text.encode("utf-8"), "report.txt")
        snapshot = queue.wait_for(job_id, timeout=WAIT)
    finally:
        queue.stop()

    assert snapshot.status is status
    assert snapshot.failure_code == failure_code
    assert index.size == 0
    assert index.query(model.embed("clinic water"), model.model_name, 5, 0.0) == []
    assert db.query_one("SELECT COUNT(*) AS n FROM documents")["n"] == 0
    assert db.query_one("SELECT COUNT(*) AS n FROM embeddings")["n"] == 0
    db.close()


def test_corrupt_docx_fails_without_retries(stack) -> None:
    service, queue, _, _ = stack
    queue.start()
    job_id = service.add_job(b"PK\x03\x04garbage-not-a-zip", "broken.docx", queue_options=QueueOptions(max_retries=3))
    snapshot = queue.wait_for(job_id, timeout=WAIT)
    assert snapshot.status is JobStatus.FAILED
    assert snapshot.failure_code == "unsupported_document"
    assert snapshot.attempts == 1
