"""Document bookkeeping around the job queue."""

from __future__ import annotations

from pathlib import PurePath
from typing import Any

import orjson

from docstream.core.config import Settings
from docstream.core.errors import DocumentNotFound, ProtocolViolation
from docstream.core.logging import get_logger
from docstream.db.sqlite import SQLiteDatabase
from docstream.ingest.analysis import analysis_from_dict
from docstream.ingest.loaders import LoaderRegistry
from docstream.ingest.types import DocumentPayload, ProcessingOptions, validate_options
from docstream.jobs.queue import JobQueue, JobSnapshot, JobStatus, QueueOptions
from docstream.retrieval.vector_index import EmbeddingIndex
from docstream.utils.hashing import sha256_bytes
from docstream.utils.ids import new_id
from docstream.utils.time import ms_to_datetime, now_ms

logger = get_logger(__name__)

DOCUMENT_COLUMNS = (
    "id, filename, display_name, mime, size_bytes, sha256, status, error_message, title, "
    "page_count, word_count, options_json, meta_json, created_at, updated_at, processed_at"
)


class DocumentService:
    """Register documents, queue their processing, and record the outcome."""

    def __init__(
        self,
        database: SQLiteDatabase,
        queue: JobQueue,
        settings: Settings,
        vector_index: EmbeddingIndex | None = None,
        loader_registry: LoaderRegistry | None = None,
    ) -> None:
        self.db = database
        self.queue = queue
        self.settings = settings
        self.vector_index = vector_index
        self.loader_registry = loader_registry or LoaderRegistry()
        queue.add_listener(self._on_job_finished)

    def add_job(
        self,
        data: bytes,
        filename: str,
        display_name: str | None = None,
        processing: ProcessingOptions | None = None,
        queue_options: QueueOptions | None = None,
        *,
        document_id: str | None = None,
        sha256: str | None = None,
    ) -> str:
        """Create the document record and queue it for processing; returns the job id."""
        if not data:
            raise ProtocolViolation(f"Document {filename!r} is empty")
        processing = processing or ProcessingOptions(chunk_mode=self.settings.chunk_mode)
        validate_options(processing)
        queue_options = queue_options or QueueOptions(max_retries=self.settings.default_max_retries)
        document_id = document_id or new_id("doc")
        display_name = display_name or PurePath(filename).name
        now = now_ms()
        with self.db.transaction() as db:
            db.execute(
                """
                INSERT INTO documents (
                  id, filename, display_name, mime, size_bytes, sha256, status,
                  options_json, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, 'PROCESSING', ?, ?, ?)
                """,
                [
                    document_id,
                    filename,
                    display_name,
                    self.loader_registry.mime_for(filename, data),
                    len(data),
                    sha256 or sha256_bytes(data),
                    orjson.dumps(processing.to_dict()).decode("utf-8"),
                    now,
                    now,
                ],
            )
        payload = DocumentPayload(
            document_id=document_id,
            data=data,
            filename=filename,
            display_name=display_name,
            options=processing,
        )
        job_id = self.queue.enqueue(
            payload,
            queue_options,
            reference=document_id,
            label=display_name,
            size_bytes=payload.size_bytes,
            cost_factor=processing.cost_factor(),
        )
        logger.info(
            "Document %s queued as job %s",
            document_id,
            job_id,
            extra={"ctx_document_id": document_id, "ctx_job_id": job_id},
        )
        return job_id

    def get_document(self, document_id: str) -> dict[str, Any]:
        row = self.db.query_one(f"SELECT {DOCUMENT_COLUMNS} FROM documents WHERE id = ?", [document_id])
        if row is None:
            raise DocumentNotFound(f"Document {document_id} not found")
        analysis_row = self.db.query_one(
            "SELECT analysis_json FROM document_analysis WHERE document_id = ?",
            [document_id],
        )
        window_row = self.db.query_one(
            "SELECT COUNT(*) AS count FROM text_windows WHERE document_id = ?",
            [document_id],
        )
        analysis = analysis_from_dict(orjson.loads(analysis_row["analysis_json"]) if analysis_row else None)
        return {
            "id": row["id"],
            "filename": row["filename"],
            "display_name": row["display_name"],
            "mime": row["mime"],
            "size_bytes": row["size_bytes"],
            "sha256": row["sha256"],
            "status": row["status"],
            "error_message": row["error_message"],
            "title": row["title"],
            "page_count": row["page_count"],
            "word_count": row["word_count"],
            "window_count": int(window_row["count"]) if window_row else 0,
            "options": orjson.loads(row["options_json"]) if row["options_json"] else {},
            "meta": orjson.loads(row["meta_json"]) if row["meta_json"] else {},
            "analysis": analysis.to_dict(),
            "created_at": ms_to_datetime(row["created_at"]),
            "updated_at": ms_to_datetime(row["updated_at"]),
            "processed_at": ms_to_datetime(row["processed_at"]),
            "jobs": [job.to_dict() for job in self.queue.list_jobs(reference=document_id)],
        }

    def list_windows(self, document_id: str, offset: int = 0, limit: int = 100) -> list[dict[str, Any]]:
        self._require(document_id)
        rows = self.db.query(
            """
            SELECT window_index, text, start_offset, end_offset, word_count, meta_json, analysis_json
            FROM text_windows
            WHERE document_id = ?
            ORDER BY window_index ASC
            LIMIT ? OFFSET ?
            """,
            [document_id, limit, offset],
        )
        return [
            {
                "document_id": document_id,
                "index": row["window_index"],
                "text": row["text"],
                "start_offset": row["start_offset"],
                "end_offset": row["end_offset"],
                "word_count": row["word_count"],
                "meta": orjson.loads(row["meta_json"]) if row["meta_json"] else {},
                "analysis": orjson.loads(row["analysis_json"]) if row["analysis_json"] else None,
            }
            for row in rows
        ]

    def delete_document(self, document_id: str) -> int:
        """Delete a document with its windows and vectors.

        Queued jobs for it are cancelled. Active ones are flagged, and a worker
        that reaches persistence afterwards finds the document gone.
        """
        self._require(document_id)
        for job in self.queue.list_jobs(reference=document_id):
            if not job.terminal:
                self.queue.cancel(job.id)
        with self.db.transaction() as db:
            db.execute("DELETE FROM documents WHERE id = ?", [document_id])
            removed = self.vector_index.delete_document(document_id) if self.vector_index is not None else 0
        logger.info("Deleted document %s and %s vectors", document_id, removed, extra={"ctx_document_id": document_id})
        return removed

    # Internal helpers -------------------------------------------------

    def _require(self, document_id: str) -> None:
        if self.db.query_one("SELECT id FROM documents WHERE id = ?", [document_id]) is None:
            raise DocumentNotFound(f"Document {document_id} not found")

    def _on_job_finished(self, job: JobSnapshot) -> None:
        now = now_ms()
        with self.db.transaction() as db:
            db.execute(
                """
                INSERT OR REPLACE INTO jobs (
                  id, document_id, label, priority, status, attempts, max_retries, created_at,
                  started_at, finished_at, estimated_duration_ms, last_error, failure_code
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    job.id,
                    job.reference,
                    job.label,
                    job.priority.value,
                    job.status.value,
                    job.attempts,
                    job.max_retries,
                    job.created_at,
                    job.started_at,
                    job.finished_at,
                    job.estimated_duration_ms,
                    job.last_error,
                    job.failure_code,
                ],
            )
            if job.reference is None:
                return
            if job.status is JobStatus.COMPLETED:
                db.execute(
                    """
                    UPDATE documents
                    SET status = 'READY', error_message = NULL, processed_at = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    [now, now, job.reference],
                )
            else:
                db.execute(
                    "UPDATE documents SET status = 'FAILED', error_message = ?, updated_at = ? WHERE id = ?",
                    [job.last_error, now, job.reference],
                )


__all__ = ["DocumentService", "DOCUMENT_COLUMNS"]
