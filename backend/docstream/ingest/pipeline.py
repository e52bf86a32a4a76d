"""Document processing pipeline run by the job workers."""

from __future__ import annotations

from typing import Sequence

import orjson

from docstream.core.config import Settings
from docstream.core.errors import InvalidStrategy, UnsupportedDocument
from docstream.core.logging import bind_context, get_logger
from docstream.db.sqlite import SQLiteDatabase
from docstream.ingest.analysis import AnalysisResult, Analyzer, KeywordAnalyzer
from docstream.ingest.chunker import DocumentChunker, TextWindow
from docstream.ingest.embeddings import EmbeddingCapability, EmbeddingModel, vector_to_bytes
from docstream.ingest.loaders import LoaderRegistry
from docstream.ingest.types import DocumentPayload, ExtractedDocument, ProcessingOptions, ProcessingSummary
from docstream.jobs.queue import CANCELLED_MESSAGE, JobContext, JobOutcome
from docstream.retrieval.vector_index import EmbeddingIndex
from docstream.utils.text import count_words
from docstream.utils.time import now_ms

logger = get_logger(__name__)

EMBED_BATCH_SIZE = 16


class DocumentProcessor:
    """Coordinate extraction, chunking, analysis, embeddings, and persistence."""

    def __init__(
        self,
        database: SQLiteDatabase,
        settings: Settings,
        embedding_model: EmbeddingCapability | None = None,
        vector_index: EmbeddingIndex | None = None,
        loader_registry: LoaderRegistry | None = None,
        chunker: DocumentChunker | None = None,
        analyzer: Analyzer | None = None,
    ) -> None:
        self.db = database
        self.settings = settings
        self.loader_registry = loader_registry or LoaderRegistry()
        self.embedding_model = embedding_model or EmbeddingModel.get(settings.embedding_model, settings.embedding_dim)
        self.vector_index = vector_index
        self.chunker = chunker or DocumentChunker()
        self.analyzer = analyzer

    def __call__(self, payload: DocumentPayload, ctx: JobContext) -> JobOutcome:
        return self.process(payload, ctx)

    def process(self, payload: DocumentPayload, ctx: JobContext) -> JobOutcome:
        document_id = payload.document_id
        options = payload.options
        log = bind_context(logger, job_id=ctx.job_id, document_id=document_id, attempt=ctx.attempt)
        if self.db.query_one("SELECT id FROM documents WHERE id = ?", [document_id]) is None:
            return JobOutcome.fail(f"Document {document_id} was deleted", "document_not_found")

        ctx.report(5, f"Extracting text from {payload.display_name}")
        try:
            extracted = self.loader_registry.extract(payload.filename, payload.data)
        except UnsupportedDocument as exc:
            log.warning("Cannot extract %s: %s", payload.filename, exc.message)
            return JobOutcome.fail(exc.message, exc.code)
        if not extracted.text.strip():
            return JobOutcome.fail(f"No extractable text in {payload.filename}", "empty_document")
        if ctx.cancel_requested:
            return JobOutcome.fail(CANCELLED_MESSAGE, "cancelled")

        ctx.report(15, f"Splitting {len(extracted.text)} characters into windows")
        try:
            strategy = options.strategy()
        except InvalidStrategy as exc:
            return JobOutcome.fail(exc.message, exc.code)
        windows = self.chunker.chunk(document_id, extracted.text, strategy)
        log.info("Document %s produced %s windows", document_id, len(windows))

        analyses: list[AnalysisResult] = []
        if options.analyze:
            analyzer = self.analyzer or _analyzer_for(options)
            for position, window in enumerate(windows, start=1):
                if ctx.cancel_requested:
                    return JobOutcome.fail(CANCELLED_MESSAGE, "cancelled")
                analyses.append(analyzer.analyze(window.text))
                ctx.report(15 + 50 * position / len(windows), f"Analyzed window {position} of {len(windows)}")

        vectors: list[list[float]] = []
        if options.generate_embeddings:
            for offset in range(0, len(windows), EMBED_BATCH_SIZE):
                if ctx.cancel_requested:
                    return JobOutcome.fail(CANCELLED_MESSAGE, "cancelled")
                batch = windows[offset : offset + EMBED_BATCH_SIZE]
                vectors.extend(self.embedding_model.embed_batch([window.text for window in batch]))
                done = min(offset + EMBED_BATCH_SIZE, len(windows))
                ctx.report(65 + 25 * done / len(windows), f"Embedded {done} of {len(windows)} windows")

        if ctx.cancel_requested:
            return JobOutcome.fail(CANCELLED_MESSAGE, "cancelled")
        ctx.report(92, "Saving results")
        document_analysis = AnalysisResult.merge(analyses)
        if not self._persist(payload, extracted, windows, analyses, vectors, document_analysis):
            log.info("Document %s was deleted while processing", document_id)
            return JobOutcome.fail(f"Document {document_id} was deleted", "document_not_found")

        summary = ProcessingSummary(
            document_id=document_id,
            windows=len(windows),
            embedded=len(vectors),
            word_count=count_words(extracted.text),
            page_count=extracted.page_count,
            analysis=document_analysis.to_dict(),
        )
        return JobOutcome.succeeded(summary.to_dict())

    # Internal helpers -------------------------------------------------

    def _persist(
        self,
        payload: DocumentPayload,
        extracted: ExtractedDocument,
        windows: Sequence[TextWindow],
        analyses: Sequence[AnalysisResult],
        vectors: Sequence[Sequence[float]],
        document_analysis: AnalysisResult,
    ) -> bool:
        """Write results and index vectors; False if the document is gone."""
        document_id = payload.document_id
        now = now_ms()
        model = self.embedding_model.model_name
        # DocumentService.delete_document takes the same lock, so a delete
        # lands either before this block or after the vectors are indexed.
        with self.db.transaction() as db:
            if db.query_one("SELECT id FROM documents WHERE id = ?", [document_id]) is None:
                return False
            # Reprocessing supersedes earlier windows; embeddings cascade.
            db.execute("DELETE FROM text_windows WHERE document_id = ?", [document_id])
            db.executemany(
                """
                INSERT INTO text_windows (
                  document_id, window_index, text, start_offset, end_offset,
                  word_count, meta_json, analysis_json, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        document_id,
                        window.index,
                        window.text,
                        window.start_offset,
                        window.end_offset,
                        window.word_count,
                        orjson.dumps(window.meta).decode("utf-8"),
                        orjson.dumps(analyses[idx].to_dict()).decode("utf-8") if idx < len(analyses) else None,
                        now,
                    )
                    for idx, window in enumerate(windows)
                ],
            )
            db.executemany(
                """
                INSERT INTO embeddings (document_id, window_index, model, dim, vector, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (document_id, window.index, model, len(vectors[idx]), vector_to_bytes(vectors[idx]), now)
                    for idx, window in enumerate(windows)
                    if idx < len(vectors)
                ],
            )
            db.execute(
                """
                INSERT INTO document_analysis (document_id, analysis_json, created_at) VALUES (?, ?, ?)
                ON CONFLICT(document_id) DO UPDATE SET
                  analysis_json = excluded.analysis_json,
                  created_at = excluded.created_at
                """,
                [document_id, orjson.dumps(document_analysis.to_dict()).decode("utf-8"), now],
            )
            db.execute(
                """
                UPDATE documents
                SET mime = ?, title = ?, page_count = ?, word_count = ?, meta_json = ?, updated_at = ?
                WHERE id = ?
                """,
                [
                    extracted.mime,
                    extracted.title,
                    extracted.page_count,
                    count_words(extracted.text),
                    orjson.dumps(extracted.metadata, default=str).decode("utf-8"),
                    now,
                    document_id,
                ],
            )
            if self.vector_index is not None:
                self.vector_index.delete_document(document_id)
                if vectors:
                    self.vector_index.index_many([window.ref for window in windows[: len(vectors)]], vectors, model)
        return True


def _analyzer_for(options: ProcessingOptions) -> KeywordAnalyzer:
    return KeywordAnalyzer(
        extract_themes=options.extract_themes,
        extract_quotes=options.extract_quotes,
        generate_insights=options.generate_insights,
        extract_entities=options.extract_entities,
    )


__all__ = ["DocumentProcessor", "EMBED_BATCH_SIZE"]
