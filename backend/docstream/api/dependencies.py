"""Shared FastAPI dependencies."""

from __future__ import annotations

from functools import lru_cache

from docstream.core.config import Settings, get_settings
from docstream.db.sqlite import SQLiteDatabase
from docstream.ingest.embeddings import EmbeddingModel
from docstream.ingest.loaders import LoaderRegistry
from docstream.ingest.pipeline import DocumentProcessor
from docstream.ingest.service import DocumentService
from docstream.jobs.progress import ProgressHub
from docstream.jobs.queue import JobQueue
from docstream.retrieval import EmbeddingIndex, QueryService
from docstream.upload.assembler import ChunkAssembler
from docstream.upload.storage import FilesystemChunkStore, MemoryChunkStore

_DB: SQLiteDatabase | None = None
_VECTOR_INDEX: EmbeddingIndex | None = None
_ASSEMBLER: ChunkAssembler | None = None
_PROGRESS_HUB: ProgressHub | None = None
_JOB_QUEUE: JobQueue | None = None
_DOCUMENT_SERVICE: DocumentService | None = None
_QUERY_SERVICE: QueryService | None = None


@lru_cache(maxsize=1)
def get_app_settings() -> Settings:
    return get_settings()


@lru_cache(maxsize=1)
def get_loader_registry() -> LoaderRegistry:
    return LoaderRegistry()


def get_database() -> SQLiteDatabase:
    global _DB
    if _DB is None:
        settings = get_app_settings()
        db = SQLiteDatabase(settings.db_path)
        db.ensure_schema()
        _DB = db
    return _DB


def get_embedding_model() -> EmbeddingModel:
    settings = get_app_settings()
    return EmbeddingModel.get(settings.embedding_model, settings.embedding_dim)


def get_vector_index() -> EmbeddingIndex:
    global _VECTOR_INDEX
    if _VECTOR_INDEX is None:
        settings = get_app_settings()
        index = EmbeddingIndex()
        index.rebuild(get_database(), settings.embedding_model)
        _VECTOR_INDEX = index
    return _VECTOR_INDEX


def get_assembler() -> ChunkAssembler:
    global _ASSEMBLER
    if _ASSEMBLER is None:
        settings = get_app_settings()
        store = FilesystemChunkStore(settings.spool_dir) if settings.spool_dir else MemoryChunkStore()
        _ASSEMBLER = ChunkAssembler(
            store=store,
            max_chunk_bytes=settings.max_chunk_bytes,
            max_upload_bytes=settings.max_upload_bytes,
            idle_timeout_s=settings.upload_idle_timeout_s,
        )
    return _ASSEMBLER


def get_progress_hub() -> ProgressHub:
    global _PROGRESS_HUB
    if _PROGRESS_HUB is None:
        _PROGRESS_HUB = ProgressHub(buffer_size=get_app_settings().progress_buffer_size)
    return _PROGRESS_HUB


def get_job_queue() -> JobQueue:
    global _JOB_QUEUE
    if _JOB_QUEUE is None:
        settings = get_app_settings()
        processor = DocumentProcessor(
            database=get_database(),
            settings=settings,
            embedding_model=get_embedding_model(),
            vector_index=get_vector_index(),
            loader_registry=get_loader_registry(),
        )
        _JOB_QUEUE = JobQueue(
            handler=processor,
            worker_count=settings.worker_count,
            progress_hub=get_progress_hub(),
            retry_backoff_ms=settings.retry_backoff_ms,
            retry_backoff_max_ms=settings.retry_backoff_max_ms,
        )
    return _JOB_QUEUE


def get_document_service() -> DocumentService:
    global _DOCUMENT_SERVICE
    if _DOCUMENT_SERVICE is None:
        _DOCUMENT_SERVICE = DocumentService(
            database=get_database(),
            queue=get_job_queue(),
            settings=get_app_settings(),
            vector_index=get_vector_index(),
            loader_registry=get_loader_registry(),
        )
    return _DOCUMENT_SERVICE


def get_query_service() -> QueryService:
    global _QUERY_SERVICE
    if _QUERY_SERVICE is None:
        _QUERY_SERVICE = QueryService(
            db=get_database(),
            settings=get_app_settings(),
            vector_index=get_vector_index(),
            embedding_model=get_embedding_model(),
        )
    return _QUERY_SERVICE


def reset_dependencies() -> None:
    """Stop workers and drop every singleton; used on shutdown and by tests."""
    global _DB, _VECTOR_INDEX, _ASSEMBLER, _PROGRESS_HUB, _JOB_QUEUE, _DOCUMENT_SERVICE, _QUERY_SERVICE
    if _JOB_QUEUE is not None:
        _JOB_QUEUE.stop()
    if _DB is not None:
        _DB.close()
    _DB = None
    _VECTOR_INDEX = None
    _ASSEMBLER = None
    _PROGRESS_HUB = None
    _JOB_QUEUE = None
    _DOCUMENT_SERVICE = None
    _QUERY_SERVICE = None
    get_app_settings.cache_clear()
    get_loader_registry.cache_clear()
    get_settings.cache_clear()


__all__ = [
    "get_app_settings",
    "get_loader_registry",
    "get_database",
    "get_embedding_model",
    "get_vector_index",
    "get_assembler",
    "get_progress_hub",
    "get_job_queue",
    "get_document_service",
    "get_query_service",
    "reset_dependencies",
]
