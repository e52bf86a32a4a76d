"""Document upload routes: chunked and single-request."""

from __future__ import annotations

from fastapi import APIRouter, Depends, File, Form, UploadFile
from starlette.concurrency import run_in_threadpool

from docstream.api.dependencies import (
    get_app_settings,
    get_assembler,
    get_document_service,
    get_job_queue,
    get_progress_hub,
)
from docstream.core.config import Settings
from docstream.core.errors import Oversize
from docstream.core.logging import get_logger
from docstream.ingest.service import DocumentService
from docstream.ingest.types import ProcessingOptions
from docstream.jobs.progress import ProgressHub
from docstream.jobs.queue import JobQueue, QueueOptions
from docstream.models.dto import ChunkModeName, ChunkUploadResponse, DocumentUploadResponse, PriorityName
from docstream.upload.assembler import ChunkAssembler
from docstream.utils.ids import new_id

logger = get_logger(__name__)

router = APIRouter()


@router.post(
    "/chunks",
    response_model=ChunkUploadResponse,
    response_model_exclude_none=True,
    summary="Upload one chunk of a large document",
)
async def upload_chunk(
    file: UploadFile = File(...),
    chunk_index: int = Form(..., alias="chunkIndex", ge=0),
    total_chunks: int = Form(..., alias="totalChunks", ge=1),
    upload_id: str = Form(..., alias="uploadId"),
    original_name: str = Form(..., alias="originalName"),
    total_bytes: int | None = Form(default=None, alias="totalBytes", ge=0),
    priority: PriorityName = Form(default="medium"),
    max_retries: int | None = Form(default=None, alias="maxRetries", ge=0, le=10),
    mode: ChunkModeName | None = Form(default=None),
    analyze: bool = Form(default=True),
    settings: Settings = Depends(get_app_settings),
    assembler: ChunkAssembler = Depends(get_assembler),
    service: DocumentService = Depends(get_document_service),
    hub: ProgressHub = Depends(get_progress_hub),
) -> ChunkUploadResponse:
    # One byte past the limit is enough for the assembler to reject the chunk.
    data = await file.read(assembler.max_chunk_bytes + 1)
    result = await run_in_threadpool(
        assembler.submit_chunk,
        upload_id,
        chunk_index,
        total_chunks,
        data,
        original_name,
        total_bytes,
    )
    if not result.complete:
        hub.publish(
            upload_id,
            "progress",
            f"Received {result.received} of {result.total} chunks",
            round(100 * result.received / result.total, 2),
            {"upload_id": upload_id, "received": result.received, "total": result.total},
        )
        return ChunkUploadResponse(
            complete=False,
            received=result.received,
            total=result.total,
            upload_id=upload_id,
        )

    document_id = new_id("doc")
    job_id = await run_in_threadpool(
        service.add_job,
        result.data or b"",
        original_name,
        original_name,
        ProcessingOptions(analyze=analyze, chunk_mode=mode or settings.chunk_mode),
        QueueOptions(
            priority=priority,
            max_retries=settings.default_max_retries if max_retries is None else max_retries,
        ),
        document_id=document_id,
        sha256=result.sha256,
    )
    hub.publish(
        upload_id,
        "completed",
        f"Assembled {result.size_bytes} bytes from {result.total} chunks",
        100.0,
        {"upload_id": upload_id, "document_id": document_id, "job_id": job_id},
    )
    logger.info(
        "Upload %s assembled into document %s",
        upload_id,
        document_id,
        extra={"ctx_upload_id": upload_id, "ctx_document_id": document_id, "ctx_job_id": job_id},
    )
    return ChunkUploadResponse(
        complete=True,
        received=result.received,
        total=result.total,
        upload_id=upload_id,
        document_id=document_id,
        job_id=job_id,
    )


@router.post("", response_model=DocumentUploadResponse, summary="Upload a small document in one request")
async def upload_document(
    file: UploadFile = File(...),
    display_name: str | None = Form(default=None, alias="displayName"),
    priority: PriorityName = Form(default="medium"),
    max_retries: int | None = Form(default=None, alias="maxRetries", ge=0, le=10),
    mode: ChunkModeName | None = Form(default=None),
    analyze: bool = Form(default=True),
    settings: Settings = Depends(get_app_settings),
    service: DocumentService = Depends(get_document_service),
    queue: JobQueue = Depends(get_job_queue),
) -> DocumentUploadResponse:
    data = await file.read(settings.max_upload_bytes + 1)
    if len(data) > settings.max_upload_bytes:
        raise Oversize(f"Document exceeds {settings.max_upload_bytes} bytes; use the chunked upload")
    filename = file.filename or "upload.bin"
    document_id = new_id("doc")
    job_id = await run_in_threadpool(
        service.add_job,
        data,
        filename,
        display_name or filename,
        ProcessingOptions(analyze=analyze, chunk_mode=mode or settings.chunk_mode),
        QueueOptions(
            priority=priority,
            max_retries=settings.default_max_retries if max_retries is None else max_retries,
        ),
        document_id=document_id,
    )
    snapshot = queue.get_job(job_id)
    return DocumentUploadResponse(
        document_id=document_id,
        job_id=job_id,
        estimated_duration_ms=snapshot.estimated_duration_ms,
    )


__all__ = ["router"]
