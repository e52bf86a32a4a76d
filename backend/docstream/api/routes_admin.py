"""Administrative routes for Docstream."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from starlette.concurrency import run_in_threadpool

from docstream.api.dependencies import get_document_service
from docstream.core.metrics import metrics_response
from docstream.ingest.service import DocumentService
from docstream.models.dto import DeleteResponse, DocumentResponse, WindowResponse

router = APIRouter()


@router.get("/documents/{document_id}", response_model=DocumentResponse, summary="Document status and analysis")
async def get_document(
    document_id: str,
    service: DocumentService = Depends(get_document_service),
) -> DocumentResponse:
    document = await run_in_threadpool(service.get_document, document_id)
    return DocumentResponse(**document)


@router.get(
    "/documents/{document_id}/windows",
    response_model=list[WindowResponse],
    summary="Text windows of a processed document in reading order",
)
async def list_windows(
    document_id: str,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    service: DocumentService = Depends(get_document_service),
) -> list[WindowResponse]:
    windows = await run_in_threadpool(service.list_windows, document_id, offset=offset, limit=limit)
    return [WindowResponse(**window) for window in windows]


@router.delete("/documents/{document_id}", response_model=DeleteResponse, summary="Delete a document and its vectors")
async def delete_document(
    document_id: str,
    service: DocumentService = Depends(get_document_service),
) -> DeleteResponse:
    removed = await run_in_threadpool(service.delete_document, document_id)
    return DeleteResponse(status="ok", deleted=1, vectors_removed=removed)


@router.get("/metrics", summary="Prometheus metrics")
async def get_metrics():
    return metrics_response()


__all__ = ["router"]
