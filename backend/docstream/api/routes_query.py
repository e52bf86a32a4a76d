"""Query API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from starlette.concurrency import run_in_threadpool

from docstream.api.dependencies import get_query_service
from docstream.models.dto import QueryRequest, QueryResponse, SimilarResponse
from docstream.retrieval.search import QueryService

router = APIRouter()


@router.post("/query", response_model=QueryResponse, summary="Execute a semantic query")
async def run_query(
    request: QueryRequest,
    service: QueryService = Depends(get_query_service),
) -> QueryResponse:
    payload = await run_in_threadpool(
        service.query, query_text=request.query, k=request.k, threshold=request.threshold
    )
    return QueryResponse(**payload)


@router.get(
    "/documents/{document_id}/similar",
    response_model=SimilarResponse,
    summary="Documents whose averaged embeddings are closest to this one",
)
async def similar_documents(
    document_id: str,
    k: int = Query(default=5, ge=1, le=50),
    threshold: float | None = Query(default=None, ge=-1.0, le=1.0),
    service: QueryService = Depends(get_query_service),
) -> SimilarResponse:
    payload = await run_in_threadpool(service.similar_documents, document_id, k=k, threshold=threshold)
    return SimilarResponse(**payload)


__all__ = ["router"]
