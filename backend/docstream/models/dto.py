"""Pydantic DTOs exposed via API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

PriorityName = Literal["critical", "high", "medium", "low"]
ChunkModeName = Literal["granular", "standard"]


class ChunkUploadResponse(BaseModel):
    success: bool = True
    complete: bool
    received: int | None = None
    total: int | None = None
    upload_id: str | None = Field(default=None, alias="uploadId")
    document_id: str | None = Field(default=None, alias="documentId")
    job_id: str | None = Field(default=None, alias="jobId")

    model_config = {"populate_by_name": True}


class DocumentUploadResponse(BaseModel):
    success: bool = True
    document_id: str = Field(alias="documentId")
    job_id: str = Field(alias="jobId")
    estimated_duration_ms: int = Field(alias="estimatedDurationMs")

    model_config = {"populate_by_name": True}


class JobResponse(BaseModel):
    id: str
    reference: str | None
    label: str | None
    priority: PriorityName
    status: Literal["queued", "active", "completed", "failed"]
    attempts: int
    max_retries: int
    created_at: int
    started_at: int | None
    finished_at: int | None
    estimated_duration_ms: int
    last_error: str | None
    failure_code: str | None
    progress: float
    progress_message: str
    cancel_requested: bool
    result: dict[str, Any] | None = None


class QueueStatsResponse(BaseModel):
    queued: int
    active: int
    completed: int
    failed: int
    total: int
    estimated_wait_ms: int


class CancelResponse(BaseModel):
    success: bool
    cancelled: bool
    job: JobResponse


class QueryRequest(BaseModel):
    query: str = Field(min_length=1)
    k: int = Field(default=8, ge=1, le=50)
    threshold: float | None = Field(default=None, ge=-1.0, le=1.0)


class WindowResult(BaseModel):
    document_id: str
    window_index: int
    filename: str
    display_name: str | None
    text: str
    start_offset: int
    end_offset: int
    word_count: int
    meta: dict[str, Any]
    score: float


class QueryResponse(BaseModel):
    query: str
    model: str
    threshold: float
    results: list[WindowResult]


class SimilarDocument(BaseModel):
    document_id: str
    filename: str | None
    display_name: str | None
    score: float


class SimilarResponse(BaseModel):
    document_id: str
    results: list[SimilarDocument]


class AnalysisPayload(BaseModel):
    themes: list[str] = Field(default_factory=list)
    quotes: list[str] = Field(default_factory=list)
    insights: list[str] = Field(default_factory=list)
    entities: list[str] = Field(default_factory=list)


class DocumentResponse(BaseModel):
    id: str
    filename: str
    display_name: str | None
    mime: str | None
    size_bytes: int | None
    sha256: str | None
    status: Literal["PROCESSING", "READY", "FAILED"]
    error_message: str | None
    title: str | None
    page_count: int | None
    word_count: int | None
    window_count: int
    options: dict[str, Any]
    meta: dict[str, Any]
    analysis: AnalysisPayload
    created_at: datetime | None
    updated_at: datetime | None
    processed_at: datetime | None
    jobs: list[JobResponse]


class WindowResponse(BaseModel):
    document_id: str
    index: int
    text: str
    start_offset: int
    end_offset: int
    word_count: int
    meta: dict[str, Any]
    analysis: AnalysisPayload | None = None


class DeleteResponse(BaseModel):
    status: Literal["ok", "noop"]
    deleted: int
    vectors_removed: int = 0


class HealthResponse(BaseModel):
    ok: bool
    workers: int
    queue: QueueStatsResponse
    index_size: int
    active_uploads: int


__all__ = [
    "ChunkUploadResponse",
    "DocumentUploadResponse",
    "JobResponse",
    "QueueStatsResponse",
    "CancelResponse",
    "QueryRequest",
    "QueryResponse",
    "WindowResult",
    "SimilarDocument",
    "SimilarResponse",
    "AnalysisPayload",
    "DocumentResponse",
    "WindowResponse",
    "DeleteResponse",
    "HealthResponse",
]
