"""FastAPI application setup for Docstream."""

from __future__ import annotations

import asyncio
import contextlib

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from starlette.concurrency import run_in_threadpool

from docstream.api.dependencies import (
    get_app_settings,
    get_assembler,
    get_database,
    get_document_service,
    get_embedding_model,
    get_job_queue,
    get_progress_hub,
    get_query_service,
    get_vector_index,
)
from docstream.api.routes_admin import router as admin_router
from docstream.api.routes_jobs import router as jobs_router
from docstream.api.routes_progress import router as progress_router
from docstream.api.routes_query import router as query_router
from docstream.api.routes_upload import router as upload_router
from docstream.core.errors import DocstreamError
from docstream.core.logging import configure_logging, get_logger
from docstream.models.dto import HealthResponse, QueueStatsResponse

configure_logging()
logger = get_logger(__name__)

MAINTENANCE_INTERVAL_S = 60.0

app = FastAPI(
    title="Docstream",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://127.0.0.1:5174",
        "http://localhost:5174",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(upload_router, prefix="/documents", tags=["upload"])
app.include_router(jobs_router, prefix="/jobs", tags=["jobs"])
app.include_router(progress_router, prefix="", tags=["progress"])
app.include_router(query_router, prefix="", tags=["query"])
app.include_router(admin_router, prefix="", tags=["admin"])

_maintenance_task: asyncio.Task | None = None


@app.exception_handler(DocstreamError)
async def docstream_error_handler(request: Request, exc: DocstreamError) -> ORJSONResponse:
    logger.info(
        "%s %s failed: %s",
        request.method,
        request.url.path,
        exc.message,
        extra={"ctx_code": exc.code, "ctx_status": exc.status_code},
    )
    return ORJSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.on_event("startup")
async def startup() -> None:
    """Warm up core singletons and start the job workers."""
    global _maintenance_task
    get_app_settings()
    get_database()
    get_embedding_model()
    get_vector_index()
    get_assembler()
    get_progress_hub()
    get_document_service()
    get_query_service()
    get_job_queue().start()
    _maintenance_task = asyncio.create_task(_maintenance_loop())


@app.on_event("shutdown")
async def shutdown() -> None:
    global _maintenance_task
    if _maintenance_task is not None:
        _maintenance_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _maintenance_task
        _maintenance_task = None
    get_job_queue().stop()


async def _maintenance_loop() -> None:
    """Purge idle uploads and forget old finished jobs."""
    settings = get_app_settings()
    while True:
        await asyncio.sleep(MAINTENANCE_INTERVAL_S)
        await run_in_threadpool(get_assembler().purge_expired)
        await run_in_threadpool(get_job_queue().prune, int(settings.job_retention_s * 1000))


@app.get("/health", response_model=HealthResponse, tags=["admin"])
def health() -> HealthResponse:
    """Liveness check with queue and index counters."""
    queue = get_job_queue()
    return HealthResponse(
        ok=True,
        workers=queue.worker_count if queue.running else 0,
        queue=QueueStatsResponse(**queue.stats().to_dict()),
        index_size=get_vector_index().size,
        active_uploads=get_assembler().active_uploads,
    )
