"""Job queue routes."""

from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Query
from starlette.concurrency import run_in_threadpool

from docstream.api.dependencies import get_job_queue
from docstream.jobs.queue import JobQueue
from docstream.models.dto import CancelResponse, JobResponse, QueueStatsResponse

router = APIRouter()


@router.get("", response_model=list[JobResponse], summary="List jobs in dispatch order")
async def list_jobs(
    status: Literal["queued", "active", "completed", "failed"] | None = Query(default=None),
    reference: str | None = Query(default=None, description="Document id"),
    limit: int = Query(default=100, ge=1, le=1000),
    queue: JobQueue = Depends(get_job_queue),
) -> list[JobResponse]:
    return [JobResponse(**job.to_dict()) for job in queue.list_jobs(status=status, reference=reference, limit=limit)]


@router.get("/stats", response_model=QueueStatsResponse, summary="Queue counters and wait estimate")
async def queue_stats(queue: JobQueue = Depends(get_job_queue)) -> QueueStatsResponse:
    return QueueStatsResponse(**queue.stats().to_dict())


@router.get("/{job_id}", response_model=JobResponse, summary="Fetch a job")
async def get_job(job_id: str, queue: JobQueue = Depends(get_job_queue)) -> JobResponse:
    return JobResponse(**queue.get_job(job_id).to_dict())


@router.delete("/{job_id}", response_model=CancelResponse, summary="Cancel a queued job")
async def cancel_job(job_id: str, queue: JobQueue = Depends(get_job_queue)) -> CancelResponse:
    # Cancelling runs the terminal listeners, which write to SQLite.
    cancelled = await run_in_threadpool(queue.cancel, job_id)
    return CancelResponse(success=True, cancelled=cancelled, job=JobResponse(**queue.get_job(job_id).to_dict()))


__all__ = ["router"]
