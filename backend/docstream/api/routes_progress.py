"""Live progress as newline-delimited JSON."""

from __future__ import annotations

from typing import Iterator

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from docstream.api.dependencies import get_assembler, get_job_queue, get_progress_hub
from docstream.core.errors import DocstreamError, JobNotFound
from docstream.jobs.progress import ProgressEvent, ProgressHub, Subscription
from docstream.jobs.queue import JobQueue, JobSnapshot, JobStatus
from docstream.upload.assembler import ChunkAssembler

router = APIRouter()

KEEPALIVE_S = 1.0

_STATUS_EVENTS = {
    JobStatus.QUEUED: "queued",
    JobStatus.ACTIVE: "progress",
    JobStatus.COMPLETED: "completed",
    JobStatus.FAILED: "failed",
}


@router.get("/progress/{channel_id}", summary="Stream progress for a job or an upload")
async def stream_progress(
    channel_id: str,
    hub: ProgressHub = Depends(get_progress_hub),
    queue: JobQueue = Depends(get_job_queue),
    assembler: ChunkAssembler = Depends(get_assembler),
) -> StreamingResponse:
    # Subscribe first so nothing published while the current state is read is lost.
    subscription = hub.subscribe(channel_id)
    try:
        current = _current_state(channel_id, queue, assembler)
    except DocstreamError:
        subscription.cancel()
        raise
    return StreamingResponse(_lines(subscription, current), media_type="application/x-ndjson")


def _lines(subscription: Subscription, current: ProgressEvent) -> Iterator[bytes]:
    try:
        yield current.to_line()
        if current.terminal:
            return
        while True:
            event = subscription.get(timeout=KEEPALIVE_S)
            if event is None:
                if subscription.finished:
                    return
                yield b"\n"
                continue
            yield event.to_line()
    finally:
        subscription.cancel()


def _current_state(channel_id: str, queue: JobQueue, assembler: ChunkAssembler) -> ProgressEvent:
    try:
        return _job_event(queue.get_job(channel_id))
    except JobNotFound:
        session = assembler.status(channel_id)
    return ProgressEvent(
        type="progress",
        message=f"Received {session.received_count} of {session.expected_chunk_count} chunks",
        channel=channel_id,
        percent=round(100 * session.received_count / session.expected_chunk_count, 2),
        data={
            "upload_id": channel_id,
            "received": session.received_count,
            "total": session.expected_chunk_count,
            "missing": session.missing(),
        },
    )


def _job_event(job: JobSnapshot) -> ProgressEvent:
    message = job.progress_message or job.status.value
    if job.status is JobStatus.FAILED and job.last_error:
        message = job.last_error
    return ProgressEvent(
        type=_STATUS_EVENTS[job.status],
        message=message,
        channel=job.id,
        percent=job.progress,
        data=job.to_dict(),
    )


__all__ = ["router"]
