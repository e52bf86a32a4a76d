"""Prometheus metrics instrumentation."""

from __future__ import annotations

from fastapi import Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

REGISTRY = CollectorRegistry()

REQUEST_COUNT = Counter(
    "dstr_requests_total",
    "Total HTTP requests",
    labelnames=("endpoint", "method", "status"),
    registry=REGISTRY,
)

REQUEST_LATENCY = Histogram(
    "dstr_request_latency_seconds",
    "Latency of HTTP requests",
    labelnames=("endpoint", "method"),
    registry=REGISTRY,
)

UPLOAD_CHUNKS = Counter(
    "dstr_upload_chunks_total",
    "Upload chunks accepted",
    registry=REGISTRY,
)

UPLOADS_FINISHED = Counter(
    "dstr_uploads_total",
    "Chunked uploads that left the assembler",
    labelnames=("outcome",),
    registry=REGISTRY,
)

JOBS_FINISHED = Counter(
    "dstr_jobs_finished_total",
    "Jobs that reached a terminal status",
    labelnames=("status",),
    registry=REGISTRY,
)

JOB_RETRIES = Counter(
    "dstr_job_retries_total",
    "Job attempts that were requeued after a failure",
    registry=REGISTRY,
)

JOB_DURATION = Histogram(
    "dstr_job_duration_seconds",
    "Duration of a single job attempt",
    labelnames=("outcome",),
    registry=REGISTRY,
)

QUEUE_DEPTH = Gauge(
    "dstr_queue_depth",
    "Jobs waiting for a worker",
    registry=REGISTRY,
)

INDEX_SIZE = Gauge(
    "dstr_index_vectors",
    "Number of vectors stored in the embedding index",
    registry=REGISTRY,
)

PROGRESS_DROPPED = Counter(
    "dstr_progress_events_dropped_total",
    "Progress events dropped because the listener buffer was full",
    registry=REGISTRY,
)


def metrics_response() -> Response:
    """Return Prometheus metrics as an HTTP response."""
    payload = generate_latest(REGISTRY)
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)


__all__ = [
    "REGISTRY",
    "REQUEST_COUNT",
    "REQUEST_LATENCY",
    "UPLOAD_CHUNKS",
    "UPLOADS_FINISHED",
    "JOBS_FINISHED",
    "JOB_RETRIES",
    "JOB_DURATION",
    "QUEUE_DEPTH",
    "INDEX_SIZE",
    "PROGRESS_DROPPED",
    "metrics_response",
]
