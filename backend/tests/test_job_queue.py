"""Tests for the background job queue."""

from __future__ import annotations

import threading
import time

import pytest

from docstream.core.errors import JobNotFound, RetriesExhausted
from docstream.jobs.progress import ProgressHub
from docstream.jobs.queue import (
    JobOutcome,
    JobQueue,
    JobStatus,
    Priority,
    QueueOptions,
)

WAIT = 10.0


@pytest.fixture
def make_queue():
    queues: list[JobQueue] = []

    def factory(handler, **kwargs) -> JobQueue:
        kwargs.setdefault("retry_backoff_ms", 0)
        queue = JobQueue(handler, **kwargs)
        queues.append(queue)
        return queue

    yield factory
    for queue in queues:
        queue.stop()


def test_always_failing_job_is_attempted_max_retries_plus_one(make_queue) -> None:
    calls: list[int] = []

    def handler(payload, ctx):
        calls.append(ctx.attempt)
        raise RuntimeError("boom")

    queue = make_queue(handler, worker_count=1)
    queue.start()
    job_id = queue.enqueue("payload", QueueOptions(max_retries=2))
    snapshot = queue.wait_for(job_id, timeout=WAIT)

    assert snapshot.status is JobStatus.FAILED
    assert snapshot.attempts == 3
    assert calls == [1, 2, 3]
    assert snapshot.failure_code == "retries_exhausted"
    assert snapshot.last_error == "boom"
    with pytest.raises(RetriesExhausted):
        queue.result(job_id, timeout=WAIT)


def test_retry_outcome_follows_the_same_bound(make_queue) -> None:
    queue = make_queue(lambda payload, ctx: JobOutcome.retry("flaky"), worker_count=2)
    queue.start()
    job_id = queue.enqueue(None, QueueOptions(max_retries=0))
    snapshot = queue.wait_for(job_id, timeout=WAIT)
    assert snapshot.status is JobStatus.FAILED
    assert snapshot.attempts == 1


def test_retry_then_success(make_queue) -> None:
    def handler(payload, ctx):
        if ctx.attempt < 3:
            return JobOutcome.retry(f"attempt {ctx.attempt} failed")
        return JobOutcome.succeeded({"value": payload * 2})

    queue = make_queue(handler)
    queue.start()
    job_id = queue.enqueue(21, QueueOptions(max_retries=3))
    assert queue.result(job_id, timeout=WAIT) == {"value": 42}
    snapshot = queue.get_job(job_id)
    assert snapshot.status is JobStatus.COMPLETED
    assert snapshot.attempts == 3
    assert snapshot.progress == 100.0


def test_fail_outcome_is_terminal_immediately(make_queue) -> None:
    queue = make_queue(lambda payload, ctx: JobOutcome.fail("unreadable", code="unsupported_document"))
    queue.start()
    job_id = queue.enqueue(None, QueueOptions(max_retries=5))
    snapshot = queue.wait_for(job_id, timeout=WAIT)
    assert snapshot.status is JobStatus.FAILED
    assert snapshot.attempts == 1
    assert snapshot.failure_code == "unsupported_document"


def test_plain_return_value_counts_as_success(make_queue) -> None:
    queue = make_queue(lambda payload, ctx: payload.upper())
    queue.start()
    job_id = queue.enqueue("done")
    assert queue.result(job_id, timeout=WAIT) == "DONE"


def test_priority_order_with_single_worker(make_queue) -> None:
    started: list[str] = []

    def handler(payload, ctx):
        started.append(payload)
        return JobOutcome.succeeded()

    queue = make_queue(handler, worker_count=1)
    ids = [
        queue.enqueue("low", QueueOptions(priority=Priority.LOW)),
        queue.enqueue("critical", QueueOptions(priority="critical")),
        queue.enqueue("medium", QueueOptions(priority=Priority.MEDIUM)),
        queue.enqueue("high-1", QueueOptions(priority=Priority.HIGH)),
        queue.enqueue("high-2", QueueOptions(priority=Priority.HIGH)),
    ]
    assert [job.label for job in queue.list_jobs()] == [None] * 5
    assert [job.id for job in queue.list_jobs()] == [ids[1], ids[3], ids[4], ids[2], ids[0]]
    queue.start()
    for job_id in ids:
        queue.wait_for(job_id, timeout=WAIT)
    assert started == ["critical", "high-1", "high-2", "medium", "low"]


def test_cancel_queued_job(make_queue) -> None:
    calls: list[str] = []
    finished = []
    queue = make_queue(lambda payload, ctx: calls.append(payload))
    queue.add_listener(finished.append)
    job_id = queue.enqueue("never")

    assert queue.cancel(job_id) is True
    snapshot = queue.get_job(job_id)
    assert snapshot.status is JobStatus.FAILED
    assert snapshot.last_error == "Cancelled by user"
    assert [job.id for job in finished] == [job_id]

    queue.start()
    other = queue.enqueue("runs")
    queue.wait_for(other, timeout=WAIT)
    assert calls == ["runs"]
    assert queue.cancel(job_id) is False


def test_cancel_unknown_job() -> None:
    queue = JobQueue(lambda payload, ctx: None)
    with pytest.raises(JobNotFound):
        queue.cancel("job_missing")
    with pytest.raises(JobNotFound):
        queue.get_job("job_missing")


def test_cancel_active_job_blocks_retries(make_queue) -> None:
    entered = threading.Event()
    release = threading.Event()

    def handler(payload, ctx):
        entered.set()
        release.wait(WAIT)
        return JobOutcome.retry("interrupted")

    queue = make_queue(handler, worker_count=1)
    queue.start()
    job_id = queue.enqueue(None, QueueOptions(max_retries=3))
    assert entered.wait(WAIT)
    assert queue.cancel(job_id) is False
    assert queue.get_job(job_id).cancel_requested is True
    release.set()

    snapshot = queue.wait_for(job_id, timeout=WAIT)
    assert snapshot.status is JobStatus.FAILED
    assert snapshot.attempts == 1
    assert snapshot.failure_code == "cancelled"


def test_backoff_delays_the_next_attempt(make_queue) -> None:
    attempts: list[float] = []

    def handler(payload, ctx):
        attempts.append(time.monotonic())
        if len(attempts) == 1:
            return JobOutcome.retry("first attempt fails")
        return JobOutcome.succeeded()

    queue = make_queue(handler, worker_count=1, retry_backoff_ms=150, retry_backoff_max_ms=150)
    queue.start()
    job_id = queue.enqueue(None)
    queue.result(job_id, timeout=WAIT)
    assert attempts[1] - attempts[0] >= 0.14


def test_backoff_is_exponential_and_capped() -> None:
    queue = JobQueue(lambda payload, ctx: None, retry_backoff_ms=100, retry_backoff_max_ms=500)
    assert [queue._backoff_ms(n) for n in (1, 2, 3, 4, 5)] == [100, 200, 400, 500, 500]


def test_stats_and_estimates() -> None:
    queue = JobQueue(lambda payload, ctx: None, worker_count=2)
    small = queue.enqueue(None, size_bytes=0)
    large = queue.enqueue(None, size_bytes=10 * 1024 * 1024, cost_factor=2.0)
    assert queue.get_job(small).estimated_duration_ms == 10_000
    assert queue.get_job(large).estimated_duration_ms == 100_000
    stats = queue.stats()
    assert (stats.queued, stats.active, stats.completed, stats.failed, stats.total) == (2, 0, 0, 0, 2)
    assert stats.estimated_wait_ms == (10_000 + 100_000) // 2


def test_progress_events_reach_the_listener(make_queue) -> None:
    hub = ProgressHub(buffer_size=32)

    def handler(payload, ctx):
        ctx.report(50, "halfway")
        return JobOutcome.succeeded()

    queue = make_queue(handler, progress_hub=hub)
    job_id = queue.enqueue(None)
    subscription = hub.subscribe(job_id)
    queue.start()
    events = list(subscription)
    assert [event.type for event in events] == ["started", "progress", "completed"]
    assert events[1].percent == 50
    assert events[-1].data["status"] == "completed"


def test_listener_sees_terminal_snapshot(make_queue) -> None:
    seen = []
    queue = make_queue(lambda payload, ctx: JobOutcome.succeeded("ok"))
    queue.add_listener(seen.append)
    queue.start()
    job_id = queue.enqueue(None, reference="doc_1", label="report.pdf")
    queue.wait_for(job_id, timeout=WAIT)
    assert len(seen) == 1
    assert seen[0].status is JobStatus.COMPLETED
    assert seen[0].reference == "doc_1"
    assert seen[0].label == "report.pdf"


def test_prune_drops_old_terminal_jobs(make_queue) -> None:
    queue = make_queue(lambda payload, ctx: None)
    queue.start()
    done = queue.enqueue(None)
    queue.wait_for(done, timeout=WAIT)
    assert queue.prune(max_age_ms=60_000) == 0
    time.sleep(0.01)
    assert queue.prune(max_age_ms=0) == 1
    with pytest.raises(JobNotFound):
        queue.get_job(done)
    stats = queue.stats()
    assert stats.total == 0
    assert stats.completed == 1


def test_invalid_options() -> None:
    with pytest.raises(ValueError):
        QueueOptions(max_retries=-1)
    with pytest.raises(ValueError):
        QueueOptions(priority="urgent")


def test_active_jobs_never_exceed_worker_count(make_queue) -> None:
    lock = threading.Lock()
    active = 0
    peak = 0

    def handler(payload, ctx):
        nonlocal active, peak
        with lock:
            active += 1
            peak = max(peak, active)
        time.sleep(0.1)
        with lock:
            active -= 1

    queue = make_queue(handler, worker_count=3)
    job_ids = [queue.enqueue(idx) for idx in range(12)]
    queue.start()
    sampled = []
    while not all(queue.get_job(job_id).terminal for job_id in job_ids):
        sampled.append(queue.stats().active)
        time.sleep(0.01)

    assert peak == 3
    assert max(sampled) <= 3
    assert queue.stats().completed == 12
