"""In-memory priority job queue with bounded worker threads.

Jobs are dispatched highest priority first and FIFO within a priority. A
handler reports how an attempt went through :class:`JobOutcome`; unhandled
exceptions count as a retry. Retries wait for an exponential backoff before
they are dispatched again. Nothing here survives a restart.
"""

from __future__ import annotations

import heapq
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Literal

from docstream.core.errors import JobNotFound, RetriesExhausted
from docstream.core.logging import get_logger
from docstream.core.metrics import JOB_DURATION, JOB_RETRIES, JOBS_FINISHED, QUEUE_DEPTH
from docstream.jobs.progress import ProgressHub
from docstream.utils.ids import new_id
from docstream.utils.time import now_ms

logger = get_logger(__name__)

CANCELLED_MESSAGE = "Cancelled by user"
MIN_ESTIMATE_MS = 10_000
MS_PER_MB = 5_000


class Priority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]

    @classmethod
    def parse(cls, value: "Priority | str") -> "Priority":
        if isinstance(value, Priority):
            return value
        try:
            return cls(str(value).lower())
        except ValueError as exc:
            raise ValueError(f"Unknown priority: {value}") from exc


_PRIORITY_RANK = {
    Priority.CRITICAL: 3,
    Priority.HIGH: 2,
    Priority.MEDIUM: 1,
    Priority.LOW: 0,
}


class JobStatus(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


@dataclass(slots=True)
class QueueOptions:
    priority: Priority = Priority.MEDIUM
    max_retries: int = 3

    def __post_init__(self) -> None:
        self.priority = Priority.parse(self.priority)
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")


@dataclass(frozen=True, slots=True)
class JobOutcome:
    """What a handler reports back for one attempt."""

    kind: Literal["succeeded", "retry", "fail"]
    result: Any = None
    error: str | None = None
    code: str | None = None

    @classmethod
    def succeeded(cls, result: Any = None) -> "JobOutcome":
        return cls("succeeded", result=result)

    @classmethod
    def retry(cls, error: str) -> "JobOutcome":
        return cls("retry", error=error)

    @classmethod
    def fail(cls, error: str, code: str = "failed") -> "JobOutcome":
        return cls("fail", error=error, code=code)


@dataclass(frozen=True, slots=True)
class JobSnapshot:
    """Read-only copy of a job handed to callers."""

    id: str
    reference: str | None
    label: str | None
    priority: Priority
    status: JobStatus
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
    result: Any = None

    @property
    def terminal(self) -> bool:
        return self.status.terminal

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "reference": self.reference,
            "label": self.label,
            "priority": self.priority.value,
            "status": self.status.value,
            "attempts": self.attempts,
            "max_retries": self.max_retries,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "estimated_duration_ms": self.estimated_duration_ms,
            "last_error": self.last_error,
            "failure_code": self.failure_code,
            "progress": self.progress,
            "progress_message": self.progress_message,
            "cancel_requested": self.cancel_requested,
            "result": self.result,
        }


@dataclass(slots=True)
class Job:
    """Mutable job state. Only :class:`JobQueue` touches it, under its lock."""

    id: str
    payload: Any
    priority: Priority
    max_retries: int
    seq: int
    reference: str | None = None
    label: str | None = None
    size_bytes: int = 0
    cost_factor: float = 1.0
    status: JobStatus = JobStatus.QUEUED
    attempts: int = 0
    created_at: int = field(default_factory=now_ms)
    started_at: int | None = None
    finished_at: int | None = None
    estimated_duration_ms: int = MIN_ESTIMATE_MS
    last_error: str | None = None
    failure_code: str | None = None
    progress: float = 0.0
    progress_message: str = ""
    cancel_requested: bool = False
    result: Any = None
    attempt_started: float = 0.0

    def snapshot(self) -> JobSnapshot:
        return JobSnapshot(
            id=self.id,
            reference=self.reference,
            label=self.label,
            priority=self.priority,
            status=self.status,
            attempts=self.attempts,
            max_retries=self.max_retries,
            created_at=self.created_at,
            started_at=self.started_at,
            finished_at=self.finished_at,
            estimated_duration_ms=self.estimated_duration_ms,
            last_error=self.last_error,
            failure_code=self.failure_code,
            progress=self.progress,
            progress_message=self.progress_message,
            cancel_requested=self.cancel_requested,
            result=self.result,
        )


@dataclass(frozen=True, slots=True)
class QueueStats:
    """Queued and active are current. Completed and failed include pruned jobs."""

    queued: int
    active: int
    completed: int
    failed: int
    total: int
    estimated_wait_ms: int

    def to_dict(self) -> dict[str, int]:
        return {
            "queued": self.queued,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "total": self.total,
            "estimated_wait_ms": self.estimated_wait_ms,
        }


class JobContext:
    """Handed to the handler for one attempt."""

    def __init__(self, queue: "JobQueue", job: Job) -> None:
        self._queue = queue
        self._job = job
        self.job_id = job.id
        self.attempt = job.attempts
        self.reference = job.reference

    @property
    def cancel_requested(self) -> bool:
        return self._queue._is_cancel_requested(self.job_id)

    def report(self, percent: float, message: str) -> None:
        self._queue._report(self._job, percent, message)


Handler = Callable[[Any, JobContext], "JobOutcome | Any"]
Listener = Callable[[JobSnapshot], None]


class JobQueue:
    def __init__(
        self,
        handler: Handler,
        worker_count: int = 2,
        progress_hub: ProgressHub | None = None,
        retry_backoff_ms: int = 1000,
        retry_backoff_max_ms: int = 30_000,
    ) -> None:
        if worker_count < 1:
            raise ValueError("worker_count must be >= 1")
        self._handler = handler
        self.worker_count = worker_count
        self.progress_hub = progress_hub
        self.retry_backoff_ms = retry_backoff_ms
        self.retry_backoff_max_ms = retry_backoff_max_ms
        self._jobs: dict[str, Job] = {}
        # (-rank, seq, job_id); entries for jobs no longer queued are skipped on pop.
        self._ready: list[tuple[int, int, str]] = []
        # (ready_at monotonic, seq, job_id) for retries waiting out their backoff.
        self._delayed: list[tuple[float, int, str]] = []
        self._counts = {status: 0 for status in JobStatus}
        self._listeners: list[Listener] = []
        self._cond = threading.Condition()
        self._workers: list[threading.Thread] = []
        self._stopping = False
        self._seq = 0
        self._throughput_bytes = 0
        self._throughput_ms = 0.0

    # Public API ---------------------------------------------------------

    def enqueue(
        self,
        payload: Any,
        options: QueueOptions | None = None,
        *,
        reference: str | None = None,
        label: str | None = None,
        size_bytes: int = 0,
        cost_factor: float = 1.0,
    ) -> str:
        options = options or QueueOptions()
        with self._cond:
            self._seq += 1
            job = Job(
                id=new_id("job", timestamped=True),
                payload=payload,
                priority=options.priority,
                max_retries=options.max_retries,
                seq=self._seq,
                reference=reference,
                label=label,
                size_bytes=size_bytes,
                cost_factor=cost_factor,
            )
            job.estimated_duration_ms = self._estimate(size_bytes, cost_factor)
            self._jobs[job.id] = job
            self._counts[JobStatus.QUEUED] += 1
            heapq.heappush(self._ready, (-job.priority.rank, job.seq, job.id))
            self._update_depth()
            self._cond.notify()
        logger.info(
            "Queued job %s (%s)",
            job.id,
            job.priority.value,
            extra={"ctx_job_id": job.id, "ctx_reference": reference},
        )
        self._publish(job.id, "queued", f"Queued with {job.priority.value} priority", 0.0, {"job_id": job.id})
        return job.id

    def get_job(self, job_id: str) -> JobSnapshot:
        with self._cond:
            return self._require(job_id).snapshot()

    def cancel(self, job_id: str) -> bool:
        """Cancel a queued job. Active jobs only get their retries blocked."""
        with self._cond:
            job = self._require(job_id)
            if job.status is JobStatus.ACTIVE:
                job.cancel_requested = True
                return False
            if job.status is not JobStatus.QUEUED:
                return False
            job.cancel_requested = True
            job.last_error = CANCELLED_MESSAGE
            job.failure_code = "cancelled"
            self._finalize_locked(job, JobStatus.FAILED)
            snapshot = job.snapshot()
        logger.info("Cancelled job %s", job_id, extra={"ctx_job_id": job_id})
        self._publish(job_id, "failed", CANCELLED_MESSAGE, snapshot.progress, snapshot.to_dict())
        self._notify_listeners(snapshot)
        return True

    def stats(self) -> QueueStats:
        with self._cond:
            pending_ms = 0
            for job in self._jobs.values():
                if job.status is JobStatus.QUEUED:
                    pending_ms += job.estimated_duration_ms
                elif job.status is JobStatus.ACTIVE:
                    elapsed = (time.monotonic() - job.attempt_started) * 1000
                    pending_ms += max(int(job.estimated_duration_ms - elapsed), 0)
            return QueueStats(
                queued=self._counts[JobStatus.QUEUED],
                active=self._counts[JobStatus.ACTIVE],
                completed=self._counts[JobStatus.COMPLETED],
                failed=self._counts[JobStatus.FAILED],
                total=len(self._jobs),
                estimated_wait_ms=pending_ms // self.worker_count,
            )

    def list_jobs(
        self,
        status: JobStatus | str | None = None,
        reference: str | None = None,
        limit: int = 100,
    ) -> list[JobSnapshot]:
        """Jobs in dispatch order: priority first, then enqueue order."""
        wanted = JobStatus(status) if status is not None else None
        with self._cond:
            jobs = [
                job
                for job in self._jobs.values()
                if (wanted is None or job.status is wanted) and (reference is None or job.reference == reference)
            ]
            jobs.sort(key=lambda job: (-job.priority.rank, job.seq))
            return [job.snapshot() for job in jobs[:limit]]

    def wait_for(self, job_id: str, timeout: float | None = None) -> JobSnapshot:
        """Block until the job is terminal; returns the latest snapshot on timeout."""
        with self._cond:
            job = self._require(job_id)
            self._cond.wait_for(lambda: job.status.terminal, timeout=timeout)
            return job.snapshot()

    def result(self, job_id: str, timeout: float | None = None) -> Any:
        snapshot = self.wait_for(job_id, timeout)
        if snapshot.status is JobStatus.FAILED:
            raise RetriesExhausted(
                f"Job {job_id} failed after {snapshot.attempts} attempt(s): {snapshot.last_error}"
            )
        if snapshot.status is not JobStatus.COMPLETED:
            raise TimeoutError(f"Job {job_id} is still {snapshot.status.value}")
        return snapshot.result

    def prune(self, max_age_ms: int) -> int:
        """Forget terminal jobs that finished more than ``max_age_ms`` ago.

        Completed and failed counts keep including them; ``total`` does not.
        """
        cutoff = now_ms() - max_age_ms
        with self._cond:
            stale = [
                job
                for job in self._jobs.values()
                if job.status.terminal and job.finished_at is not None and job.finished_at < cutoff
            ]
            for job in stale:
                del self._jobs[job.id]
        if stale:
            logger.info("Pruned %s finished jobs", len(stale))
        return len(stale)

    def add_listener(self, listener: Listener) -> None:
        """Call ``listener`` with the snapshot of every job that turns terminal."""
        with self._cond:
            self._listeners.append(listener)

    def start(self) -> None:
        with self._cond:
            if self._workers:
                return
            self._stopping = False
            self._workers = [
                threading.Thread(target=self._worker_loop, name=f"dstr-worker-{idx}", daemon=True)
                for idx in range(self.worker_count)
            ]
            workers = list(self._workers)
        for worker in workers:
            worker.start()
        logger.info("Started %s job workers", len(workers))

    def stop(self, timeout: float | None = 5.0) -> None:
        """Stop the workers after their current attempt; queued jobs stay queued."""
        with self._cond:
            self._stopping = True
            workers, self._workers = self._workers, []
            self._cond.notify_all()
        for worker in workers:
            worker.join(timeout)

    @property
    def running(self) -> bool:
        with self._cond:
            return bool(self._workers) and not self._stopping

    # Worker side ----------------------------------------------------------

    def _worker_loop(self) -> None:
        while True:
            job = self._next_job()
            if job is None:
                return
            self._run(job)

    def _next_job(self) -> Job | None:
        with self._cond:
            while True:
                if self._stopping:
                    return None
                self._promote_delayed()
                while self._ready:
                    _, _, job_id = heapq.heappop(self._ready)
                    job = self._jobs.get(job_id)
                    if job is None or job.status is not JobStatus.QUEUED:
                        continue
                    self._set_status(job, JobStatus.ACTIVE)
                    job.attempts += 1
                    job.started_at = now_ms()
                    job.attempt_started = time.monotonic()
                    job.progress = 0.0
                    self._update_depth()
                    return job
                timeout = None
                if self._delayed:
                    timeout = max(self._delayed[0][0] - time.monotonic(), 0.0)
                self._cond.wait(timeout)

    def _promote_delayed(self) -> None:
        now = time.monotonic()
        while self._delayed and self._delayed[0][0] <= now:
            _, seq, job_id = heapq.heappop(self._delayed)
            job = self._jobs.get(job_id)
            if job is not None and job.status is JobStatus.QUEUED:
                heapq.heappush(self._ready, (-job.priority.rank, seq, job_id))

    def _run(self, job: Job) -> None:
        context = JobContext(self, job)
        self._publish(
            job.id,
            "started",
            f"Attempt {context.attempt} of {job.max_retries + 1} started",
            0.0,
            {"job_id": job.id, "attempt": context.attempt},
        )
        started = time.perf_counter()
        try:
            outcome = self._handler(job.payload, context)
            if not isinstance(outcome, JobOutcome):
                outcome = JobOutcome.succeeded(outcome)
        except Exception as exc:
            logger.exception("Job %s attempt %s raised", job.id, context.attempt, extra={"ctx_job_id": job.id})
            outcome = JobOutcome.retry(str(exc) or exc.__class__.__name__)
        elapsed = time.perf_counter() - started
        JOB_DURATION.labels(outcome=outcome.kind).observe(elapsed)
        self._complete_attempt(job, outcome, elapsed * 1000)

    def _complete_attempt(self, job: Job, outcome: JobOutcome, elapsed_ms: float) -> None:
        final_status: JobStatus | None = None
        with self._cond:
            if outcome.kind == "succeeded":
                job.result = outcome.result
                job.progress = 100.0
                job.progress_message = "Completed"
                self._record_throughput(job, elapsed_ms)
                final_status = JobStatus.COMPLETED
                message = "Completed"
            elif outcome.kind == "fail":
                job.last_error = outcome.error
                job.failure_code = outcome.code or "failed"
                final_status = JobStatus.FAILED
                message = outcome.error or "Failed"
            elif job.attempts <= job.max_retries and not job.cancel_requested:
                job.last_error = outcome.error
                delay_ms = self._backoff_ms(job.attempts)
                self._set_status(job, JobStatus.QUEUED)
                if delay_ms > 0:
                    heapq.heappush(self._delayed, (time.monotonic() + delay_ms / 1000, job.seq, job.id))
                else:
                    heapq.heappush(self._ready, (-job.priority.rank, job.seq, job.id))
                JOB_RETRIES.inc()
                self._update_depth()
                self._cond.notify_all()
                message = f"Attempt {job.attempts} failed, retrying in {delay_ms} ms: {outcome.error}"
            else:
                if job.cancel_requested:
                    job.failure_code = "cancelled"
                    job.last_error = f"{CANCELLED_MESSAGE}: {outcome.error}"
                else:
                    job.failure_code = "retries_exhausted"
                    job.last_error = outcome.error
                final_status = JobStatus.FAILED
                message = job.last_error or "Failed"
            if final_status is not None:
                job.finished_at = now_ms()
            snapshot = job.snapshot()

        if final_status is None:
            logger.warning("Job %s: %s", job.id, message, extra={"ctx_job_id": job.id})
            self._publish(job.id, "retrying", message, snapshot.progress, snapshot.to_dict())
            return

        # Listeners see the terminal state before waiters are released.
        snapshot = replace(snapshot, status=final_status)
        self._notify_listeners(snapshot)
        with self._cond:
            self._finalize_locked(job, final_status)
        log = logger.info if final_status is JobStatus.COMPLETED else logger.warning
        log(
            "Job %s %s after %s attempt(s)",
            job.id,
            final_status.value,
            snapshot.attempts,
            extra={"ctx_job_id": job.id},
        )
        self._publish(job.id, final_status.value, message, snapshot.progress, snapshot.to_dict())

    # Internal helpers -------------------------------------------------

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(f"Job {job_id} not found")
        return job

    def _set_status(self, job: Job, status: JobStatus) -> None:
        self._counts[job.status] -= 1
        self._counts[status] += 1
        job.status = status

    def _finalize_locked(self, job: Job, status: JobStatus) -> None:
        self._set_status(job, status)
        if job.finished_at is None:
            job.finished_at = now_ms()
        JOBS_FINISHED.labels(status=status.value).inc()
        self._update_depth()
        self._cond.notify_all()

    def _update_depth(self) -> None:
        QUEUE_DEPTH.set(self._counts[JobStatus.QUEUED])

    def _backoff_ms(self, attempts: int) -> int:
        return min(self.retry_backoff_ms * 2 ** (attempts - 1), self.retry_backoff_max_ms)

    def _estimate(self, size_bytes: int, cost_factor: float) -> int:
        """Display-only duration guess in milliseconds."""
        if self._throughput_bytes > 0 and self._throughput_ms > 0:
            bytes_per_ms = self._throughput_bytes / self._throughput_ms
            return max(int(size_bytes / bytes_per_ms * cost_factor), 1)
        size_mb = size_bytes / (1024 * 1024)
        return int(max(size_mb * MS_PER_MB, MIN_ESTIMATE_MS) * cost_factor)

    def _record_throughput(self, job: Job, elapsed_ms: float) -> None:
        if job.size_bytes <= 0 or elapsed_ms <= 0:
            return
        # Normalized to a cost factor of 1 so estimates can scale it back up.
        self._throughput_bytes += job.size_bytes
        self._throughput_ms += elapsed_ms / max(job.cost_factor, 1e-6)

    def _is_cancel_requested(self, job_id: str) -> bool:
        with self._cond:
            job = self._jobs.get(job_id)
            return job is not None and job.cancel_requested

    def _report(self, job: Job, percent: float, message: str) -> None:
        percent = min(max(float(percent), 0.0), 100.0)
        with self._cond:
            if job.status is not JobStatus.ACTIVE:
                return
            job.progress = percent
            job.progress_message = message
        self._publish(job.id, "progress", message, percent, {"job_id": job.id, "attempt": job.attempts})

    def _publish(
        self,
        job_id: str,
        event_type: str,
        message: str,
        percent: float | None,
        data: dict[str, Any] | None,
    ) -> None:
        if self.progress_hub is not None:
            self.progress_hub.publish(job_id, event_type, message, percent, data)

    def _notify_listeners(self, snapshot: JobSnapshot) -> None:
        with self._cond:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Job listener failed for %s", snapshot.id, extra={"ctx_job_id": snapshot.id})


__all__ = [
    "Priority",
    "JobStatus",
    "QueueOptions",
    "JobOutcome",
    "JobSnapshot",
    "JobContext",
    "QueueStats",
    "JobQueue",
]
