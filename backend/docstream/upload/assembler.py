"""Reassembly of chunked uploads.

Clients that cannot push a whole file in one request split it into numbered
chunks and submit them under a shared upload id, in any order. The assembler
persists every chunk, tracks which indices have arrived and, on the call that
supplies the last missing index, returns the concatenation of all chunks
ordered by index. That happens exactly once per upload id.

Sessions idle for longer than the configured timeout are purged together with
their partial bytes; chunks that arrive afterwards get ``UploadNotFound``.
"""

from __future__ import annotations

import re
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable

from docstream.core.errors import ChunkTooLarge, Oversize, ProtocolViolation, UploadNotFound
from docstream.core.logging import get_logger
from docstream.core.metrics import UPLOAD_CHUNKS, UPLOADS_FINISHED
from docstream.upload.storage import ChunkStore, MemoryChunkStore
from docstream.utils.hashing import sha256_parts
from docstream.utils.time import now_ms

logger = get_logger(__name__)

_UPLOAD_ID_RE = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")
_TOMBSTONE_LIMIT = 10_000


@dataclass(slots=True)
class UploadSession:
    upload_id: str
    original_name: str | None
    expected_chunk_count: int
    total_bytes_expected: int | None = None
    created_at: int = field(default_factory=now_ms)
    last_activity: float = 0.0
    received_chunks: dict[int, int] = field(default_factory=dict)
    bytes_received: int = 0
    closed: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def received_count(self) -> int:
        return len(self.received_chunks)

    @property
    def is_complete(self) -> bool:
        return len(self.received_chunks) == self.expected_chunk_count

    def missing(self) -> list[int]:
        return [idx for idx in range(self.expected_chunk_count) if idx not in self.received_chunks]


@dataclass(slots=True)
class AssemblyResult:
    """Outcome of a single chunk submission."""

    upload_id: str
    complete: bool
    received: int
    total: int
    bytes_received: int
    data: bytes | None = None
    original_name: str | None = None
    sha256: str | None = None

    @property
    def size_bytes(self) -> int:
        return len(self.data) if self.data is not None else self.bytes_received


class ChunkAssembler:
    """Collects chunks per upload id and emits the assembled bytes once."""

    def __init__(
        self,
        store: ChunkStore | None = None,
        max_chunk_bytes: int = 5 * 1024 * 1024,
        max_upload_bytes: int = 50 * 1024 * 1024,
        idle_timeout_s: float = 900.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store: ChunkStore = store if store is not None else MemoryChunkStore()
        self.max_chunk_bytes = max_chunk_bytes
        self.max_upload_bytes = max_upload_bytes
        self.idle_timeout_s = idle_timeout_s
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: dict[str, UploadSession] = {}
        # upload_id -> "expired" | "aborted" | "assembled"
        self._tombstones: OrderedDict[str, str] = OrderedDict()

    def submit_chunk(
        self,
        upload_id: str,
        index: int,
        total_chunks: int,
        data: bytes,
        original_name: str | None = None,
        total_bytes: int | None = None,
    ) -> AssemblyResult:
        """Persist one chunk; assemble when it is the last missing index."""
        self._validate(upload_id, index, total_chunks, data, total_bytes)
        self.purge_expired()
        session = self._get_or_create(upload_id, total_chunks, original_name, total_bytes)

        with session.lock:
            if session.closed:
                # Purged or aborted between lookup and lock acquisition.
                raise self._tombstone_error(upload_id)
            if session.expected_chunk_count != total_chunks:
                raise ProtocolViolation(
                    f"Upload {upload_id} declared {session.expected_chunk_count} chunks, got {total_chunks}"
                )
            if total_bytes is not None and session.total_bytes_expected not in (None, total_bytes):
                raise ProtocolViolation(
                    f"Upload {upload_id} declared {session.total_bytes_expected} bytes, got {total_bytes}"
                )
            if session.total_bytes_expected is None and total_bytes is not None:
                # A size first declared by a later chunk still bounds the upload.
                session.total_bytes_expected = total_bytes

            previous_size = session.received_chunks.get(index, 0)
            running_total = session.bytes_received - previous_size + len(data)
            limit = self.max_upload_bytes
            if session.total_bytes_expected is not None:
                limit = min(limit, session.total_bytes_expected)
            if running_total > limit:
                self._abort_locked(session, "aborted")
                raise Oversize(
                    f"Upload {upload_id} reached {running_total} bytes, limit is {limit}; upload discarded"
                )

            self.store.write(upload_id, index, data)
            session.received_chunks[index] = len(data)
            session.bytes_received = running_total
            session.last_activity = self._clock()
            UPLOAD_CHUNKS.inc()

            if not session.is_complete:
                return AssemblyResult(
                    upload_id=upload_id,
                    complete=False,
                    received=session.received_count,
                    total=session.expected_chunk_count,
                    bytes_received=session.bytes_received,
                    original_name=session.original_name,
                )
            return self._assemble_locked(session)

    def status(self, upload_id: str) -> UploadSession:
        with self._lock:
            session = self._sessions.get(upload_id)
        if session is None:
            raise self._tombstone_error(upload_id)
        return session

    def purge_expired(self) -> list[str]:
        """Drop sessions with no chunk activity for longer than the idle timeout."""
        now = self._clock()
        purged: list[str] = []
        with self._lock:
            candidates = [
                session
                for session in self._sessions.values()
                if now - session.last_activity > self.idle_timeout_s
            ]
        for session in candidates:
            # A session busy with a submission is, by definition, not idle.
            if not session.lock.acquire(blocking=False):
                continue
            try:
                if session.closed or self._clock() - session.last_activity <= self.idle_timeout_s:
                    continue
                self._abort_locked(session, "expired")
                purged.append(session.upload_id)
            finally:
                session.lock.release()
        for upload_id in purged:
            logger.info("Purged idle upload %s", upload_id)
        return purged

    @property
    def active_uploads(self) -> int:
        with self._lock:
            return len(self._sessions)

    # Internal helpers -------------------------------------------------

    def _validate(
        self,
        upload_id: str,
        index: int,
        total_chunks: int,
        data: bytes,
        total_bytes: int | None,
    ) -> None:
        if not upload_id or not _UPLOAD_ID_RE.match(upload_id) or upload_id in {".", ".."}:
            raise ProtocolViolation(f"Invalid upload id {upload_id!r}")
        if total_chunks < 1:
            raise ProtocolViolation(f"totalChunks must be at least 1, got {total_chunks}")
        if index < 0 or index >= total_chunks:
            raise ProtocolViolation(f"Chunk index {index} outside [0, {total_chunks})")
        if total_bytes is not None and total_bytes < 0:
            raise ProtocolViolation("totalBytes cannot be negative")
        if len(data) > self.max_chunk_bytes:
            raise ChunkTooLarge(f"Chunk of {len(data)} bytes exceeds the {self.max_chunk_bytes} byte limit")

    def _get_or_create(
        self,
        upload_id: str,
        total_chunks: int,
        original_name: str | None,
        total_bytes: int | None,
    ) -> UploadSession:
        with self._lock:
            session = self._sessions.get(upload_id)
            if session is not None:
                return session
            if upload_id in self._tombstones:
                raise self._tombstone_error(upload_id)
            session = UploadSession(
                upload_id=upload_id,
                original_name=original_name,
                expected_chunk_count=total_chunks,
                total_bytes_expected=total_bytes,
                last_activity=self._clock(),
            )
            self._sessions[upload_id] = session
        logger.debug("Started upload %s (%s chunks)", upload_id, total_chunks)
        return session

    def _assemble_locked(self, session: UploadSession) -> AssemblyResult:
        parts = [self.store.read(session.upload_id, idx) for idx in range(session.expected_chunk_count)]
        data = b"".join(parts)
        if session.total_bytes_expected is not None and len(data) != session.total_bytes_expected:
            self._abort_locked(session, "aborted")
            raise ProtocolViolation(
                f"Upload {session.upload_id} assembled {len(data)} bytes, expected {session.total_bytes_expected}"
            )
        self._close_locked(session, "assembled")
        self.store.discard(session.upload_id)
        UPLOADS_FINISHED.labels(outcome="assembled").inc()
        logger.info(
            "Assembled upload %s: %s chunks, %s bytes",
            session.upload_id,
            session.expected_chunk_count,
            len(data),
        )
        return AssemblyResult(
            upload_id=session.upload_id,
            complete=True,
            received=session.received_count,
            total=session.expected_chunk_count,
            bytes_received=len(data),
            data=data,
            original_name=session.original_name,
            sha256=sha256_parts(parts),
        )

    def _abort_locked(self, session: UploadSession, reason: str) -> None:
        self._close_locked(session, reason)
        self.store.discard(session.upload_id)
        UPLOADS_FINISHED.labels(outcome=reason).inc()

    def _close_locked(self, session: UploadSession, reason: str) -> None:
        session.closed = True
        with self._lock:
            self._sessions.pop(session.upload_id, None)
            self._tombstones[session.upload_id] = reason
            self._tombstones.move_to_end(session.upload_id)
            while len(self._tombstones) > _TOMBSTONE_LIMIT:
                self._tombstones.popitem(last=False)

    def _tombstone_error(self, upload_id: str) -> Exception:
        with self._lock:
            reason = self._tombstones.get(upload_id)
        if reason == "assembled":
            return ProtocolViolation(f"Upload {upload_id} was already assembled")
        if reason == "aborted":
            return UploadNotFound(f"Upload {upload_id} was aborted and its chunks discarded")
        if reason == "expired":
            return UploadNotFound(f"Upload {upload_id} expired after {self.idle_timeout_s:g}s without activity")
        return UploadNotFound(f"Upload {upload_id} not found")


__all__ = ["ChunkAssembler", "AssemblyResult", "UploadSession"]
