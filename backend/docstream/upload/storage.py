"""Chunk storage backends keyed by ``(upload_id, index)``."""

from __future__ import annotations

import shutil
import threading
from pathlib import Path
from typing import Iterator, Protocol


class ChunkStore(Protocol):
    """Persists raw chunk bytes until an upload is assembled or discarded."""

    def write(self, upload_id: str, index: int, data: bytes) -> None: ...

    def read(self, upload_id: str, index: int) -> bytes: ...

    def discard(self, upload_id: str) -> None: ...


class MemoryChunkStore:
    """Keeps chunks in process memory. Used when no spool directory is set."""

    def __init__(self) -> None:
        self._chunks: dict[str, dict[int, bytes]] = {}
        self._lock = threading.Lock()

    def write(self, upload_id: str, index: int, data: bytes) -> None:
        with self._lock:
            self._chunks.setdefault(upload_id, {})[index] = bytes(data)

    def read(self, upload_id: str, index: int) -> bytes:
        with self._lock:
            return self._chunks[upload_id][index]

    def discard(self, upload_id: str) -> None:
        with self._lock:
            self._chunks.pop(upload_id, None)

    def uploads(self) -> list[str]:
        with self._lock:
            return list(self._chunks)


class FilesystemChunkStore:
    """Spools each chunk to ``<root>/<upload_id>/<index>.part``."""

    def __init__(self, root: Path) -> None:
        self.root = root.expanduser()
        self.root.mkdir(parents=True, exist_ok=True)

    def write(self, upload_id: str, index: int, data: bytes) -> None:
        directory = self._upload_dir(upload_id)
        directory.mkdir(parents=True, exist_ok=True)
        target = directory / f"{index}.part"
        tmp = directory / f"{index}.part.tmp"
        tmp.write_bytes(data)
        # Replace atomically so a retried chunk never leaves a torn file.
        tmp.replace(target)

    def read(self, upload_id: str, index: int) -> bytes:
        return (self._upload_dir(upload_id) / f"{index}.part").read_bytes()

    def discard(self, upload_id: str) -> None:
        shutil.rmtree(self._upload_dir(upload_id), ignore_errors=True)

    def uploads(self) -> Iterator[str]:
        for path in self.root.iterdir():
            if path.is_dir():
                yield path.name

    def _upload_dir(self, upload_id: str) -> Path:
        return self.root / upload_id


__all__ = ["ChunkStore", "MemoryChunkStore", "FilesystemChunkStore"]
