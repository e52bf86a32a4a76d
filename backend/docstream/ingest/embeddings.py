"""Embedding utilities."""

from __future__ import annotations

import hashlib
import math
import re
import threading
from array import array
from typing import ClassVar, Protocol, Sequence

from docstream.core.logging import get_logger

logger = get_logger(__name__)

_TOKEN_RE = re.compile(r"\w+")


class EmbeddingCapability(Protocol):
    """Anything that turns text into fixed-length vectors for one model."""

    model_name: str

    @property
    def dim(self) -> int: ...

    def embed(self, text: str) -> list[float]: ...

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]: ...


class EmbeddingModel:
    """Lightweight hashed embedding model with deterministic output."""

    _instances: ClassVar[dict[tuple[str, int], "EmbeddingModel"]] = {}
    _instances_lock: ClassVar[threading.Lock] = threading.Lock()

    def __init__(
        self,
        model_name: str,
        dim: int = 384,
    ) -> None:
        self.model_name = model_name
        self._dim = dim

    @classmethod
    def get(cls, model_name: str, dim: int = 384) -> "EmbeddingModel":
        key = (model_name or "hashed", dim)
        with cls._instances_lock:
            if key not in cls._instances:
                cls._instances[key] = EmbeddingModel(model_name=key[0], dim=dim)
            return cls._instances[key]

    @property
    def dim(self) -> int:
        return self._dim

    def embed(self, text: str) -> list[float]:
        return self._vectorize(text)

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        return [self._vectorize(text) for text in texts]

    def _vectorize(self, text: str) -> list[float]:
        vector = [0.0] * self._dim
        for token in _tokenize(text):
            vector[_hash_token(token, self._dim)] += 1.0
        _normalize(vector)
        return vector


def vector_to_bytes(vector: Sequence[float]) -> bytes:
    return array("f", vector).tobytes()


def vector_from_bytes(payload: bytes) -> list[float]:
    floats = array("f")
    floats.frombytes(payload)
    return list(floats)


def _tokenize(text: str) -> list[str]:
    return _TOKEN_RE.findall(text.lower())


def _hash_token(token: str, dim: int) -> int:
    digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
    value = int.from_bytes(digest, "big")
    return value % dim


def _normalize(vector: list[float]) -> None:
    norm = math.sqrt(sum(value * value for value in vector))
    if norm == 0:
        return
    inv = 1.0 / norm
    for idx, value in enumerate(vector):
        vector[idx] = value * inv


__all__ = ["EmbeddingCapability", "EmbeddingModel", "vector_to_bytes", "vector_from_bytes"]
