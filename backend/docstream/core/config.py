"""Application configuration handling."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, Mapping

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

ENV_PREFIX = "DSTR_"
DEFAULT_CONFIG_PATH = Path("~/.config/docstream/config.yaml")

_YAML_KEY_MAP: Mapping[tuple[str, ...], str] = {
    ("storage", "db_path"): "db_path",
    ("storage", "spool_dir"): "spool_dir",
    ("upload", "max_chunk_bytes"): "max_chunk_bytes",
    ("upload", "max_upload_bytes"): "max_upload_bytes",
    ("upload", "idle_timeout_s"): "upload_idle_timeout_s",
    ("queue", "workers"): "worker_count",
    ("queue", "max_retries"): "default_max_retries",
    ("queue", "retry_backoff_ms"): "retry_backoff_ms",
    ("queue", "retry_backoff_max_ms"): "retry_backoff_max_ms",
    ("queue", "retention_s"): "job_retention_s",
    ("progress", "buffer_size"): "progress_buffer_size",
    ("embeddings", "model"): "embedding_model",
    ("embeddings", "dim"): "embedding_dim",
    ("chunking", "mode"): "chunk_mode",
    ("retrieval", "threshold"): "query_threshold",
    ("retrieval", "top_k"): "top_k",
}


class Settings(BaseModel):
    """Runtime configuration loaded from YAML file and environment variables."""

    db_path: Path = Field(default=Path.home() / ".docstream" / "docstream.db")
    spool_dir: Path | None = Field(default=Path.home() / ".docstream" / "spool")
    max_chunk_bytes: int = Field(default=5 * 1024 * 1024, gt=0)
    max_upload_bytes: int = Field(default=50 * 1024 * 1024, gt=0)
    upload_idle_timeout_s: float = Field(default=900.0, gt=0)
    worker_count: int = Field(default=2, ge=1)
    default_max_retries: int = Field(default=3, ge=0)
    retry_backoff_ms: int = Field(default=1000, ge=0)
    retry_backoff_max_ms: int = Field(default=30_000, ge=0)
    job_retention_s: float = Field(default=24 * 60 * 60, gt=0)
    progress_buffer_size: int = Field(default=64, ge=1)
    embedding_model: str = "hashed-bow-v1"
    embedding_dim: int = Field(default=384, ge=1)
    chunk_mode: Literal["granular", "standard"] = "standard"
    query_threshold: float = 0.0
    top_k: int = Field(default=8, ge=1)

    model_config = {
        "validate_assignment": True,
        "extra": "ignore",
    }

    @field_validator("db_path", mode="before")
    @classmethod
    def _expand_db_path(cls, value: Any) -> Path:
        if isinstance(value, Path):
            return value.expanduser()
        if isinstance(value, str):
            return Path(value).expanduser()
        raise TypeError("db_path must be a path or string")

    @field_validator("spool_dir", mode="before")
    @classmethod
    def _expand_spool_dir(cls, value: Any) -> Path | None:
        # An empty value keeps chunks in memory.
        if value is None or value == "":
            return None
        if isinstance(value, Path):
            return value.expanduser()
        if isinstance(value, str):
            return Path(value).expanduser()
        raise TypeError("spool_dir must be a path, string or empty")

    @model_validator(mode="after")
    def _check_limits(self) -> "Settings":
        if self.max_chunk_bytes > self.max_upload_bytes:
            raise ValueError("max_chunk_bytes cannot exceed max_upload_bytes")
        if self.retry_backoff_max_ms < self.retry_backoff_ms:
            raise ValueError("retry_backoff_max_ms must be >= retry_backoff_ms")
        return self

    @classmethod
    def from_yaml(cls, path: Path | None = None) -> "Settings":
        """Load YAML config and overlay env vars; fall back to defaults."""
        config_path = cls._resolve_config_path(path)
        data: dict[str, Any] = {}
        if config_path and config_path.exists():
            with config_path.open("r", encoding="utf-8") as fh:
                raw = yaml.safe_load(fh) or {}
            data.update(_flatten_yaml(raw))
        data.update(_load_env_overrides())
        return cls(**data)

    @staticmethod
    def _resolve_config_path(path: Path | None) -> Path | None:
        if path is not None:
            return path.expanduser()
        env_path = os.environ.get(f"{ENV_PREFIX}CONFIG")
        if env_path:
            return Path(env_path).expanduser()
        resolved_default = DEFAULT_CONFIG_PATH.expanduser()
        return resolved_default if resolved_default.exists() else None


def _flatten_yaml(raw: Mapping[str, Any], prefix: tuple[str, ...] = ()) -> dict[str, Any]:
    """Flatten nested YAML configuration to Settings field names."""
    flat: dict[str, Any] = {}
    for key, value in raw.items():
        next_prefix = prefix + (key,)
        if isinstance(value, Mapping):
            flat.update(_flatten_yaml(value, prefix=next_prefix))
        else:
            mapped_key = _YAML_KEY_MAP.get(next_prefix)
            if mapped_key:
                flat[mapped_key] = value
            elif key in Settings.model_fields:
                flat[key] = value
    return flat


def _load_env_overrides() -> dict[str, Any]:
    """Map environment variables with DSTR_ prefix into Settings fields."""
    overrides: dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        field_name = key[len(ENV_PREFIX) :].lower()
        if field_name in Settings.model_fields:
            overrides[field_name] = value
    return overrides


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Cached settings accessor for dependency injection."""
    return Settings.from_yaml()


__all__ = ["Settings", "get_settings"]
