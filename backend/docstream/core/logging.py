"""Logging utilities for Docstream.

Records are rendered as one JSON object per line. Identifiers of the upload,
job or document being handled travel as ``ctx_*`` record attributes, either
through ``extra=`` or through a :class:`ContextAdapter`.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any, MutableMapping

import orjson

_DEFAULT_LEVEL = os.environ.get("DSTR_LOG_LEVEL", "INFO")
CONTEXT_PREFIX = "ctx_"
# Libraries that log every multipart part or connection at DEBUG.
_NOISY_LOGGERS = ("multipart", "python_multipart", "urllib3")


class JsonFormatter(logging.Formatter):
    """JSON log formatter that lifts ``ctx_*`` attributes into the payload."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "name": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        context = {
            key[len(CONTEXT_PREFIX) :]: value
            for key, value in record.__dict__.items()
            if key.startswith(CONTEXT_PREFIX) and value is not None
        }
        if context:
            payload["context"] = context
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack"] = record.stack_info
        return orjson.dumps(payload, default=str).decode("utf-8")


class ContextAdapter(logging.LoggerAdapter):
    """Logger bound to a fixed set of context fields, e.g. a job and its document."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        extra = {f"{CONTEXT_PREFIX}{key}": value for key, value in self.extra.items()}
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs

    def bind(self, **context: Any) -> "ContextAdapter":
        return ContextAdapter(self.logger, {**self.extra, **context})


def configure_logging(level: str | int = _DEFAULT_LEVEL, use_json: bool = True) -> None:
    """Send every record to stdout, as JSON unless ``use_json`` is off."""
    logging.captureWarnings(True)
    root = logging.getLogger()
    root.setLevel(level)
    handler = logging.StreamHandler(sys.stdout)
    if use_json:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s"))
    root.handlers = [handler]
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.INFO, root.level))


def get_logger(name: str = "docstream") -> logging.Logger:
    """Return configured logger, configuring root on first call."""
    if not logging.getLogger().handlers:
        configure_logging()
    return logging.getLogger(name)


def bind_context(logger: logging.Logger, **context: Any) -> ContextAdapter:
    """Wrap ``logger`` so each record carries ``context`` as ``ctx_*`` fields."""
    return ContextAdapter(logger, context)


__all__ = ["JsonFormatter", "ContextAdapter", "configure_logging", "get_logger", "bind_context"]
