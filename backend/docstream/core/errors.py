"""Error taxonomy shared by the upload, chunking, indexing and job layers."""

from __future__ import annotations


class DocstreamError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code: int = 400
    code: str = "docstream_error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.__class__.__name__)

    @property
    def message(self) -> str:
        return str(self.args[0]) if self.args else self.__class__.__name__

    def to_dict(self) -> dict[str, object]:
        return {"success": False, "error": self.message, "code": self.code}


class ProtocolViolation(DocstreamError):
    """Chunk metadata is malformed or inconsistent with the upload session."""

    status_code = 400
    code = "protocol_violation"


class ChunkTooLarge(DocstreamError):
    status_code = 413
    code = "chunk_too_large"


class Oversize(DocstreamError):
    """The running upload total exceeded the configured maximum."""

    status_code = 413
    code = "oversize"


class UploadNotFound(DocstreamError):
    status_code = 404
    code = "upload_not_found"


class InvalidStrategy(DocstreamError):
    status_code = 422
    code = "invalid_strategy"


class DimensionMismatch(DocstreamError):
    status_code = 422
    code = "dimension_mismatch"


class JobNotFound(DocstreamError):
    status_code = 404
    code = "job_not_found"


class RetriesExhausted(DocstreamError):
    """A job failed permanently after using every allowed attempt."""

    status_code = 409
    code = "retries_exhausted"


class UnsupportedDocument(DocstreamError):
    status_code = 415
    code = "unsupported_document"


class DocumentNotFound(DocstreamError):
    status_code = 404
    code = "document_not_found"


__all__ = [
    "DocstreamError",
    "ProtocolViolation",
    "ChunkTooLarge",
    "Oversize",
    "UploadNotFound",
    "InvalidStrategy",
    "DimensionMismatch",
    "JobNotFound",
    "RetriesExhausted",
    "UnsupportedDocument",
    "DocumentNotFound",
]
