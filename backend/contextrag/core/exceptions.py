"""
Error taxonomy for the ingestion and retrieval core.

  ExtractionError   document-level extraction failure (or cancellation)
  EmbeddingError    transport / response failure from the embedding service
  CacheError        background cache maintenance failure (logged, never raised)
  PolicyError       chunking policy lookup failure
  IngestionFailure  user-facing failure surfaced by the ingestion entry points

Every externally visible failure carries a machine-readable kind and a
human-readable message; stack traces never leave the process.
"""

from __future__ import annotations

from enum import Enum


class ContextRagError(Exception):
    """Base class for all errors raised by the core."""


class ExtractionErrorKind(str, Enum):
    NO_READABLE_PAGES = "no_readable_pages"
    CORRUPTED         = "corrupted"
    OCR_FAILED        = "ocr_failed"
    CANCELLED         = "cancelled"


class ExtractionError(ContextRagError):
    def __init__(self, kind: ExtractionErrorKind, message: str = "") -> None:
        self.kind = kind
        self.message = message or kind.value.replace("_", " ")
        super().__init__(f"{kind.value}: {self.message}")

    @property
    def cancelled(self) -> bool:
        return self.kind is ExtractionErrorKind.CANCELLED


class EmbeddingErrorKind(str, Enum):
    TRANSPORT    = "transport"
    BAD_RESPONSE = "bad_response"


class EmbeddingError(ContextRagError):
    def __init__(
        self,
        kind:        EmbeddingErrorKind,
        message:     str,
        status_code: int | None = None,
    ) -> None:
        self.kind = kind
        self.message = message
        self.status_code = status_code
        super().__init__(f"{kind.value}: {message}")

    @property
    def retryable(self) -> bool:
        """Transport errors, rate limits and 5xx responses are worth retrying."""
        if self.kind is EmbeddingErrorKind.TRANSPORT:
            return True
        return self.status_code is not None and (
            self.status_code == 429 or self.status_code >= 500
        )


class CacheError(ContextRagError):
    pass


class PolicyError(ContextRagError):
    pass


class IngestionFailure(ContextRagError):
    """
    Structured ingestion failure.

    error       : human-readable message safe to show to end users
    error_type  : stable machine-readable code (see IngestionErrorType)
    status_code : HTTP status the transport layer should use
    job_id      : the ingestion job it belongs to, once one was assigned
    """

    def __init__(
        self,
        error:       str,
        error_type:  str,
        status_code: int = 422,
        job_id:      str | None = None,
    ) -> None:
        self.error = error
        self.error_type = error_type
        self.status_code = status_code
        self.job_id = job_id
        super().__init__(f"{error_type}: {error}")
