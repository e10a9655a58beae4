"""
Ingestion & Retrieval — Pydantic Request/Response Schemas

Covers:
  - POST /api/v1/documents/upload           (JSON result or SSE frames)
  - POST /api/v1/documents/jobs/{id}/cancel
  - POST /api/v1/context/retrieve
  - GET  /api/v1/context/files
  - GET  /api/v1/context/files/content, DELETE /api/v1/context/files
  - POST /api/v1/context/base/init
  - GET  /api/v1/embeddings/test
  - The persisted per-file context record

Design decisions:
  - Wire format is camelCase (the browser client's convention); Python
    attributes stay snake_case. Models accept either on input and are
    dumped with by_alias=True.
  - Errors are always {success: false, error, errorType}; never stack traces.
  - Timestamps are ISO-8601 UTC strings.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from contextrag.core.exceptions import IngestionFailure


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class ContextMode(str, Enum):
    SESSION = "session"   # result returned to the caller only
    PERSIST = "persist"   # result also written to the user's context store


class IngestionErrorType(str, Enum):
    PDF_ERROR        = "PDF_ERROR"
    UNSUPPORTED_TYPE = "UNSUPPORTED_TYPE"
    NO_TEXT          = "NO_TEXT"
    FILE_TOO_LARGE   = "FILE_TOO_LARGE"
    CANCELLED        = "CANCELLED"
    GENERAL_ERROR    = "GENERAL_ERROR"


class FrameType(str, Enum):
    PROGRESS  = "progress"
    COMPLETE  = "complete"
    ERROR     = "error"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Ingestion result
# ---------------------------------------------------------------------------

class IngestionResponse(_CamelModel):
    """Single JSON result of a non-streamed ingestion (and the `complete` frame)."""
    success:              bool = True
    job_id:               str
    file_name:            str
    file_type:            str
    file_size:            int
    extracted_text:       str
    chunk_count:          int
    embeddings_count:     int
    embeddings_generated: bool
    source_strategy:      str
    page_count:           int
    extraction_status:    str = Field("completed", description="completed | completed_with_warnings")
    failed_pages:         list[int] = Field(default_factory=list)
    content_type:         str = Field("general", description="Chunking content-type bucket")
    chunked:              list[str] = Field(default_factory=list)
    persisted:            bool = False


class ErrorResponse(_CamelModel):
    """Uniform error envelope for ingestion failures."""
    success:    bool = False
    error:      str
    error_type: IngestionErrorType
    job_id:     str | None = None

    @classmethod
    def from_failure(cls, failure: IngestionFailure, job_id: str | None = None) -> "ErrorResponse":
        return cls(
            error=failure.error,
            error_type=failure.error_type,
            job_id=job_id or failure.job_id,
        )


class ProgressFrame(_CamelModel):
    type:         FrameType = FrameType.PROGRESS
    job_id:       str
    current_page: int
    total_pages:  int
    status:       str
    phase:        str


class CancelResponse(_CamelModel):
    job_id:    str
    cancelled: bool
    pending:   bool = Field(False, description="Job not started yet; the cancel applies when it registers")


# ---------------------------------------------------------------------------
# Persisted representation
# ---------------------------------------------------------------------------

class StoredVector(_CamelModel):
    chunk:     str
    embedding: list[float]
    index:     int


class ContextRecord(_CamelModel):
    file_name:            str
    file_type:            str
    file_size:            int
    chunked:              list[str]
    vectors:              list[StoredVector] = Field(default_factory=list)
    uploaded_at:          datetime
    embeddings_generated: bool


class ContextFileSummary(_CamelModel):
    file_name:            str
    file_type:            str
    file_size:            int
    chunk_count:          int
    character_count:      int
    uploaded_at:          datetime
    embeddings_generated: bool
    is_base_context:      bool = False


class ContextFileContent(_CamelModel):
    file_name: str
    content:   str = Field(..., description="The record's chunks joined by newlines")


class DeleteContextFileRequest(_CamelModel):
    # Both optional so a missing one is a 400, not a validation error
    file_name:   str | None = None
    uploaded_at: datetime | None = None


class DeleteContextFileResponse(_CamelModel):
    success: bool = True


class BaseContextInitResponse(_CamelModel):
    success: bool = True
    message: str
    info:    list[ContextFileSummary]


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------

class UploadedFile(_CamelModel):
    """
    One file in the chat client's working set.

    Either raw `content` (chunked server-side) or a pre-chunked `chunked`
    list; `vectors` may carry pre-computed embeddings aligned with it.
    """
    file_name: str
    content:   str = ""
    chunked:   list[str] | None = None
    vectors:   list[StoredVector] | None = None


class RetrieveRequest(_CamelModel):
    query:            str = Field(..., min_length=1)
    uploaded_files:   list[UploadedFile] = Field(default_factory=list)
    include_persisted: bool = False
    include_base:      bool = True


class RetrieveResponse(_CamelModel):
    chunks: list[str]
    count:  int
    mode:   str


# ---------------------------------------------------------------------------
# Embeddings health check
# ---------------------------------------------------------------------------

class EmbeddingsTestResponse(_CamelModel):
    success:             bool = True
    model:               str
    test_texts:          list[str]
    embedding_dimension: int
    embeddings_count:    int
    sample_embedding:    list[float] = Field(..., description="First 5 dimensions of the first vector")


class EmbeddingsTestFailure(_CamelModel):
    success: bool = False
    error:   str
    model:   str


# ---------------------------------------------------------------------------
# Pre-defined error factories (keeps route handlers thin)
# ---------------------------------------------------------------------------

class IngestionErrors:
    """Factories for every documented ingestion failure."""

    @staticmethod
    def unsupported_type(file_name: str) -> IngestionFailure:
        return IngestionFailure(
            f"'{file_name}' is not a supported file type. Upload a PDF or a plain-text file.",
            IngestionErrorType.UNSUPPORTED_TYPE.value, 415,
        )

    @staticmethod
    def file_too_large(size_bytes: int, limit_bytes: int) -> IngestionFailure:
        return IngestionFailure(
            f"File is {size_bytes:,} bytes; the limit is {limit_bytes // (1024 * 1024)} MB.",
            IngestionErrorType.FILE_TOO_LARGE.value, 413,
        )

    @staticmethod
    def unreadable_pdf() -> IngestionFailure:
        return IngestionFailure(
            "The PDF could not be read. It may be damaged, encrypted, or contain no recognizable text.",
            IngestionErrorType.PDF_ERROR.value, 422,
        )

    @staticmethod
    def pdf_processing_failed() -> IngestionFailure:
        return IngestionFailure(
            "Processing the PDF failed. Try again with a smaller or clearer document.",
            IngestionErrorType.PDF_ERROR.value, 422,
        )

    @staticmethod
    def no_text() -> IngestionFailure:
        return IngestionFailure(
            "No text could be extracted from the file.", IngestionErrorType.NO_TEXT.value, 422,
        )

    @staticmethod
    def cancelled() -> IngestionFailure:
        return IngestionFailure("Processing was cancelled.", IngestionErrorType.CANCELLED.value, 409)

    @staticmethod
    def general_error() -> IngestionFailure:
        return IngestionFailure(
            "An unexpected error occurred while processing the file.",
            IngestionErrorType.GENERAL_ERROR.value, 500,
        )
