"""
Document Ingestion API Router

  POST /api/v1/documents/upload
  POST /api/v1/documents/jobs/{job_id}/cancel

Upload request (multipart/form-data):
  file            the document (PDF or plain text, max 200 MB)
  contextMode     "session" (default) | "persist"
  streamProgress  "true" to receive Server-Sent Events for large PDFs
  jobId           optional client-chosen id, so a cancel can be sent before
                  the first progress frame arrives

Response:
  - small files, or streamProgress unset: one JSON IngestionResponse
  - large PDFs with streamProgress: text/event-stream, one frame per event

      event: progress
      data: {"type": "progress", "jobId": "...", "currentPage": 3, ...}

    ending in exactly one `complete`, `error` or `cancelled` frame.

Failures before streaming starts are raised as IngestionFailure and rendered
by the application's exception handler as {success: false, error, errorType}.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import AsyncIterator, Optional

from fastapi import APIRouter, File, Form, Request, UploadFile, status
from fastapi.responses import JSONResponse, StreamingResponse

from contextrag.api.dependencies import Ingestion, UserId
from contextrag.core.config import settings
from contextrag.schemas.documents import (
    CancelResponse,
    ContextMode,
    ErrorResponse,
    IngestionErrors,
    IngestionResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["Document Ingestion"],
)

# Multipart framing on top of the file itself
_FORM_OVERHEAD_BYTES = 64 * 1024


# ---------------------------------------------------------------------------
# POST /documents/upload
# ---------------------------------------------------------------------------

@router.post(
    "/upload",
    response_model=IngestionResponse,
    summary="Extract, chunk and embed a document",
    responses={
        200: {"description": "IngestionResponse, or an SSE stream when streamProgress is set"},
        409: {"model": ErrorResponse, "description": "Job cancelled"},
        413: {"model": ErrorResponse, "description": "File exceeds the upload limit"},
        415: {"model": ErrorResponse, "description": "Neither a PDF nor a plain-text file"},
        422: {"model": ErrorResponse, "description": "Unreadable PDF or no extractable text"},
        500: {"model": ErrorResponse, "description": "Internal server error"},
    },
)
async def upload_document(
    request:         Request,
    service:         Ingestion,
    user:            UserId,
    file:            UploadFile = File(..., description="PDF or plain-text file"),
    context_mode:    ContextMode = Form(ContextMode.SESSION, alias="contextMode"),
    stream_progress: bool = Form(False, alias="streamProgress"),
    job_id:          Optional[str] = Form(None, alias="jobId", max_length=128),
):
    # Guard: reject oversized requests before reading the body
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit():
        if int(content_length) > settings.max_upload_bytes + _FORM_OVERHEAD_BYTES:
            raise IngestionErrors.file_too_large(int(content_length), settings.max_upload_bytes)

    data = await file.read()
    file_name = file.filename or "upload"
    document = service.build_document(data, file_name)
    job_id = job_id or uuid.uuid4().hex

    if context_mode is ContextMode.PERSIST and user is None:
        logger.warning("Upload | job=%s persist requested without X-User-Id, result not stored", job_id)

    if not service.should_stream(document, stream_progress):
        result = await service.ingest(document, context_mode, user=user, job_id=job_id)
        return JSONResponse(status_code=status.HTTP_200_OK, content=result.to_wire())

    logger.info("Upload | job=%s file=%s streaming progress", job_id, file_name)

    async def event_generator() -> AsyncIterator[str]:
        async for frame in service.ingest_stream(document, context_mode, user=user, job_id=job_id):
            yield _sse_event(frame["type"], frame)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control":     "no-cache",
            "X-Accel-Buffering": "no",    # disable nginx buffering for SSE
            "Connection":        "keep-alive",
            "X-Job-ID":          job_id,
        },
    )


# ---------------------------------------------------------------------------
# POST /documents/jobs/{job_id}/cancel
# ---------------------------------------------------------------------------

@router.post(
    "/jobs/{job_id}/cancel",
    response_model=CancelResponse,
    summary="Request cancellation of a running ingestion job",
    description=(
        "Cooperative: the job stops at its next checkpoint, which can be up to "
        "one page of OCR later. For an id that is not running yet `cancelled` is "
        "false and `pending` is true: an upload that later registers that id starts "
        "cancelled."
    ),
)
async def cancel_job(job_id: str, service: Ingestion) -> CancelResponse:
    cancelled = service.cancel(job_id)
    return CancelResponse(
        job_id=job_id,
        cancelled=cancelled,
        pending=not cancelled and service.registry.has_pending_cancel(job_id),
    )


# ---------------------------------------------------------------------------
# SSE serialisation helper
# ---------------------------------------------------------------------------

def _sse_event(event: str, data: dict) -> str:
    """
    Serialise a Server-Sent Event.

    Format::
        event: <event>\\n
        data: <json payload>\\n
        \\n
    """
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"
