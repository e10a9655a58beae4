"""
Context Retrieval API Router

  POST   /api/v1/context/retrieve        top-k passages for a chat turn
  GET    /api/v1/context/files           the caller's persisted files plus the base context
  GET    /api/v1/context/files/content   one file's text
  DELETE /api/v1/context/files           remove one of the caller's files
  POST   /api/v1/context/base/init       seed the shared base context

Retrieval works over the files the chat client sends with the request and,
with includePersisted, the caller's stored context records (which already
carry their chunks and vectors, so they are never re-embedded). The shared
base context is merged in unless includeBase is false.

A user's file is addressed by (fileName, uploadedAt). Base files are
addressed by their "[BASE] " display name and are read-only here.
"""

from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, HTTPException, Query, status
from fastapi.responses import JSONResponse

from contextrag.api.dependencies import RequiredUserId, Retriever, Store, UserId
from contextrag.schemas.documents import (
    BaseContextInitResponse,
    ContextFileContent,
    ContextFileSummary,
    DeleteContextFileRequest,
    DeleteContextFileResponse,
    RetrieveRequest,
    RetrieveResponse,
)
from contextrag.services import base_context

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/context",
    tags=["Context Retrieval"],
)


@router.post(
    "/retrieve",
    response_model=RetrieveResponse,
    summary="Retrieve the most relevant passages for a query",
)
async def retrieve_context(
    body:      RetrieveRequest,
    retriever: Retriever,
    store:     Store,
    user:      UserId,
) -> RetrieveResponse:
    files = list(body.uploaded_files)
    if body.include_persisted and user:
        records = await store.list_records(user)
        files.extend(base_context.as_uploaded_file(r) for r in records)
    if body.include_base:
        records = await store.list_base_records()
        files.extend(base_context.as_uploaded_file(r, base=True) for r in records)

    result = await retriever.retrieve_with_mode(body.query, files)
    return RetrieveResponse(chunks=result.chunks, count=result.count, mode=result.mode.value)


@router.get(
    "/files",
    response_model=list[ContextFileSummary],
    summary="List the caller's persisted context files and the base context",
    description="Anonymous callers see the base context only.",
)
async def list_context_files(store: Store, user: UserId) -> list[ContextFileSummary]:
    own = await store.list_records(user) if user else []
    base = await store.list_base_records()
    return (
        [base_context.summarize(r) for r in own]
        + [base_context.summarize(r, base=True) for r in base]
    )


@router.get(
    "/files/content",
    response_model=ContextFileContent,
    summary="Read one context file's text",
    responses={401: {"description": "No user for a non-base file"}, 404: {"description": "Unknown file"}},
)
async def get_context_file(
    store:       Store,
    user:        UserId,
    file_name:   str = Query(..., alias="fileName", min_length=1),
    uploaded_at: datetime | None = Query(None, alias="uploadedAt"),
) -> ContextFileContent:
    base_name = base_context.strip_prefix(file_name)
    if base_name is not None:
        records = await store.list_base_records()
        record = next((r for r in records if r.file_name == base_name), None)
    else:
        if user is None:
            raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Sign in to read your files")
        if uploaded_at is None:
            raise HTTPException(status.HTTP_400_BAD_REQUEST, detail="uploadedAt is required")
        record = await store.get(user, file_name, uploaded_at)

    if record is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail="File not found")
    return ContextFileContent(file_name=file_name, content="\n".join(record.chunked))


@router.delete(
    "/files",
    response_model=DeleteContextFileResponse,
    summary="Delete one of the caller's context files",
    responses={400: {"description": "fileName or uploadedAt missing"}, 404: {"description": "Unknown file"}},
)
async def delete_context_file(
    body:  DeleteContextFileRequest,
    store: Store,
    user:  RequiredUserId,
) -> DeleteContextFileResponse:
    if not body.file_name or body.uploaded_at is None:
        raise HTTPException(
            status.HTTP_400_BAD_REQUEST,
            detail="Both fileName and uploadedAt are required",
        )
    if not await store.delete(user, body.file_name, body.uploaded_at):
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail="File not found")
    return DeleteContextFileResponse()


@router.post(
    "/base/init",
    response_model=BaseContextInitResponse,
    summary="Seed the shared base context with its sample file",
)
async def init_base_context(store: Store):
    try:
        info = await base_context.init_base_context(store)
    except (OSError, RuntimeError) as exc:
        logger.error("BaseContext | init failed: %s", exc, exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "success": False,
                "error": "Failed to initialize the base context",
                "details": str(exc),
            },
        )
    return BaseContextInitResponse(
        message=f"Base context initialized with {len(info)} file(s)",
        info=info,
    )
