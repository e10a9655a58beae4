"""
Document Ingestion Service

Orchestrates one upload end to end:
  1. Validate size and detect the file kind (magic bytes, extension fallback)
  2. Register a cancellable job
  3. Extract text (structured PDF → OCR fallback, or plain text)
  4. Chunk with the policy selected for the document
  5. Embed the chunks (best effort: a failure here never fails the upload)
  6. In persist mode, write a ContextRecord for the user
  7. Return an IngestionResponse, or raise IngestionFailure

Two entry points share the same pipeline:
  ingest()         awaits the final result; used for small files
  ingest_stream()  yields progress / complete / error / cancelled frames;
                   used for large PDFs when the client asked for progress

Cancellation is cooperative. The extraction loop polls the registry every
few pages, chunking every few segments, and the embedding call is raced
against the job's abort event so a cancel does not wait for the network.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import aclosing
from pathlib import PurePath
from typing import AsyncIterator, Callable, Union

from contextrag.core.config import settings
from contextrag.core.exceptions import (
    EmbeddingError,
    ExtractionError,
    ExtractionErrorKind,
    IngestionFailure,
)
from contextrag.observability.tracing import traced
from contextrag.processing.chunking import Chunker, Segment, select_policy
from contextrag.processing.embeddings import EmbeddingClient, Vector
from contextrag.processing.extractor import (
    Document,
    ExtractionCoordinator,
    ExtractionFinished,
    ExtractionProgress,
    MimeKind,
)
from contextrag.processing.jobs import CancellableJobRegistry, ExtractionJob
from contextrag.schemas.documents import (
    ContextMode,
    ContextRecord,
    ErrorResponse,
    FrameType,
    IngestionErrors,
    IngestionErrorType,
    IngestionResponse,
    ProgressFrame,
    StoredVector,
)
from contextrag.storage.context_store import ContextStore, utc_now

logger = logging.getLogger(__name__)

IngestionEvent = Union[ExtractionProgress, IngestionResponse]

# ---------------------------------------------------------------------------
# File type detection
# ---------------------------------------------------------------------------

_PDF_MAGIC = b"%PDF"
_TEXT_EXTENSIONS = frozenset({".txt", ".text", ".md"})


def _detect_mime_kind(file_name: str, head: bytes) -> MimeKind | None:
    """
    Magic bytes first, extension as the fallback for formats without a
    signature. The client's Content-Type is never consulted.
    """
    if head.lstrip(b"\xef\xbb\xbf\r\n\t ").startswith(_PDF_MAGIC):
        return MimeKind.PDF
    if PurePath(file_name).suffix.lower() in _TEXT_EXTENSIONS:
        return MimeKind.TEXT
    return None


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class IngestionService:
    """
    Usage:
        service = IngestionService(coordinator, chunker, embedder, store)
        document = service.build_document(data, "contratto.pdf")
        response = await service.ingest(document, ContextMode.PERSIST, user="u-1")
    """

    def __init__(
        self,
        coordinator: ExtractionCoordinator,
        chunker:     Chunker,
        embedder:    EmbeddingClient,
        store:       ContextStore | None = None,
        *,
        strategy:             str | None = None,
        max_upload_bytes:     int | None = None,
        stream_min_bytes:     int | None = None,
        chunk_cancel_stride:  int | None = None,
    ) -> None:
        self._coordinator = coordinator
        self._chunker     = chunker
        self._embedder    = embedder
        self._store       = store
        self._strategy    = settings.chunking_strategy if strategy is None else strategy
        self._max_bytes   = max_upload_bytes or settings.max_upload_bytes
        self._stream_min  = (
            settings.stream_progress_min_bytes if stream_min_bytes is None else stream_min_bytes
        )
        self._chunk_stride = max(1, chunk_cancel_stride or settings.chunking_cancel_check_stride)

    @property
    def registry(self) -> CancellableJobRegistry:
        return self._coordinator.registry

    # ------------------------------------------------------------------
    # Input handling
    # ------------------------------------------------------------------

    def build_document(self, data: bytes, file_name: str) -> Document:
        """Raises IngestionFailure (FILE_TOO_LARGE / UNSUPPORTED_TYPE)."""
        if len(data) > self._max_bytes:
            raise IngestionErrors.file_too_large(len(data), self._max_bytes)
        kind = _detect_mime_kind(file_name, data[:16])
        if kind is None:
            raise IngestionErrors.unsupported_type(file_name)
        return Document.from_bytes(data, file_name, kind)

    def should_stream(self, document: Document, stream_progress: bool) -> bool:
        return (
            stream_progress
            and document.mime_kind is MimeKind.PDF
            and document.size_bytes > self._stream_min
        )

    def cancel(self, job_id: str) -> bool:
        """
        Request cancellation. Takes effect at the next poll point, so a job
        may still spend up to one page's rasterize + OCR time before it stops.
        """
        return self._coordinator.cancel(job_id)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    @traced("ingestion.ingest")
    async def ingest(
        self,
        document:     Document,
        context_mode: ContextMode = ContextMode.SESSION,
        user:         str | None = None,
        job_id:       str | None = None,
        on_progress:  Callable[[ExtractionProgress], None] | None = None,
    ) -> IngestionResponse:
        job_id = job_id or uuid.uuid4().hex
        try:
            async with aclosing(self._pipeline(document, context_mode, user, job_id)) as events:
                async for event in events:
                    if isinstance(event, IngestionResponse):
                        return event
                    if on_progress is not None:
                        on_progress(event)
        except Exception as exc:
            failure = self._to_failure(exc, document, job_id)
            if failure is exc:
                raise
            raise failure from exc
        raise RuntimeError("ingestion pipeline ended without a result")  # pragma: no cover

    async def ingest_stream(
        self,
        document:     Document,
        context_mode: ContextMode = ContextMode.SESSION,
        user:         str | None = None,
        job_id:       str | None = None,
    ) -> AsyncIterator[dict]:
        """
        Frames, in order: zero or more `progress`, then exactly one of
        `complete`, `error` or `cancelled`. Every frame carries jobId.
        """
        job_id = job_id or uuid.uuid4().hex
        try:
            async with aclosing(self._pipeline(document, context_mode, user, job_id)) as events:
                async for event in events:
                    if isinstance(event, IngestionResponse):
                        yield {"type": FrameType.COMPLETE.value, **event.to_wire()}
                        return
                    yield ProgressFrame(
                        job_id=job_id,
                        current_page=event.current_page,
                        total_pages=event.total_pages,
                        status=event.status,
                        phase=event.phase.value,
                    ).to_wire()
        except Exception as exc:
            failure = self._to_failure(exc, document, job_id)
            frame_type = (
                FrameType.CANCELLED
                if failure.error_type == IngestionErrorType.CANCELLED.value
                else FrameType.ERROR
            )
            yield {"type": frame_type.value, **ErrorResponse.from_failure(failure).to_wire()}

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _pipeline(
        self,
        document:     Document,
        context_mode: ContextMode,
        user:         str | None,
        job_id:       str,
    ) -> AsyncIterator[IngestionEvent]:
        job = self.registry.register(job_id)
        logger.info(
            "Ingestion start | job=%s file=%s kind=%s size=%d mode=%s",
            job_id, document.file_name, document.mime_kind.value,
            document.size_bytes, context_mode.value,
        )
        try:
            # ── Extraction ──────────────────────────────────────────────────
            extracted = None
            async with aclosing(self._coordinator.stream(document, job_id)) as events:
                async for event in events:
                    if isinstance(event, ExtractionFinished):
                        extracted = event.result
                    else:
                        yield event
            if extracted is None:
                raise IngestionErrors.no_text()

            if not extracted.text.strip():
                raise IngestionErrors.no_text()

            # ── Chunking ────────────────────────────────────────────────────
            policy = select_policy(extracted.text, document.file_name, self._strategy or None)
            segments: list[Segment] = []
            for segment in self._chunker.iter_chunks(extracted.text, policy, document.file_name):
                segments.append(segment)
                if len(segments) % self._chunk_stride == 0:
                    self.registry.raise_if_cancelled(job_id)
            self.registry.raise_if_cancelled(job_id)

            # ── Embeddings (best effort) ────────────────────────────────────
            vectors = await self._embed_best_effort([s.text for s in segments], job)
            self.registry.raise_if_cancelled(job_id)

            # ── Persistence ─────────────────────────────────────────────────
            persisted = False
            if context_mode is ContextMode.PERSIST and user and self._store is not None:
                persisted = await self._persist(user, document, segments, vectors)

            logger.info(
                "Ingestion done | job=%s file=%s strategy=%s pages=%d chunks=%d vectors=%d status=%s",
                job_id, document.file_name, extracted.source_strategy, extracted.page_count,
                len(segments), len(vectors), extracted.status.value,
            )
            yield IngestionResponse(
                job_id=job_id,
                file_name=document.file_name,
                file_type=document.mime_kind.value,
                file_size=document.size_bytes,
                extracted_text=extracted.text,
                chunk_count=len(segments),
                embeddings_count=len(vectors),
                embeddings_generated=bool(vectors),
                source_strategy=extracted.source_strategy,
                page_count=extracted.page_count,
                extraction_status=extracted.status.value,
                failed_pages=list(extracted.failed_pages),
                content_type=policy.content_type.value,
                chunked=[s.text for s in segments],
                persisted=persisted,
            )
        finally:
            self.registry.complete(job_id)

    async def _embed_best_effort(self, texts: list[str], job: ExtractionJob) -> list[Vector]:
        """
        Embed `texts`, racing the call against the job's abort event.
        Returns [] when the embedding service fails; raises CANCELLED on abort.
        """
        if not texts:
            return []

        embed_task = asyncio.ensure_future(self._embedder.embed(texts))
        abort_task = asyncio.ensure_future(job.abort.wait())
        try:
            done, _ = await asyncio.wait(
                {embed_task, abort_task}, return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (embed_task, abort_task):
                if not task.done():
                    task.cancel()

        if embed_task not in done:
            raise ExtractionError(ExtractionErrorKind.CANCELLED, f"Job {job.job_id} was cancelled")

        try:
            return embed_task.result()
        except EmbeddingError as exc:
            logger.warning(
                "Ingestion | job=%s embeddings skipped, service unavailable: %s", job.job_id, exc,
            )
            return []

    async def _persist(
        self,
        user:     str,
        document: Document,
        segments: list[Segment],
        vectors:  list[Vector],
    ) -> bool:
        record = ContextRecord(
            file_name=document.file_name,
            file_type=document.mime_kind.value,
            file_size=document.size_bytes,
            chunked=[s.text for s in segments],
            vectors=[
                StoredVector(chunk=s.text, embedding=v, index=s.ordinal_index)
                for s, v in zip(segments, vectors)
            ],
            uploaded_at=utc_now(),
            embeddings_generated=bool(vectors),
        )
        try:
            await self._store.save(user, record)
        except OSError as exc:
            logger.error("Ingestion | persisting context for user=%s failed: %s", user, exc)
            return False
        return True

    # ------------------------------------------------------------------
    # Error mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _to_failure(exc: Exception, document: Document, job_id: str) -> IngestionFailure:
        if isinstance(exc, IngestionFailure):
            failure = exc
        elif isinstance(exc, ExtractionError):
            if exc.kind is ExtractionErrorKind.CANCELLED:
                failure = IngestionErrors.cancelled()
            elif exc.kind is ExtractionErrorKind.OCR_FAILED:
                failure = IngestionErrors.pdf_processing_failed()
            elif document.mime_kind is MimeKind.PDF:
                failure = IngestionErrors.unreadable_pdf()
            else:
                failure = IngestionErrors.no_text()
            logger.info("Ingestion | job=%s ended with %s", job_id, exc)
        else:
            logger.error(
                "Ingestion | job=%s unexpected failure: %s", job_id, exc, exc_info=exc,
            )
            failure = IngestionErrors.general_error()

        failure.job_id = job_id
        return failure
