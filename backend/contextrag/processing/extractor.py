"""
Extraction Coordinator
══════════════════════

State machine per document:

  START ─► TRY_STRUCTURED ─► Success ─────────────────────────────► DONE
                 │
                 └─► NeedsFallback (no text objects | corrupted | parse error)
                          │
                          ▼
                       TRY_OCR ─► rasterize ─► page 1 … page N ─► DONE | FAILED

stream() is the primary interface: a lazy, finite, non-restartable async
sequence of ExtractionProgress events ending in exactly one
ExtractionFinished. extract() drains it, forwarding progress to an optional
callback. Either way the caller chooses the transport (SSE, logs, polling).

Cancellation poll points (CancellableJobRegistry):
  - before rasterization starts
  - before OCR of a page, every `cancel_check_stride` pages
  - after each page's OCR completes

Partial failure policy:
  - a page whose OCR raises becomes a placeholder line in its position
  - 3+ consecutive failed pages → status completed_with_warnings
  - failed pages above `max_failed_page_ratio` (or every page) → OCR_FAILED

Page images live in a TemporaryDirectory scoped to the OCR run and are
removed on every exit path: success, failure, cancellation, or the consumer
closing the stream early.
"""

from __future__ import annotations

import asyncio
import logging
import tempfile
import time
from contextlib import aclosing
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Callable, Union

from contextrag.core.config import settings
from contextrag.core.exceptions import ExtractionError, ExtractionErrorKind
from contextrag.processing.jobs import CancellableJobRegistry
from contextrag.processing.ocr import (
    FALLBACK_PROFILE,
    PAGE_FAILURE_PLACEHOLDER,
    PRIMARY_PROFILE,
    BaseTextExtractor,
    Failure,
    NeedsFallback,
    OcrProfile,
    PageRasterizer,
    PageRecognizer,
    PageText,
    PlainTextExtractor,
    StructuredPdfExtractor,
    Success,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Input / output types
# ---------------------------------------------------------------------------

class MimeKind(str, Enum):
    PDF  = "application/pdf"
    TEXT = "text/plain"


@dataclass(frozen=True)
class Document:
    """Immutable ingestion input; owned by the caller for one ingestion call."""
    raw_bytes:  bytes = field(repr=False)
    mime_kind:  MimeKind
    file_name:  str
    size_bytes: int

    @classmethod
    def from_bytes(cls, data: bytes, file_name: str, mime_kind: MimeKind) -> "Document":
        return cls(raw_bytes=data, mime_kind=mime_kind, file_name=file_name, size_bytes=len(data))


class ExtractionStatus(str, Enum):
    COMPLETED               = "completed"
    COMPLETED_WITH_WARNINGS = "completed_with_warnings"


class ExtractionPhase(str, Enum):
    STRUCTURED  = "structured"
    RASTERIZING = "rasterizing"
    OCR         = "ocr"
    DONE        = "done"


@dataclass(frozen=True)
class ExtractionProgress:
    current_page: int
    total_pages:  int
    status:       str
    phase:        ExtractionPhase

    def to_dict(self) -> dict:
        return {
            "currentPage": self.current_page,
            "totalPages":  self.total_pages,
            "status":      self.status,
            "phase":       self.phase.value,
        }


@dataclass(frozen=True)
class ExtractedText:
    """
    Final extraction output.

    text            : pages joined with blank lines, in page order
    source_strategy : "pymupdf" | "ocr" | "plain-text"
    page_count      : pages in the document (1 for plain text)
    status          : completed | completed_with_warnings
    failed_pages    : 1-based numbers of pages replaced by a placeholder
    repaired_pages  : 1-based numbers of pages whose spacing was repaired
    """
    text:            str
    source_strategy: str
    page_count:      int
    status:          ExtractionStatus = ExtractionStatus.COMPLETED
    failed_pages:    tuple[int, ...]  = ()
    repaired_pages:  tuple[int, ...]  = ()

    @property
    def used_ocr(self) -> bool:
        return self.source_strategy == "ocr"


@dataclass(frozen=True)
class ExtractionFinished:
    result: ExtractedText


ExtractionEvent = Union[ExtractionProgress, ExtractionFinished]
ProgressCallback = Callable[[ExtractionProgress], None]


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------

class ExtractionCoordinator:
    """
    Tries strategies in a fixed order and owns the OCR page loop.

    Usage:
        coordinator = ExtractionCoordinator(registry)
        result = await coordinator.extract(document, job_id=job.job_id)

        async for event in coordinator.stream(document, job_id):
            ...
    """

    def __init__(
        self,
        registry:   CancellableJobRegistry | None = None,
        structured: BaseTextExtractor | None = None,
        plain:      BaseTextExtractor | None = None,
        rasterizer: PageRasterizer | None = None,
        recognizer: PageRecognizer | None = None,
        *,
        dpi:                  int | None = None,
        cancel_check_stride:  int | None = None,
        consecutive_failure_warning: int | None = None,
        max_failed_page_ratio: float | None = None,
    ) -> None:
        self._registry   = (
            registry if registry is not None
            else CancellableJobRegistry(settings.job_grace_period_seconds)
        )
        self._structured = structured or StructuredPdfExtractor(settings.quality_min_length)
        self._plain      = plain or PlainTextExtractor()
        self._rasterizer = rasterizer or PageRasterizer(dpi or settings.ocr_dpi)
        self._recognizer = recognizer or PageRecognizer(
            primary=_profile(PRIMARY_PROFILE, settings.ocr_primary_languages),
            fallback=_profile(FALLBACK_PROFILE, settings.ocr_fallback_languages),
        )
        self._stride = max(1, cancel_check_stride or settings.ocr_cancel_check_stride)
        self._warn_after = consecutive_failure_warning or settings.ocr_consecutive_failure_warning
        self._max_failed_ratio = (
            settings.ocr_max_failed_page_ratio
            if max_failed_page_ratio is None else max_failed_page_ratio
        )

    @property
    def registry(self) -> CancellableJobRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def extract(
        self,
        document:    Document,
        job_id:      str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ExtractedText:
        """Drain stream() and return the final ExtractedText."""
        async with aclosing(self.stream(document, job_id)) as events:
            async for event in events:
                if isinstance(event, ExtractionFinished):
                    return event.result
                if on_progress is not None:
                    on_progress(event)
        raise RuntimeError("extraction stream ended without a result")  # pragma: no cover

    async def stream(
        self,
        document: Document,
        job_id:   str | None = None,
    ) -> AsyncIterator[ExtractionEvent]:
        t0 = time.monotonic()

        if document.mime_kind is MimeKind.TEXT:
            outcome = await self._plain.extract(document.raw_bytes)
            if isinstance(outcome, Failure):
                raise ExtractionError(outcome.kind, outcome.message)
            yield ExtractionProgress(1, 1, "Text read", ExtractionPhase.DONE)
            yield ExtractionFinished(ExtractedText(
                text=outcome.text,
                source_strategy=outcome.strategy,
                page_count=outcome.page_count,
            ))
            return

        if document.mime_kind is not MimeKind.PDF:
            raise ValueError(f"Unsupported mime kind: {document.mime_kind!r}")

        # ── TRY_STRUCTURED ───────────────────────────────────────────────
        yield ExtractionProgress(0, 0, "Reading embedded text", ExtractionPhase.STRUCTURED)
        self._registry.raise_if_cancelled(job_id)

        outcome = await self._structured.extract(document.raw_bytes)

        if isinstance(outcome, Success):
            logger.info(
                "Extraction | file=%s strategy=%s pages=%d chars=%d elapsed_ms=%.0f",
                document.file_name, outcome.strategy, outcome.page_count,
                len(outcome.text), (time.monotonic() - t0) * 1000,
            )
            yield ExtractionProgress(
                outcome.page_count, outcome.page_count, "Embedded text extracted", ExtractionPhase.DONE,
            )
            yield ExtractionFinished(ExtractedText(
                text=outcome.text,
                source_strategy=outcome.strategy,
                page_count=outcome.page_count,
            ))
            return

        if isinstance(outcome, Failure):
            raise ExtractionError(outcome.kind, outcome.message)

        # ── TRY_OCR ──────────────────────────────────────────────────────
        if not isinstance(outcome, NeedsFallback):
            raise ExtractionError(
                ExtractionErrorKind.NO_READABLE_PAGES, f"unexpected extraction outcome {outcome!r}",
            )
        logger.info(
            "Extraction | file=%s structured path rejected reason=%s detail=%s, falling back to OCR",
            document.file_name, outcome.reason.value, outcome.detail,
        )
        async for event in self._ocr(document, job_id):
            yield event

        logger.info(
            "Extraction | file=%s strategy=ocr elapsed_ms=%.0f",
            document.file_name, (time.monotonic() - t0) * 1000,
        )

    def cancel(self, job_id: str) -> bool:
        return self._registry.cancel(job_id)

    # ------------------------------------------------------------------
    # OCR page loop
    # ------------------------------------------------------------------

    async def _ocr(self, document: Document, job_id: str | None) -> AsyncIterator[ExtractionEvent]:
        loop = asyncio.get_running_loop()
        self._registry.raise_if_cancelled(job_id)

        with tempfile.TemporaryDirectory(prefix="contextrag-ocr-") as tmp:
            yield ExtractionProgress(0, 0, "Rendering pages", ExtractionPhase.RASTERIZING)
            try:
                images: list[Path] = await loop.run_in_executor(
                    None, self._rasterizer.rasterize, document.raw_bytes, Path(tmp),
                )
            except Exception as exc:
                logger.error("Rasterization failed | file=%s error=%s", document.file_name, exc)
                raise ExtractionError(
                    ExtractionErrorKind.OCR_FAILED, f"could not render PDF pages: {exc}",
                ) from exc

            total = len(images)
            if total == 0:
                raise ExtractionError(ExtractionErrorKind.NO_READABLE_PAGES, "the PDF has no pages")

            pages: list[PageText] = []
            consecutive_failures = 0
            worst_streak = 0

            for page_number, image in enumerate(images, start=1):
                if (page_number - 1) % self._stride == 0:
                    self._registry.raise_if_cancelled(job_id)

                yield ExtractionProgress(
                    page_number, total, f"OCR page {page_number} of {total}", ExtractionPhase.OCR,
                )

                try:
                    page = await loop.run_in_executor(
                        None, self._recognizer.recognize, image, page_number,
                    )
                    consecutive_failures = 0
                except Exception as exc:
                    logger.warning(
                        "OCR page failed | file=%s page=%d error=%s",
                        document.file_name, page_number, exc,
                    )
                    page = PageText(
                        page_number=page_number,
                        text=PAGE_FAILURE_PLACEHOLDER.format(page=page_number),
                        extraction_method="placeholder",
                        failed=True,
                    )
                    consecutive_failures += 1
                    worst_streak = max(worst_streak, consecutive_failures)

                pages.append(page)
                self._registry.raise_if_cancelled(job_id)

        failed = tuple(p.page_number for p in pages if p.failed)
        if len(failed) == total or len(failed) / total > self._max_failed_ratio:
            raise ExtractionError(
                ExtractionErrorKind.OCR_FAILED,
                f"{len(failed)} of {total} pages could not be processed",
            )

        status = (
            ExtractionStatus.COMPLETED_WITH_WARNINGS
            if worst_streak >= self._warn_after
            else ExtractionStatus.COMPLETED
        )
        if status is ExtractionStatus.COMPLETED_WITH_WARNINGS:
            logger.warning(
                "OCR low confidence | file=%s failed_pages=%s longest_streak=%d",
                document.file_name, list(failed), worst_streak,
            )

        yield ExtractionProgress(total, total, "OCR complete", ExtractionPhase.DONE)
        yield ExtractionFinished(ExtractedText(
            text="\n\n".join(p.text for p in pages if p.text),
            source_strategy="ocr",
            page_count=total,
            status=status,
            failed_pages=failed,
            repaired_pages=tuple(p.page_number for p in pages if p.repaired),
        ))


def _profile(base: OcrProfile, languages: str) -> OcrProfile:
    return replace(base, languages=languages) if languages else base
