"""
Extraction Strategies  —  Text from PDFs, Scans and Plain Text
══════════════════════════════════════════════════════════════

Design: Strategy + tagged outcome
─────────────────────────────────
Every strategy returns exactly one ExtractionOutcome:

  Success(text, page_count)    accept and stop
  NeedsFallback(reason)        output unusable; a slower strategy must run
  Failure(kind)                the document itself is unusable

The coordinator (extractor.py) is a state machine over these outcomes; no
strategy signals through exceptions or sentinel strings.

  Strategy 1: StructuredPdfExtractor  (PyMuPDF)
    - Reads the embedded text objects, page by page, in-process
    - Zero words anywhere            → NeedsFallback(NO_READABLE_PAGES)
    - Letters < 30 % of visible text → NeedsFallback(CORRUPTED)
    - Parser error                   → NeedsFallback(PARSE_ERROR)

  Strategy 2: rasterize + OCR  (PyMuPDF pixmaps + Tesseract)
    - PageRasterizer renders every page to PNG at a fixed DPI (300:
      Tesseract's sweet spot between accuracy and throughput)
    - PageRecognizer runs the primary multi-language profile and, when the
      result is corrupted or character-spaced, a conservative fallback
      profile; persistent character spacing is repaired, not discarded
    - Driven page by page by the coordinator so cancellation and progress
      stay on the event loop

  Strategy 3: PlainTextExtractor
    - UTF-8 passthrough

Rasterization and recognition are CPU-bound and synchronous: callers run
them in the default thread-pool executor.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol, Union

from contextrag.core.exceptions import ExtractionErrorKind
from contextrag.processing.quality import (
    has_character_level_spacing,
    looks_corrupted,
    repair_character_spacing,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_DPI = 300

# Pages with fewer visible characters than this are never judged corrupted
PAGE_MIN_QUALITY_LENGTH = 20

PAGE_FAILURE_PLACEHOLDER = "[Page {page} could not be processed]"


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class PageText:
    """
    Text extracted from a single page.

    page_number       : 1-based page index
    text              : extracted text, or the placeholder line for a failed page
    word_count        : words found on the page (structured path only)
    extraction_method : "pymupdf" | "ocr-primary" | "ocr-fallback" | ...
    repaired          : True if repair_character_spacing was applied
    failed            : True if the page could not be processed at all
    """
    page_number:       int
    text:              str
    word_count:        int  = 0
    extraction_method: str  = "unknown"
    repaired:          bool = False
    failed:            bool = False


class FallbackReason(str, Enum):
    NO_READABLE_PAGES = "no_readable_pages"
    CORRUPTED         = "corrupted"
    PARSE_ERROR       = "parse_error"


@dataclass(frozen=True)
class Success:
    text:       str
    page_count: int
    strategy:   str


@dataclass(frozen=True)
class NeedsFallback:
    reason: FallbackReason
    detail: str = ""


@dataclass(frozen=True)
class Failure:
    kind:    ExtractionErrorKind
    message: str = ""


ExtractionOutcome = Union[Success, NeedsFallback, Failure]


# ---------------------------------------------------------------------------
# Abstract strategy
# ---------------------------------------------------------------------------

class BaseTextExtractor(ABC):
    """
    Abstract base for whole-document extraction strategies.

    All implementations:
      - Accept raw bytes (never a file path)
      - Return an ExtractionOutcome and never raise for bad input
      - Are safe for concurrent use (no shared mutable state)
    """

    @property
    @abstractmethod
    def strategy_name(self) -> str:
        """Unique name for logging and provenance."""

    @abstractmethod
    async def extract(self, data: bytes) -> ExtractionOutcome:
        """Extract text from a document provided as raw bytes."""


# ---------------------------------------------------------------------------
# Strategy 1: structured PDF text layer (PyMuPDF)
# ---------------------------------------------------------------------------

class StructuredPdfExtractor(BaseTextExtractor):
    """
    Fastest strategy: reads the native PDF text layer.

    Scanned pages carry no text objects and yield zero words; mis-encoded
    fonts yield long runs of symbols which the corruption check catches.
    """

    def __init__(self, min_quality_length: int = 100) -> None:
        self._min_quality_length = min_quality_length

    @property
    def strategy_name(self) -> str:
        return "pymupdf"

    async def extract(self, data: bytes) -> ExtractionOutcome:
        loop = asyncio.get_running_loop()
        t0 = time.monotonic()

        try:
            pages = await loop.run_in_executor(None, self._extract_sync, data)
        except Exception as exc:
            logger.warning("PyMuPDF parse failed, routing to OCR: %s", exc)
            return NeedsFallback(FallbackReason.PARSE_ERROR, str(exc))

        total_words = sum(p.word_count for p in pages)
        text = "\n\n".join(p.text for p in pages if p.text)

        logger.info(
            "PyMuPDF | pages=%d words=%d chars=%d elapsed_ms=%.0f",
            len(pages), total_words, len(text), (time.monotonic() - t0) * 1000,
        )

        if total_words == 0 or not text.strip():
            return NeedsFallback(
                FallbackReason.NO_READABLE_PAGES,
                f"no text objects on {len(pages)} page(s)",
            )
        if looks_corrupted(text, self._min_quality_length):
            return NeedsFallback(FallbackReason.CORRUPTED, "embedded text is not plausible language")

        return Success(text=text, page_count=len(pages), strategy=self.strategy_name)

    def _extract_sync(self, data: bytes) -> list[PageText]:
        """Blocking extraction, run in the thread executor."""
        import fitz  # PyMuPDF; imported here to avoid module-level import cost

        pages: list[PageText] = []
        with fitz.open(stream=data, filetype="pdf") as doc:
            for page_num, page in enumerate(doc, start=1):
                raw = page.get_text("text") or ""
                pages.append(PageText(
                    page_number=page_num,
                    text=raw.strip(),
                    word_count=len(page.get_text("words")),
                    extraction_method=self.strategy_name,
                ))
        return pages


# ---------------------------------------------------------------------------
# Strategy 2: rasterize + OCR building blocks
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class OcrProfile:
    """
    One Tesseract configuration.

    oem 1 = LSTM engine only.
    psm 6 = assume a single uniform block of text; psm 4 = a single column
    of variable-size text, more tolerant of ragged scans.
    """
    name:                  str
    languages:             str
    oem:                   int  = 1
    psm:                   int  = 6
    dictionary_correction: bool = True

    @property
    def config(self) -> str:
        return (
            f"--oem {self.oem} --psm {self.psm} "
            f"-c preserve_interword_spaces=1 "
            f"-c tessedit_enable_dict_correction={int(self.dictionary_correction)}"
        )


PRIMARY_PROFILE = OcrProfile(name="ocr-primary", languages="ita+eng+fra+deu+spa")
FALLBACK_PROFILE = OcrProfile(
    name="ocr-fallback", languages="ita+eng", psm=4, dictionary_correction=False,
)


class OcrEngine(Protocol):
    def recognize(self, image_path: Path, profile: OcrProfile) -> str: ...


class TesseractEngine:
    """pytesseract wrapper; each call spawns one tesseract process."""

    def recognize(self, image_path: Path, profile: OcrProfile) -> str:
        import pytesseract
        from PIL import Image

        with Image.open(image_path) as image:
            return pytesseract.image_to_string(
                image, lang=profile.languages, config=profile.config,
            )


class PageRasterizer:
    """Renders every page of a PDF to PNG files inside a caller-owned directory."""

    def __init__(self, dpi: int = DEFAULT_DPI) -> None:
        self._dpi = dpi

    def rasterize(self, data: bytes, out_dir: Path) -> list[Path]:
        import fitz

        paths: list[Path] = []
        with fitz.open(stream=data, filetype="pdf") as doc:
            for page_num, page in enumerate(doc, start=1):
                pixmap = page.get_pixmap(dpi=self._dpi)
                path = out_dir / f"page-{page_num:04d}.png"
                pixmap.save(str(path))
                paths.append(path)

        logger.debug("Rasterized | pages=%d dpi=%d dir=%s", len(paths), self._dpi, out_dir)
        return paths


class PageRecognizer:
    """
    Primary/fallback OCR for one page image.

      1. primary profile  ──► plausible and not spaced?  YES → keep it
      2. fallback profile ──► kept unless it is itself corrupted
      3. still spaced?    ──► repair_character_spacing

    Engine errors on the primary pass propagate (the coordinator turns them
    into a placeholder page); a failing fallback pass keeps the primary text.
    """

    def __init__(
        self,
        engine:   OcrEngine | None = None,
        primary:  OcrProfile = PRIMARY_PROFILE,
        fallback: OcrProfile = FALLBACK_PROFILE,
        min_quality_length: int = PAGE_MIN_QUALITY_LENGTH,
    ) -> None:
        self._engine   = engine or TesseractEngine()
        self._primary  = primary
        self._fallback = fallback
        self._min_quality_length = min_quality_length

    def recognize(self, image_path: Path, page_number: int) -> PageText:
        """Blocking recognition, run in the thread executor."""
        text = self._engine.recognize(image_path, self._primary).strip()
        method = self._primary.name

        if not self._acceptable(text):
            logger.info(
                "OCR page=%d primary result rejected (corrupted=%s spaced=%s), retrying with %s",
                page_number,
                looks_corrupted(text, self._min_quality_length),
                has_character_level_spacing(text),
                self._fallback.name,
            )
            try:
                alt = self._engine.recognize(image_path, self._fallback).strip()
            except Exception as exc:
                logger.warning("OCR page=%d fallback profile failed: %s", page_number, exc)
                alt = None

            if alt is not None and (
                self._acceptable(alt) or not looks_corrupted(alt, self._min_quality_length)
            ):
                text, method = alt, self._fallback.name

        repaired = False
        if has_character_level_spacing(text):
            text = repair_character_spacing(text)
            repaired = True
            logger.info("OCR page=%d character spacing repaired", page_number)

        return PageText(
            page_number=page_number,
            text=text,
            extraction_method=method,
            repaired=repaired,
        )

    def _acceptable(self, text: str) -> bool:
        return not (
            looks_corrupted(text, self._min_quality_length)
            or has_character_level_spacing(text)
        )


# ---------------------------------------------------------------------------
# Strategy 3: plain text passthrough
# ---------------------------------------------------------------------------

class PlainTextExtractor(BaseTextExtractor):

    @property
    def strategy_name(self) -> str:
        return "plain-text"

    async def extract(self, data: bytes) -> ExtractionOutcome:
        text = data.decode("utf-8-sig", errors="replace").strip()
        if not text:
            return Failure(ExtractionErrorKind.NO_READABLE_PAGES, "the file contains no text")
        return Success(text=text, page_count=1, strategy=self.strategy_name)
