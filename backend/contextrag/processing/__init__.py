"""
Document Processing Package
════════════════════════════

Turns an uploaded document into embeddable segments:

  Extraction (structured → OCR) → Adaptive Chunking → Embedding (+ cache)

Modules
───────
  quality.py     Text-quality heuristics and character-spacing repair
  jobs.py        Cancellable job registry
  ocr.py         Extraction strategies: PyMuPDF text layer, Tesseract OCR, plain text
  extractor.py   Coordinator that tries strategies in order and runs the OCR page loop
  chunking.py    Content classification, chunking policies and the chunker
  embeddings.py  Batched embedding client with retry
  cache.py       Content-addressed, TTL-bounded embedding cache

Design principles
─────────────────
  • Blocking work (PDF parsing, rasterizing, OCR) runs in the default executor.
  • Long-lived state (registry, cache) lives in injected instances, never module globals.
  • Every step emits pipe-delimited log lines.
"""

from contextrag.processing.cache import EmbeddingCache
from contextrag.processing.chunking import Chunker, ChunkingPolicy, Segment, select_policy
from contextrag.processing.embeddings import EmbeddingClient
from contextrag.processing.extractor import Document, ExtractedText, ExtractionCoordinator
from contextrag.processing.jobs import CancellableJobRegistry

__all__ = [
    "CancellableJobRegistry",
    "Chunker",
    "ChunkingPolicy",
    "Document",
    "EmbeddingCache",
    "EmbeddingClient",
    "ExtractedText",
    "ExtractionCoordinator",
    "Segment",
    "select_policy",
]
