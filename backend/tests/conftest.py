"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy:
  function-scoped : registry, text_pdf_bytes, scanned_pdf_bytes, fake_engine,
                    make_coordinator, fake_embedder, ingestion_service,
                    app_with_overrides, async_client

Environment strategy:
  - No network: the embedding client is either a MagicMock(spec=EmbeddingClient)
    or an EmbeddingClient wrapping a mocked AsyncOpenAI.
  - No tesseract binary: OCR goes through FakeOcrEngine, which reads the page
    number from the rasterized image's file name (page-0003.png).
  - PDFs are built in memory with PyMuPDF, so rasterization is real.

How to run:
  pytest                          # all tests
  pytest -m unit                  # unit tests only
  pytest -m integration           # FastAPI stack over ASGITransport
  pytest backend/tests/unit/test_chunking.py
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import AsyncClient

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any contextrag imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("APP_ENV",                     "development")
os.environ.setdefault("DEBUG",                       "true")
os.environ.setdefault("EMBEDDING_BASE_URL",          "http://embeddings.test/v1")
os.environ.setdefault("EMBEDDING_API_KEY",           "test-key")
os.environ.setdefault("EMBEDDING_RETRY_BASE_DELAY",  "0")
os.environ.setdefault("EMBEDDING_MAX_RETRIES",       "2")
os.environ.setdefault("OCR_DPI",                     "72")


# ─────────────────────────────────────────────────────────────────────────────
# Sample text
# ─────────────────────────────────────────────────────────────────────────────

CONTRACT_PARAGRAPH = (
    "The supplier shall deliver the goods within thirty days of the order. "
    "Payment is due within sixty days of the invoice date. "
    "Either party may terminate the contract with written notice. "
)

TECH_PARAGRAPH = (
    "To enable the API, open the configuration file and set the token. "
    "Restart the service after every configuration change. "
)


# ─────────────────────────────────────────────────────────────────────────────
# In-memory PDFs (PyMuPDF)
# ─────────────────────────────────────────────────────────────────────────────

def build_text_pdf(pages: list[str]) -> bytes:
    """PDF whose pages carry a real text layer."""
    import fitz

    doc = fitz.open()
    for body in pages:
        page = doc.new_page()
        rect = fitz.Rect(50, 50, page.rect.width - 50, page.rect.height - 50)
        page.insert_textbox(rect, body, fontsize=10)
    data = doc.tobytes()
    doc.close()
    return data


def build_scanned_pdf(page_count: int) -> bytes:
    """PDF whose pages contain only vector shapes: no text objects at all."""
    import fitz

    doc = fitz.open()
    for _ in range(page_count):
        page = doc.new_page()
        page.draw_rect(fitz.Rect(72, 72, 300, 200), color=(0, 0, 0), fill=(0.8, 0.8, 0.8))
    data = doc.tobytes()
    doc.close()
    return data


@pytest.fixture
def text_pdf_bytes() -> bytes:
    return build_text_pdf([CONTRACT_PARAGRAPH * 3, TECH_PARAGRAPH * 3, CONTRACT_PARAGRAPH])


@pytest.fixture
def scanned_pdf_bytes() -> bytes:
    return build_scanned_pdf(4)


@pytest.fixture
def sample_txt_bytes() -> bytes:
    return (CONTRACT_PARAGRAPH * 4).encode("utf-8")


# ─────────────────────────────────────────────────────────────────────────────
# OCR engine double
# ─────────────────────────────────────────────────────────────────────────────

_PAGE_RE = re.compile(r"page-(\d+)")


class FakeOcrEngine:
    """
    Scripted OcrEngine.

    texts           : page number → text for the primary profile
    fallback_texts  : page number → text for any other profile
    fail_pages      : pages whose primary pass raises
    calls           : (page number, profile name) in call order
    """

    def __init__(
        self,
        texts: dict[int, str] | None = None,
        fallback_texts: dict[int, str] | None = None,
        fail_pages: set[int] | None = None,
        default_text: str = CONTRACT_PARAGRAPH,
    ) -> None:
        self.texts = texts or {}
        self.fallback_texts = fallback_texts or {}
        self.fail_pages = fail_pages or set()
        self.default_text = default_text
        self.calls: list[tuple[int, str]] = []
        self.seen_dirs: set[Path] = set()
        self.on_call = None

    def recognize(self, image_path: Path, profile) -> str:
        page = int(_PAGE_RE.search(image_path.stem).group(1))
        self.calls.append((page, profile.name))
        self.seen_dirs.add(image_path.parent)
        if self.on_call is not None:
            self.on_call(page)
        if profile.name == "ocr-primary":
            if page in self.fail_pages:
                raise RuntimeError(f"tesseract crashed on page {page}")
            return self.texts.get(page, self.default_text)
        return self.fallback_texts.get(page, self.texts.get(page, self.default_text))


@pytest.fixture
def fake_engine() -> FakeOcrEngine:
    return FakeOcrEngine()


@pytest.fixture
def registry():
    from contextrag.processing.jobs import CancellableJobRegistry
    return CancellableJobRegistry(grace_period_seconds=60.0)


@pytest.fixture
def make_coordinator(registry, fake_engine):
    """Factory: ExtractionCoordinator with real rasterizing at 72 dpi and the fake engine."""
    from contextrag.processing.extractor import ExtractionCoordinator
    from contextrag.processing.ocr import PageRasterizer, PageRecognizer

    def _build(engine: FakeOcrEngine | None = None, **kwargs):
        return ExtractionCoordinator(
            registry,
            rasterizer=PageRasterizer(dpi=72),
            recognizer=PageRecognizer(engine=engine or fake_engine),
            **{
                "cancel_check_stride": 1,
                "consecutive_failure_warning": 3,
                "max_failed_page_ratio": 0.5,
                **kwargs,
            },
        )
    return _build


# ─────────────────────────────────────────────────────────────────────────────
# Embedding double
# ─────────────────────────────────────────────────────────────────────────────

VOCABULARY = (
    "contract", "payment", "terminate", "supplier", "api",
    "configuration", "recipe", "weather", "insurance", "clause",
)


def fake_vector(text: str) -> list[float]:
    """Bag-of-words over a tiny vocabulary, plus a constant so no norm is 0."""
    lowered = text.lower()
    return [float(lowered.count(word)) for word in VOCABULARY] + [0.1]


def embedder_over_http(handler) -> "EmbeddingClient":
    """
    Real EmbeddingClient + AsyncOpenAI whose HTTP layer is an httpx.MockTransport
    calling `handler(request) -> httpx.Response`. Retries are immediate.
    """
    import httpx
    from openai import AsyncOpenAI

    from contextrag.processing.embeddings import EmbeddingClient

    openai_client = AsyncOpenAI(
        base_url="http://embeddings.test/v1",
        api_key="test-key",
        max_retries=0,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    return EmbeddingClient(
        model="test-embedding-model",
        max_retries=1,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        client=openai_client,
    )


def not_json_handler(request):
    import httpx
    return httpx.Response(200, content=b"not json", headers={"content-type": "application/json"})


@pytest.fixture
def fake_embedder():
    """MagicMock(spec=EmbeddingClient) producing deterministic vectors."""
    from contextrag.processing.embeddings import EmbeddingClient

    embedder = MagicMock(spec=EmbeddingClient)
    embedder.model = "test-embedding-model"

    async def _embed(texts):
        return [fake_vector(t) for t in texts]

    async def _embed_query(text):
        return fake_vector(text)

    embedder.embed       = AsyncMock(side_effect=_embed)
    embedder.embed_query = AsyncMock(side_effect=_embed_query)
    return embedder


@pytest.fixture
def context_store(tmp_path):
    from contextrag.storage.context_store import LocalContextStore
    return LocalContextStore(tmp_path / "context", shared_dir=tmp_path / "context-base")


@pytest.fixture
def ingestion_service(make_coordinator, fake_embedder, context_store):
    from contextrag.processing.chunking import Chunker
    from contextrag.services.ingestion import IngestionService

    return IngestionService(
        coordinator=make_coordinator(),
        chunker=Chunker(),
        embedder=fake_embedder,
        store=context_store,
        strategy="",
        stream_min_bytes=0,
    )


# ─────────────────────────────────────────────────────────────────────────────
# FastAPI test client with dependency overrides
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def app_with_overrides(registry, fake_embedder, context_store, ingestion_service):
    """
    FastAPI app with ALL external dependencies overridden:
      - get_ingestion_service → fake OCR engine, fake embedder, tmp context store
      - get_embedding_client  → fake_embedder (no embedding server)
      - get_context_store     → LocalContextStore (user and base dirs) under tmp_path
      - get_job_registry / get_embedding_cache → fresh per test
    """
    from contextrag.api.dependencies import (
        get_context_store,
        get_embedding_cache,
        get_embedding_client,
        get_ingestion_service,
        get_job_registry,
    )
    from contextrag.main import app
    from contextrag.processing.cache import EmbeddingCache

    cache = EmbeddingCache()

    app.dependency_overrides[get_ingestion_service] = lambda: ingestion_service
    app.dependency_overrides[get_embedding_client]  = lambda: fake_embedder
    app.dependency_overrides[get_context_store]     = lambda: context_store
    app.dependency_overrides[get_job_registry]      = lambda: registry
    app.dependency_overrides[get_embedding_cache]   = lambda: cache

    yield app

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def async_client(app_with_overrides) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client using the overridden app (ASGITransport, no lifespan)."""
    from httpx import ASGITransport
    transport = ASGITransport(app=app_with_overrides)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
