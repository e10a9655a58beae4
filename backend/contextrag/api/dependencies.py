"""
Composed FastAPI Dependencies

The single wiring point between the HTTP layer and the core. Long-lived
state (job registry, embedding cache, embedding HTTP client) is created once
per process by the cached providers below; services are assembled per
request from those instances. Tests swap any of them through
app.dependency_overrides.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status

from contextrag.core.config import settings
from contextrag.processing.cache import EmbeddingCache
from contextrag.processing.chunking import Chunker
from contextrag.processing.embeddings import EmbeddingClient
from contextrag.processing.extractor import ExtractionCoordinator
from contextrag.processing.jobs import CancellableJobRegistry
from contextrag.rag.context import ContextRetriever
from contextrag.services.ingestion import IngestionService
from contextrag.storage.context_store import ContextStore, LocalContextStore


# ---------------------------------------------------------------------------
# 1. Process-wide singletons
# ---------------------------------------------------------------------------

@lru_cache(maxsize=1)
def get_job_registry() -> CancellableJobRegistry:
    return CancellableJobRegistry(grace_period_seconds=settings.job_grace_period_seconds)


@lru_cache(maxsize=1)
def get_embedding_cache() -> EmbeddingCache:
    return EmbeddingCache(ttl_seconds=settings.embedding_cache_ttl_seconds)


@lru_cache(maxsize=1)
def get_embedding_client() -> EmbeddingClient:
    return EmbeddingClient()


@lru_cache(maxsize=1)
def get_context_store() -> ContextStore:
    return LocalContextStore(settings.context_dir, shared_dir=settings.base_context_dir)


@lru_cache(maxsize=1)
def get_chunker() -> Chunker:
    return Chunker()


# ---------------------------------------------------------------------------
# 2. Per-request services
# ---------------------------------------------------------------------------

def get_ingestion_service(
    registry: Annotated[CancellableJobRegistry, Depends(get_job_registry)],
    chunker:  Annotated[Chunker, Depends(get_chunker)],
    embedder: Annotated[EmbeddingClient, Depends(get_embedding_client)],
    store:    Annotated[ContextStore, Depends(get_context_store)],
) -> IngestionService:
    return IngestionService(
        coordinator=ExtractionCoordinator(registry),
        chunker=chunker,
        embedder=embedder,
        store=store,
    )


def get_context_retriever(
    embedder: Annotated[EmbeddingClient, Depends(get_embedding_client)],
    cache:    Annotated[EmbeddingCache, Depends(get_embedding_cache)],
    chunker:  Annotated[Chunker, Depends(get_chunker)],
) -> ContextRetriever:
    return ContextRetriever(embedder, cache, chunker=chunker)


# ---------------------------------------------------------------------------
# 3. Caller identity
#    Authentication happens upstream; the gateway forwards the user id.
# ---------------------------------------------------------------------------

def get_user_id(
    x_user_id: Annotated[str | None, Header(alias="X-User-Id")] = None,
) -> str | None:
    if x_user_id is None:
        return None
    return x_user_id.strip() or None


def require_user_id(
    user: Annotated[str | None, Depends(get_user_id)],
) -> str:
    if user is None:
        raise HTTPException(
            status.HTTP_401_UNAUTHORIZED,
            detail="This operation needs a signed-in user (X-User-Id)",
        )
    return user


# ---------------------------------------------------------------------------
# Type aliases for cleaner route signatures
# ---------------------------------------------------------------------------

Ingestion      = Annotated[IngestionService, Depends(get_ingestion_service)]
Retriever      = Annotated[ContextRetriever, Depends(get_context_retriever)]
Embedder       = Annotated[EmbeddingClient, Depends(get_embedding_client)]
Store          = Annotated[ContextStore, Depends(get_context_store)]
UserId         = Annotated[str | None, Depends(get_user_id)]
RequiredUserId = Annotated[str, Depends(require_user_id)]
