"""
Context Retrieval for the chat layer

Turns the chat client's working set (uploaded files, raw or pre-chunked,
with or without stored vectors) into the k most relevant passages for a
query, each rendered as:

  [fileName]
  <segment text>

Vector sources, in order of preference:
  1. vectors stored with the file (persisted context records)
  2. the EmbeddingCache entry for this exact file set
  3. one EmbeddingClient.embed() call for whatever is still missing,
     written back to the cache

An unreachable embedding service never fails retrieval: the result degrades
to the first k segments in document order and is tagged "fallback".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

from contextrag.core.config import settings
from contextrag.core.exceptions import EmbeddingError
from contextrag.observability.tracing import traced
from contextrag.processing.cache import (
    EmbeddingCache,
    VectorKey,
    cache_key,
    content_hash,
    file_fingerprint,
)
from contextrag.processing.chunking import Chunker, ChunkingPolicy, Segment, select_policy
from contextrag.processing.embeddings import EmbeddingClient
from contextrag.rag.retriever import RetrievalEngine, RetrievalMode, RetrievalResult, estimate_k
from contextrag.schemas.documents import UploadedFile

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContextResult:
    chunks: list[str]
    mode:   RetrievalMode

    @property
    def count(self) -> int:
        return len(self.chunks)


@dataclass
class _PreparedFile:
    file_name:   str
    policy:      ChunkingPolicy
    segments:    list[Segment]
    vectors:     dict[int, list[float]]   # ordinal_index -> stored vector
    fingerprint: int = field(init=False)

    def __post_init__(self) -> None:
        self.fingerprint = file_fingerprint([s.text for s in self.segments])

    def key(self, segment: Segment) -> VectorKey:
        return (self.file_name, self.fingerprint, segment.ordinal_index)


def format_segment(segment: Segment) -> str:
    return f"[{segment.source_file_name}]\n{segment.text}"


class ContextRetriever:
    """
    Usage:
        retriever = ContextRetriever(embedder, cache)
        chunks = await retriever.retrieve("what does clause 4 cover?", files)
    """

    def __init__(
        self,
        embedder: EmbeddingClient,
        cache:    EmbeddingCache,
        chunker:  Chunker | None = None,
        engine:   RetrievalEngine | None = None,
        strategy: str | None = None,
    ) -> None:
        self._embedder = embedder
        self._cache    = cache
        self._chunker  = chunker or Chunker()
        self._engine   = engine or RetrievalEngine(embedder)
        self._strategy = settings.chunking_strategy if strategy is None else strategy

    async def retrieve(self, query: str, files: Sequence[UploadedFile]) -> list[str]:
        result = await self.retrieve_with_mode(query, files)
        return result.chunks

    @traced("context.retrieve")
    async def retrieve_with_mode(self, query: str, files: Sequence[UploadedFile]) -> ContextResult:
        prepared = [self._prepare(f) for f in files]
        prepared = [p for p in prepared if p.segments]
        if not prepared:
            return ContextResult(chunks=[], mode=RetrievalMode.SEMANTIC)

        k = estimate_k(query, prepared[0].policy)
        segments = [s for p in prepared for s in p.segments]

        vectors = await self._resolve_vectors(prepared)
        if vectors is None:
            result = RetrievalEngine.fallback(segments, k)
        else:
            candidates = [(s, vectors[p.key(s)]) for p in prepared for s in p.segments]
            result = await self._engine.top_k(query, candidates, k)

        logger.info(
            "ContextRetriever | files=%d segments=%d k=%d returned=%d mode=%s",
            len(prepared), len(segments), k, len(result), result.mode.value,
        )
        return _to_context(result)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _prepare(self, file: UploadedFile) -> _PreparedFile:
        if file.chunked:
            text = file.content or "\n\n".join(file.chunked)
            policy = select_policy(text, file.file_name, self._strategy or None)
            segments = [
                Segment(text=chunk, source_file_name=file.file_name, ordinal_index=i)
                for i, chunk in enumerate(file.chunked)
            ]
        else:
            policy = select_policy(file.content, file.file_name, self._strategy or None)
            segments = self._chunker.chunk(file.content, policy, file_name=file.file_name)

        stored: dict[int, list[float]] = {}
        if file.vectors and file.chunked and len(file.vectors) == len(segments):
            stored = {v.index: list(v.embedding) for v in file.vectors if v.embedding}
            if set(stored) != set(range(len(segments))):
                logger.info(
                    "ContextRetriever | stored vectors for file=%s are not aligned, ignoring them",
                    file.file_name,
                )
                stored = {}

        return _PreparedFile(file.file_name, policy, segments, stored)

    async def _resolve_vectors(
        self, prepared: list[_PreparedFile],
    ) -> dict[VectorKey, list[float]] | None:
        """All vectors keyed by _PreparedFile.key(); None when embedding is unavailable."""
        vectors: dict[VectorKey, list[float]] = {}
        missing: dict[VectorKey, Segment] = {}
        for p in prepared:
            for s in p.segments:
                stored = p.vectors.get(s.ordinal_index)
                if stored is not None:
                    vectors[p.key(s)] = stored
                else:
                    missing.setdefault(p.key(s), s)
        missing = {k: s for k, s in missing.items() if k not in vectors}

        if not missing:
            return vectors

        file_chunks = [(p.file_name, [s.text for s in p.segments]) for p in prepared]
        key, hash_ = cache_key(file_chunks), content_hash(file_chunks)

        cached = self._cache.get(key, hash_)
        if cached is not None and all(k in cached for k in missing):
            vectors.update({k: cached[k] for k in missing})
            return vectors

        try:
            embedded = await self._embedder.embed([s.text for s in missing.values()])
        except EmbeddingError as exc:
            logger.warning("ContextRetriever | embedding unavailable, using fallback: %s", exc)
            return None

        vectors.update(zip(missing, embedded))
        self._cache.put(key, hash_, vectors)
        return vectors


def _to_context(result: RetrievalResult) -> ContextResult:
    return ContextResult(
        chunks=[format_segment(item.segment) for item in result],
        mode=result.mode,
    )
