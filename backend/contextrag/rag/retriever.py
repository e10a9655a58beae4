"""
Retrieval Engine — brute-force cosine ranking over an in-memory working set

The working set is one document collection (a user's uploaded files), so a
linear scan with numpy beats building any index. No ANN structure.

  top_k()     embed the query once, score every candidate, stable sort
  fallback()  first k segments in original order, tagged "fallback" so the
              caller can disclose reduced relevance
  estimate_k  retrieval breadth from query length and depth cues
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Sequence

import numpy as np

from contextrag.core.exceptions import EmbeddingError
from contextrag.observability.tracing import traced
from contextrag.processing.chunking import ChunkingPolicy, Segment
from contextrag.processing.embeddings import EmbeddingClient

logger = logging.getLogger(__name__)

LONG_QUERY_CHARS  = 100
SHORT_QUERY_CHARS = 30

_DEPTH_CUES_RE = re.compile(
    r"\b(?:"
    r"explain|in detail|details?|complete|all|how does|what are all"
    r"|spiegami|dettagli|completo|tutto|tutti|come funziona"
    r")\b",
    re.IGNORECASE,
)


class RetrievalMode(str, Enum):
    SEMANTIC = "semantic"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class ScoredSegment:
    segment: Segment
    score:   float


@dataclass(frozen=True)
class RetrievalResult:
    items: tuple[ScoredSegment, ...]
    mode:  RetrievalMode = RetrievalMode.SEMANTIC

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self) -> Iterator[ScoredSegment]:
        return iter(self.items)

    @property
    def segments(self) -> list[Segment]:
        return [item.segment for item in self.items]

    @property
    def is_fallback(self) -> bool:
        return self.mode is RetrievalMode.FALLBACK


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """dot(a, b) / (‖a‖·‖b‖); 0.0 when either norm is 0 or dimensions differ."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape or va.size == 0:
        return 0.0
    denom = np.linalg.norm(va) * np.linalg.norm(vb)
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def estimate_k(query: str, policy: ChunkingPolicy) -> int:
    """
    Depth cues or a long query → policy max; a short query → min;
    anything else → default.
    """
    counts = policy.retrieval_count
    query = (query or "").strip()
    if _DEPTH_CUES_RE.search(query) or len(query) > LONG_QUERY_CHARS:
        return counts.max
    if len(query) < SHORT_QUERY_CHARS:
        return counts.min
    return counts.default


class RetrievalEngine:

    def __init__(self, embedder: EmbeddingClient) -> None:
        self._embedder = embedder

    @traced("retrieval.top_k")
    async def top_k(
        self,
        query:      str,
        candidates: Sequence[tuple[Segment, Sequence[float]]],
        k:          int,
    ) -> RetrievalResult:
        """
        Rank candidates by cosine similarity to the query.

        Falls back to naive ordering when the query cannot be embedded.
        Ties keep the candidates' original order.
        """
        if k <= 0 or not candidates:
            return RetrievalResult(items=())

        try:
            query_vector = await self._embedder.embed_query(query)
        except EmbeddingError as exc:
            logger.warning("Query embedding failed, using fallback ordering: %s", exc)
            return self.fallback([segment for segment, _ in candidates], k)

        scores = np.array(
            [cosine_similarity(query_vector, vector) for _, vector in candidates],
            dtype=np.float64,
        )
        order = np.argsort(-scores, kind="stable")[:k]
        items = tuple(ScoredSegment(candidates[i][0], float(scores[i])) for i in order)

        logger.debug(
            "RetrievalEngine | candidates=%d k=%d top_score=%.3f",
            len(candidates), k, items[0].score if items else 0.0,
        )
        return RetrievalResult(items=items, mode=RetrievalMode.SEMANTIC)

    @staticmethod
    def fallback(segments: Sequence[Segment], k: int) -> RetrievalResult:
        return RetrievalResult(
            items=tuple(ScoredSegment(s, 0.0) for s in segments[: max(0, k)]),
            mode=RetrievalMode.FALLBACK,
        )
