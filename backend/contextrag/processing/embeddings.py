"""
Embedding Client  —  Batched Embeddings with Retry
══════════════════════════════════════════════════

Talks to any OpenAI-compatible POST /v1/embeddings endpoint (OpenAI, LM
Studio, vLLM, Ollama's compatibility layer) through the official `openai`
SDK with a configurable base URL.

Design goals:
  • Batch efficiency: one API call per `embedding_batch_size` texts
  • Retry logic: exponential back-off on transport errors, 429 and 5xx
  • Ordering: the service returns an `index` per vector and is not required
    to preserve input order, so every batch is re-sorted by that index
  • Typed failures: every error leaves as EmbeddingError{TRANSPORT | BAD_RESPONSE}

Retry policy:
  On APIConnectionError / APITimeoutError → TRANSPORT, retried
  On APIStatusError 429 / 5xx             → BAD_RESPONSE, retried
  On any other APIStatusError             → BAD_RESPONSE, fail immediately
  On a non-JSON or malformed payload      → BAD_RESPONSE, fail immediately

A failing batch cancels the batches still in flight.

The SDK's own retries are disabled (max_retries=0) so the policy above is
the only one in force.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Sequence

import openai
from openai import AsyncOpenAI

from contextrag.core.config import settings
from contextrag.core.exceptions import EmbeddingError, EmbeddingErrorKind
from contextrag.observability.tracing import traced
from contextrag.processing.chunking import Segment

logger = logging.getLogger(__name__)

Vector = list[float]


class EmbeddingClient:
    """
    Stateless apart from the underlying HTTP client; safe to share.

    Usage:
        client = EmbeddingClient()
        vectors = await client.embed(["first chunk", "second chunk"])
        query_vector = await client.embed_query("what is covered?")
    """

    def __init__(
        self,
        base_url:   str | None = None,
        api_key:    str | None = None,
        model:      str | None = None,
        batch_size: int | None = None,
        *,
        max_concurrency:  int | None = None,
        max_retries:      int | None = None,
        retry_base_delay: float | None = None,
        retry_max_delay:  float | None = None,
        timeout:          float | None = None,
        client:           AsyncOpenAI | None = None,
    ) -> None:
        self._model       = model or settings.embedding_model
        self._batch_size  = max(1, batch_size or settings.embedding_batch_size)
        self._concurrency = max(1, max_concurrency or settings.embedding_max_concurrency)
        self._max_retries = settings.embedding_max_retries if max_retries is None else max_retries
        self._base_delay  = (
            settings.embedding_retry_base_delay if retry_base_delay is None else retry_base_delay
        )
        self._max_delay   = settings.embedding_retry_max_delay if retry_max_delay is None else retry_max_delay
        self._client = client or AsyncOpenAI(
            base_url=base_url or settings.embedding_base_url,
            api_key=api_key or settings.embedding_api_key,
            timeout=timeout or settings.embedding_timeout_seconds,
            max_retries=0,
        )

    @property
    def model(self) -> str:
        return self._model

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    @traced("embedding.embed")
    async def embed(self, texts: Sequence[str]) -> list[Vector]:
        """
        Embed `texts`, returning one vector per input in input order.

        Raises:
            EmbeddingError once a batch has exhausted its retries.
        """
        if not texts:
            return []

        t0 = time.monotonic()
        batches = [
            list(texts[i : i + self._batch_size])
            for i in range(0, len(texts), self._batch_size)
        ]
        logger.info(
            "EmbeddingClient | texts=%d batches=%d model=%s",
            len(texts), len(batches), self._model,
        )

        semaphore = asyncio.Semaphore(self._concurrency)
        tasks = [
            asyncio.ensure_future(self._embed_batch_with_retry(batch, batch_idx, semaphore))
            for batch_idx, batch in enumerate(batches)
        ]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            # One failed batch fails the call; stop the others
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        vectors = [vector for batch_vectors in results for vector in batch_vectors]
        logger.info(
            "EmbeddingClient done | vectors=%d dims=%d elapsed_ms=%.0f",
            len(vectors), len(vectors[0]) if vectors else 0, (time.monotonic() - t0) * 1000,
        )
        return vectors

    async def embed_query(self, text: str) -> Vector:
        """Embed a single query string with the same model as the documents."""
        semaphore = asyncio.Semaphore(1)
        vectors = await self._embed_batch_with_retry([text], 0, semaphore)
        return vectors[0]

    async def embed_segments(self, segments: Sequence[Segment]) -> list[tuple[Segment, Vector]]:
        vectors = await self.embed([s.text for s in segments])
        return list(zip(segments, vectors))

    # ------------------------------------------------------------------
    # Batch processing with retry
    # ------------------------------------------------------------------

    async def _embed_batch_with_retry(
        self,
        batch:     list[str],
        batch_idx: int,
        semaphore: asyncio.Semaphore,
    ) -> list[Vector]:
        last_error = EmbeddingError(EmbeddingErrorKind.TRANSPORT, "no attempt was made")

        for attempt in range(self._max_retries + 1):
            if attempt > 0:
                delay = min(self._base_delay * (2 ** (attempt - 1)), self._max_delay)
                logger.warning(
                    "Embedding retry | batch=%d attempt=%d delay=%.1fs error=%s",
                    batch_idx, attempt, delay, last_error,
                )
                await asyncio.sleep(delay)

            async with semaphore:
                try:
                    return await self._call_api(batch, batch_idx)
                except EmbeddingError as exc:
                    if not exc.retryable:
                        logger.error("Non-retryable embedding error batch=%d: %s", batch_idx, exc)
                        raise
                    last_error = exc

        logger.error(
            "Embedding batch %d failed after %d retries: %s",
            batch_idx, self._max_retries, last_error,
        )
        raise last_error

    async def _call_api(self, batch: list[str], batch_idx: int) -> list[Vector]:
        """One /v1/embeddings call; maps SDK errors onto EmbeddingError."""
        t_api = time.monotonic()
        try:
            response = await self._client.embeddings.create(
                model=self._model,
                input=batch,
                encoding_format="float",
            )
        except openai.APIConnectionError as exc:   # includes APITimeoutError
            raise EmbeddingError(EmbeddingErrorKind.TRANSPORT, str(exc)) from exc
        except openai.APIStatusError as exc:
            raise EmbeddingError(
                EmbeddingErrorKind.BAD_RESPONSE,
                f"embedding service returned HTTP {exc.status_code}",
                status_code=exc.status_code,
            ) from exc
        except openai.APIError as exc:              # e.g. APIResponseValidationError
            raise EmbeddingError(EmbeddingErrorKind.BAD_RESPONSE, str(exc)) from exc
        except ValueError as exc:                   # body is not JSON
            raise EmbeddingError(
                EmbeddingErrorKind.BAD_RESPONSE, f"unparseable embedding response: {exc}",
            ) from exc

        try:
            data = list(getattr(response, "data", None) or [])
            if len(data) != len(batch):
                raise EmbeddingError(
                    EmbeddingErrorKind.BAD_RESPONSE,
                    f"expected {len(batch)} embeddings, got {len(data)}",
                )
            data.sort(key=lambda item: item.index)
            vectors = [[float(x) for x in item.embedding] for item in data]
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise EmbeddingError(
                EmbeddingErrorKind.BAD_RESPONSE, f"malformed embedding response: {exc}",
            ) from exc

        if any(not v for v in vectors) or len({len(v) for v in vectors}) != 1:
            raise EmbeddingError(
                EmbeddingErrorKind.BAD_RESPONSE, "embeddings have missing or mismatched dimensions",
            )

        logger.debug(
            "Embeddings API | batch=%d size=%d api_ms=%.0f",
            batch_idx, len(batch), (time.monotonic() - t_api) * 1000,
        )
        return vectors
