"""
Unit Tests — EmbeddingClient
════════════════════════════
Most tests replace the AsyncOpenAI client with a MagicMock whose
embeddings.create is an AsyncMock. TestMalformedResponses keeps the real
SDK and swaps only its HTTP transport, so response parsing is exercised.
"""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from contextrag.core.exceptions import EmbeddingError, EmbeddingErrorKind
from contextrag.processing.chunking import Segment
from contextrag.processing.embeddings import EmbeddingClient
from tests.conftest import embedder_over_http, not_json_handler

_REQUEST = httpx.Request("POST", "http://embeddings.test/v1/embeddings")


def _response(vectors: list[list[float]], order: list[int] | None = None):
    order = order if order is not None else list(range(len(vectors)))
    return SimpleNamespace(
        data=[SimpleNamespace(index=i, embedding=vectors[i]) for i in order],
    )


def _status_error(code: int) -> openai.APIStatusError:
    return openai.APIStatusError(
        f"HTTP {code}", response=httpx.Response(code, request=_REQUEST), body=None,
    )


def _echo(**kwargs):
    """Vector [len(text), position] for every input, in input order."""
    texts = kwargs["input"]
    return _response([[float(len(t)), float(i)] for i, t in enumerate(texts)])


@pytest.fixture
def openai_client():
    client = MagicMock()
    client.embeddings.create = AsyncMock(side_effect=_echo)
    return client


@pytest.fixture
def make_client(openai_client):
    def _build(**kwargs) -> EmbeddingClient:
        params = {
            "model": "test-embedding-model",
            "batch_size": 2,
            "max_concurrency": 2,
            "max_retries": 2,
            "retry_base_delay": 0.0,
            "retry_max_delay": 0.0,
            "client": openai_client,
            **kwargs,
        }
        return EmbeddingClient(**params)
    return _build


@pytest.mark.unit
class TestEmbed:

    async def test_one_vector_per_text_in_input_order(self, make_client, openai_client):
        texts = ["a", "bb", "ccc", "dddd", "eeeee"]
        vectors = await make_client().embed(texts)

        assert [v[0] for v in vectors] == [1.0, 2.0, 3.0, 4.0, 5.0]
        assert openai_client.embeddings.create.await_count == 3

    async def test_request_shape(self, make_client, openai_client):
        await make_client().embed(["hello"])
        kwargs = openai_client.embeddings.create.await_args.kwargs
        assert kwargs == {"model": "test-embedding-model", "input": ["hello"], "encoding_format": "float"}

    async def test_response_is_reordered_by_index(self, make_client, openai_client):
        openai_client.embeddings.create = AsyncMock(
            return_value=_response([[1.0, 0.0], [0.0, 1.0]], order=[1, 0]),
        )
        vectors = await make_client().embed(["first", "second"])
        assert vectors == [[1.0, 0.0], [0.0, 1.0]]

    async def test_empty_input_makes_no_call(self, make_client, openai_client):
        assert await make_client().embed([]) == []
        openai_client.embeddings.create.assert_not_awaited()

    async def test_embed_query(self, make_client):
        vector = await make_client().embed_query("four")
        assert vector == [4.0, 0.0]

    async def test_embed_segments_pairs_segments_with_vectors(self, make_client):
        segments = [Segment("abc", "a.txt", 0), Segment("de", "a.txt", 1)]
        pairs = await make_client().embed_segments(segments)
        assert [(s.ordinal_index, v[0]) for s, v in pairs] == [(0, 3.0), (1, 2.0)]


@pytest.mark.unit
class TestRetryPolicy:

    async def test_server_error_is_retried(self, make_client, openai_client):
        openai_client.embeddings.create = AsyncMock(
            side_effect=[_status_error(503), _response([[1.0, 2.0]])],
        )
        assert await make_client().embed(["x"]) == [[1.0, 2.0]]
        assert openai_client.embeddings.create.await_count == 2

    async def test_rate_limit_is_retried(self, make_client, openai_client):
        openai_client.embeddings.create = AsyncMock(
            side_effect=[_status_error(429), _status_error(429), _response([[3.0]])],
        )
        assert await make_client().embed(["x"]) == [[3.0]]

    async def test_client_error_fails_immediately(self, make_client, openai_client):
        openai_client.embeddings.create = AsyncMock(side_effect=_status_error(400))

        with pytest.raises(EmbeddingError) as exc_info:
            await make_client().embed(["x"])

        assert exc_info.value.kind is EmbeddingErrorKind.BAD_RESPONSE
        assert exc_info.value.status_code == 400
        assert openai_client.embeddings.create.await_count == 1

    async def test_transport_error_exhausts_retries(self, make_client, openai_client):
        openai_client.embeddings.create = AsyncMock(
            side_effect=openai.APIConnectionError(request=_REQUEST),
        )

        with pytest.raises(EmbeddingError) as exc_info:
            await make_client(max_retries=2).embed(["x"])

        assert exc_info.value.kind is EmbeddingErrorKind.TRANSPORT
        assert openai_client.embeddings.create.await_count == 3

    async def test_count_mismatch_is_bad_response(self, make_client, openai_client):
        openai_client.embeddings.create = AsyncMock(return_value=_response([[1.0]]))

        with pytest.raises(EmbeddingError) as exc_info:
            await make_client().embed(["x", "y"])

        assert exc_info.value.kind is EmbeddingErrorKind.BAD_RESPONSE
        assert openai_client.embeddings.create.await_count == 1

    async def test_mismatched_dimensions_are_bad_response(self, make_client, openai_client):
        openai_client.embeddings.create = AsyncMock(return_value=_response([[1.0, 2.0], [1.0]]))
        with pytest.raises(EmbeddingError):
            await make_client().embed(["x", "y"])

    async def test_failed_batch_cancels_batches_in_flight(self, make_client, openai_client):
        cancelled: list[str] = []

        async def _create(**kwargs):
            text = kwargs["input"][0]
            if text == "bad":
                raise _status_error(400)
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                cancelled.append(text)
                raise

        openai_client.embeddings.create = AsyncMock(side_effect=_create)
        client = make_client(batch_size=1, max_concurrency=3)

        with pytest.raises(EmbeddingError):
            await asyncio.wait_for(client.embed(["a", "b", "bad"]), timeout=2.0)

        assert sorted(cancelled) == ["a", "b"]


@pytest.mark.unit
class TestMalformedResponses:
    """Real AsyncOpenAI over httpx.MockTransport: what the service sends back is the variable."""

    async def test_body_that_is_not_json(self):
        client = embedder_over_http(not_json_handler)

        with pytest.raises(EmbeddingError) as exc_info:
            await client.embed(["x"])

        assert exc_info.value.kind is EmbeddingErrorKind.BAD_RESPONSE
        assert not exc_info.value.retryable

    async def test_query_body_that_is_not_json(self):
        with pytest.raises(EmbeddingError):
            await embedder_over_http(not_json_handler).embed_query("x")

    @pytest.mark.parametrize(
        "payload",
        [
            {"object": "list"},
            {"data": "nope"},
            {"data": [{"index": 0, "embedding": "abc"}]},
            {"data": [{"index": None, "embedding": [1.0]}, {"index": 1, "embedding": [2.0]}]},
            {"data": [{"embedding": [1.0]}]},
        ],
    )
    async def test_json_of_the_wrong_shape(self, payload):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=payload)

        texts = ["x", "y"] if len(payload.get("data") or []) == 2 else ["x"]
        with pytest.raises(EmbeddingError) as exc_info:
            await embedder_over_http(handler).embed(texts)

        assert exc_info.value.kind is EmbeddingErrorKind.BAD_RESPONSE

    async def test_well_formed_body_round_trips(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={
                "object": "list",
                "model": "test-embedding-model",
                "data": [
                    {"object": "embedding", "index": 1, "embedding": [0.0, 1.0]},
                    {"object": "embedding", "index": 0, "embedding": [1.0, 0.0]},
                ],
                "usage": {"prompt_tokens": 2, "total_tokens": 2},
            })

        vectors = await embedder_over_http(handler).embed(["first", "second"])
        assert vectors == [[1.0, 0.0], [0.0, 1.0]]


@pytest.mark.unit
class TestEmbeddingErrorRetryable:

    @pytest.mark.parametrize(
        "kind, status, expected",
        [
            (EmbeddingErrorKind.TRANSPORT, None, True),
            (EmbeddingErrorKind.BAD_RESPONSE, 429, True),
            (EmbeddingErrorKind.BAD_RESPONSE, 502, True),
            (EmbeddingErrorKind.BAD_RESPONSE, 404, False),
            (EmbeddingErrorKind.BAD_RESPONSE, None, False),
        ],
    )
    def test_retryable(self, kind, status, expected):
        assert EmbeddingError(kind, "x", status_code=status).retryable is expected
