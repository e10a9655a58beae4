"""
Embeddings Health Check Router

  GET /api/v1/embeddings/test

Embeds two fixed sentences through the configured embedding service and
reports the model, the vector dimension and the first few dimensions of the
first vector. Unlike /health this does reach the embedding service.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from contextrag.api.dependencies import Embedder
from contextrag.core.exceptions import EmbeddingError
from contextrag.schemas.documents import EmbeddingsTestFailure, EmbeddingsTestResponse

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/embeddings",
    tags=["Operations"],
)

TEST_TEXTS = [
    "This is a test sentence for the embedding service.",
    "Document retrieval works by comparing vectors.",
]


@router.get(
    "/test",
    response_model=EmbeddingsTestResponse,
    summary="Check the embedding service end to end",
    responses={500: {"model": EmbeddingsTestFailure}},
)
async def check_embeddings(embedder: Embedder):
    try:
        vectors = await embedder.embed(TEST_TEXTS)
    except EmbeddingError as exc:
        logger.warning("Embeddings test failed | model=%s error=%s", embedder.model, exc)
        body = EmbeddingsTestFailure(error=str(exc), model=embedder.model)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=body.to_wire(),
        )

    return EmbeddingsTestResponse(
        model=embedder.model,
        test_texts=TEST_TEXTS,
        embedding_dimension=len(vectors[0]) if vectors else 0,
        embeddings_count=len(vectors),
        sample_embedding=vectors[0][:5] if vectors else [],
    )
