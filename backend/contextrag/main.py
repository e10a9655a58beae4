"""
FastAPI Application — Entry Point

Context ingestion and retrieval API for the chat layer.

Architecture:
  - All routes are versioned under /api/v1/
  - Authentication happens at the gateway; the caller's id arrives in X-User-Id
  - One job registry and one embedding cache per process, swept by
    background tasks started in the lifespan
  - Structured JSON error responses on all 4xx/5xx

Middleware stack (innermost → outermost):
  1. CORS: restrict to configured origins
  2. Request ID + request logging with latency
  3. Gzip: compress responses > 1 KB
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from contextrag.api.dependencies import get_embedding_cache, get_job_registry
from contextrag.api.v1.context import router as context_router
from contextrag.api.v1.documents import router as documents_router
from contextrag.api.v1.embeddings import router as embeddings_router
from contextrag.core.config import settings
from contextrag.core.exceptions import IngestionFailure
from contextrag.schemas.documents import ErrorResponse, IngestionErrors, IngestionErrorType

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)


# ---------------------------------------------------------------------------
# Application lifespan: startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: launch the registry and cache sweepers.
    Shutdown: cancel them and wait for them to exit.
    """
    logger.info(
        "Starting contextrag | env=%s embedding_url=%s model=%s",
        settings.app_env, settings.embedding_base_url, settings.embedding_model,
    )

    interval = settings.cache_sweep_interval_seconds
    sweepers = [
        asyncio.create_task(get_job_registry().run_sweeper(interval), name="job-registry-sweeper"),
        asyncio.create_task(get_embedding_cache().run_sweeper(interval), name="embedding-cache-sweeper"),
    ]

    yield

    logger.info("Shutting down contextrag")
    for task in sweepers:
        task.cancel()
    await asyncio.gather(*sweepers, return_exceptions=True)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    app = FastAPI(
        title="contextrag",
        description=(
            "Document ingestion (text extraction with OCR fallback, adaptive chunking, "
            "embeddings) and context retrieval for a chat client."
        ),
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url="/api/redoc" if not settings.is_production else None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )

    # ----------------------------------------------------------------
    # Middleware (applied in reverse order, last added = outermost)
    # ----------------------------------------------------------------

    app.add_middleware(GZipMiddleware, minimum_size=1024)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.app_env == "development" else settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Content-Type", "X-Request-ID", "X-User-Id"],
        expose_headers=["X-Request-ID", "X-Job-ID"],
    )

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start = time.perf_counter()

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "HTTP %s %s %d %.1fms | user=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            request.headers.get("X-User-Id", "-"),
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers: structured error responses
    # ----------------------------------------------------------------

    @app.exception_handler(IngestionFailure)
    async def ingestion_failure_handler(request: Request, exc: IngestionFailure):
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse.from_failure(exc).to_wire(),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Convert Pydantic/FastAPI validation errors to the same error envelope."""
        message = "; ".join(
            f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        body = ErrorResponse(
            error=f"Request validation failed. {message}",
            error_type=IngestionErrorType.GENERAL_ERROR,
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=body.to_wire(),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions; stack traces never leave the process."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        logger.exception(
            "Unhandled exception | path=%s request_id=%s",
            request.url.path, request_id,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse.from_failure(IngestionErrors.general_error()).to_wire(),
            headers={"X-Request-ID": request_id},
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(documents_router,  prefix="/api/v1")
    app.include_router(context_router,    prefix="/api/v1")
    app.include_router(embeddings_router, prefix="/api/v1")

    @app.get(
        "/health",
        tags=["Operations"],
        summary="Liveness check",
        description="Returns 200 if the process is alive. No external checks.",
    )
    async def health() -> dict:
        return {"status": "ok", "service": "contextrag"}

    return app


# ---------------------------------------------------------------------------
# Application instance (imported by uvicorn)
# ---------------------------------------------------------------------------

app = create_app()


# ---------------------------------------------------------------------------
# Local development entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "contextrag.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
        access_log=True,
    )
