"""
Timing spans for the ingestion and retrieval pipeline.

`@traced(name)` wraps an async function, logs its elapsed time at DEBUG and
records failures. Domain errors (ContextRagError subclasses, e.g. a cancelled
job or an unreachable embedding service) are expected outcomes and logged at
WARNING without a traceback; anything else is logged at ERROR with one.

Enable with LOG_LEVEL=DEBUG to see every span:

  trace | span=embedding.embed elapsed_ms=412.7 ok
"""

from __future__ import annotations

import functools
import logging
import time
from typing import Any, Callable, Coroutine, TypeVar

from contextrag.core.exceptions import ContextRagError

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Coroutine[Any, Any, Any]])


def traced(name: str | None = None) -> Callable[[F], F]:
    """
    Decorator that instruments an async function with timing and error logging.

    Usage::

        @traced("retrieval.top_k")
        async def top_k(self, query, candidates, k): ...

        @traced()   # uses the function's qualified name as the span name
        async def ingest(self, ...): ...
    """
    def decorator(func: F) -> F:
        span_name = name or func.__qualname__

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            t0 = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except ContextRagError as exc:
                logger.warning(
                    "trace | span=%s elapsed_ms=%.1f error=%s",
                    span_name, (time.perf_counter() - t0) * 1000, exc,
                )
                raise
            except Exception as exc:
                logger.error(
                    "trace | span=%s elapsed_ms=%.1f error=%s",
                    span_name, (time.perf_counter() - t0) * 1000, exc, exc_info=True,
                )
                raise
            logger.debug(
                "trace | span=%s elapsed_ms=%.1f ok", span_name, (time.perf_counter() - t0) * 1000,
            )
            return result

        return wrapper  # type: ignore[return-value]
    return decorator
