"""
Observability Package — timing spans

    from contextrag.observability import traced

    @traced("embedding.embed")
    async def embed(...): ...
"""

from contextrag.observability.tracing import traced

__all__ = ["traced"]
