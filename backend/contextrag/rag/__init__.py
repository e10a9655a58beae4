"""
RAG package — ranking and context assembly.

  retriever.py  cosine top-k, naive fallback, retrieval-count estimate
  context.py    working-set retrieval for the chat layer
"""

from contextrag.rag.context import ContextRetriever
from contextrag.rag.retriever import RetrievalEngine, estimate_k

__all__ = ["ContextRetriever", "RetrievalEngine", "estimate_k"]
