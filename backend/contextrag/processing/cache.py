"""
Embedding Cache  —  content-addressed, time-bounded
═══════════════════════════════════════════════════

Avoids re-embedding an unchanged file set between chat turns.

  key          sorted "fileName:chunkCount" pairs joined with "|"
  content hash CRC-32 over sorted "fileName:concatenatedChunkText" pairs

The key alone is cheap but weak: editing one character keeps every name and
count. A hit therefore needs the key, an age under the TTL, and an equal
content hash. Vectors are stored per (file name, file fingerprint, ordinal
index): a hit matches back to segments regardless of the order files arrive
in, and two uploads that share a name but not their content never share a
vector.

Entries are overwritten on put() and evicted by sweep(), which a background
task runs periodically; sweep failures are logged and never propagate.
"""

from __future__ import annotations

import asyncio
import logging
import time
import zlib
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

from contextrag.core.exceptions import CacheError

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600.0

VectorKey = tuple[str, int, int]        # (source_file_name, file_fingerprint, ordinal_index)
FileChunks = tuple[str, Sequence[str]]  # (file_name, chunk texts in order)


@dataclass
class CacheEntry:
    key:          str
    content_hash: int
    vectors:      dict[VectorKey, list[float]]
    written_at:   float


def cache_key(files: Iterable[FileChunks]) -> str:
    return "|".join(sorted(f"{name}:{len(chunks)}" for name, chunks in files))


def file_fingerprint(chunks: Sequence[str]) -> int:
    """CRC-32 of one file's chunks; chunk boundaries are part of the input."""
    return zlib.crc32("\x00".join(chunks).encode("utf-8"))


def content_hash(files: Iterable[FileChunks]) -> int:
    """Fast non-cryptographic 32-bit hash; collisions only cost a stale hit."""
    parts = sorted(f"{name}:{''.join(chunks)}" for name, chunks in files)
    return zlib.crc32("|".join(parts).encode("utf-8"))


class EmbeddingCache:
    """
    Dict-backed cache owned by one service instance; event-loop-only access.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._entries: dict[str, CacheEntry] = {}
        self._ttl = ttl_seconds
        self._clock = clock

    def __len__(self) -> int:
        return len(self._entries)

    def is_valid(self, entry: CacheEntry, expected_hash: int) -> bool:
        return (
            self._clock() - entry.written_at < self._ttl
            and entry.content_hash == expected_hash
        )

    def get(self, key: str, expected_hash: int) -> dict[VectorKey, list[float]] | None:
        entry = self._entries.get(key)
        if entry is None:
            logger.debug("EmbeddingCache miss | key=%s", key)
            return None
        if not self.is_valid(entry, expected_hash):
            logger.info(
                "EmbeddingCache stale | key=%s hash_match=%s",
                key, entry.content_hash == expected_hash,
            )
            return None
        logger.debug("EmbeddingCache hit | key=%s vectors=%d", key, len(entry.vectors))
        return entry.vectors

    def put(self, key: str, hash_: int, vectors: dict[VectorKey, list[float]]) -> None:
        self._entries[key] = CacheEntry(
            key=key, content_hash=hash_, vectors=dict(vectors), written_at=self._clock(),
        )

    def sweep(self) -> int:
        """Drop every entry older than the TTL; returns how many were removed."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if now - e.written_at >= self._ttl]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.info("EmbeddingCache sweep | removed=%d remaining=%d", len(expired), len(self._entries))
        return len(expired)

    async def run_sweeper(self, interval_seconds: float) -> None:
        """Background task: sweep forever until cancelled."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                self.sweep()
            except Exception as exc:
                error = CacheError(f"embedding cache sweep failed: {exc}")
                logger.warning("%s", error, exc_info=True)
