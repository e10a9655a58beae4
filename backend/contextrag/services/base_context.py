"""
Shared base context

Files every caller sees in addition to their own: listed next to the
caller's records and merged into retrieval. Their names are shown with the
"[BASE] " prefix so they cannot be mistaken for a user's upload.

Base records may be stored without vectors; retrieval then embeds them on
first use and the EmbeddingCache keeps the result.
"""

from __future__ import annotations

import logging

from contextrag.schemas.documents import ContextFileSummary, ContextRecord, UploadedFile
from contextrag.storage.context_store import ContextStore, utc_now

logger = logging.getLogger(__name__)

BASE_PREFIX = "[BASE] "

SAMPLE_FILE_NAME = "Company Info.txt"
SAMPLE_CHUNKS = [
    "Company overview: the company provides document management and "
    "knowledge search services to small and medium businesses.",
    "Support hours are Monday to Friday, 9:00 to 18:00. Requests sent "
    "outside these hours are answered on the next working day.",
    "Every customer document is stored in its owner's private workspace "
    "and is never shared with other customers.",
]


def display_name(record: ContextRecord) -> str:
    return f"{BASE_PREFIX}{record.file_name}"


def strip_prefix(file_name: str) -> str | None:
    """The stored name of a "[BASE] " display name, or None for any other name."""
    if file_name.startswith(BASE_PREFIX):
        return file_name[len(BASE_PREFIX):]
    return None


def summarize(record: ContextRecord, *, base: bool = False) -> ContextFileSummary:
    return ContextFileSummary(
        file_name=display_name(record) if base else record.file_name,
        file_type=record.file_type,
        file_size=record.file_size,
        chunk_count=len(record.chunked),
        character_count=sum(len(c) for c in record.chunked),
        uploaded_at=record.uploaded_at,
        embeddings_generated=record.embeddings_generated,
        is_base_context=base,
    )


def as_uploaded_file(record: ContextRecord, *, base: bool = False) -> UploadedFile:
    return UploadedFile(
        file_name=display_name(record) if base else record.file_name,
        chunked=record.chunked,
        vectors=record.vectors or None,
    )


def sample_record() -> ContextRecord:
    return ContextRecord(
        file_name=SAMPLE_FILE_NAME,
        file_type="text/plain",
        file_size=sum(len(c.encode("utf-8")) for c in SAMPLE_CHUNKS),
        chunked=list(SAMPLE_CHUNKS),
        vectors=[],
        uploaded_at=utc_now(),
        embeddings_generated=False,
    )


async def init_base_context(store: ContextStore) -> list[ContextFileSummary]:
    """Seed the sample base file (replacing an earlier copy) and list the base context."""
    record = sample_record()
    await store.save_base(record)
    records = await store.list_base_records()
    logger.info("BaseContext | initialized sample=%s files=%d", record.file_name, len(records))
    return [summarize(r, base=True) for r in records]
