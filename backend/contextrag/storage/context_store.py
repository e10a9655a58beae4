"""
Per-user context records, plus the shared base context.

The storage layout belongs to whoever implements ContextStore; the core only
produces and consumes ContextRecord objects. LocalContextStore is the
single-node implementation:

  <context_dir>/<user>/<timestamp>_<safe file name>.json
  <base_context_dir>/<safe file name>.json

Base-context records are visible to every caller. They live outside the
per-user tree so no user id can collide with them, and they are keyed by
file name alone, so re-seeding a base file replaces it.

A user's record is identified by (file name, upload time); the same name can
be uploaded more than once. Upload times compare as UTC instants.

File I/O runs in the default executor so the event loop never blocks on disk.
"""

from __future__ import annotations

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from contextrag.schemas.documents import ContextRecord

logger = logging.getLogger(__name__)

_UNSAFE_CHARS_RE = re.compile(r"[^a-zA-Z0-9._\-]")


def _sanitize(name: str, limit: int = 200) -> str:
    """Strip any directory component and replace unsafe characters."""
    basename = name.replace("\\", "/").rsplit("/", 1)[-1]
    return _UNSAFE_CHARS_RE.sub("_", basename)[:limit] or "file"


def _as_utc(value: datetime) -> datetime:
    """Naive timestamps are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ContextStore(ABC):

    @abstractmethod
    async def save(self, user: str, record: ContextRecord) -> str:
        """Persist a record and return its storage key."""

    @abstractmethod
    async def list_records(self, user: str) -> list[ContextRecord]:
        """All records of a user, oldest first."""

    @abstractmethod
    async def get(self, user: str, file_name: str, uploaded_at: datetime) -> ContextRecord | None:
        """The user's record with this name and upload time, if any."""

    @abstractmethod
    async def delete(self, user: str, file_name: str, uploaded_at: datetime) -> bool:
        """Remove the user's record with this name and upload time; False if absent."""

    @abstractmethod
    async def list_base_records(self) -> list[ContextRecord]:
        """Shared base-context records, ordered by file name."""

    @abstractmethod
    async def save_base(self, record: ContextRecord) -> str:
        """Write (or replace) a base-context record and return its storage key."""


class LocalContextStore(ContextStore):
    """
    Without a shared_dir there is no base context: list_base_records()
    returns nothing and save_base() raises RuntimeError.
    """

    def __init__(self, base_dir: str | Path, shared_dir: str | Path | None = None) -> None:
        self._base_dir = Path(base_dir)
        self._shared_dir = Path(shared_dir) if shared_dir is not None else None

    def _user_dir(self, user: str) -> Path:
        return self._base_dir / _sanitize(user, limit=100)

    async def save(self, user: str, record: ContextRecord) -> str:
        stamp = _as_utc(record.uploaded_at).strftime("%Y%m%dT%H%M%S%fZ")
        path = self._user_dir(user) / f"{stamp}_{_sanitize(record.file_name)}.json"
        payload = record.model_dump_json(by_alias=True)

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._write_sync, path, payload)
        logger.info(
            "ContextStore | saved user=%s file=%s chunks=%d vectors=%d",
            user, record.file_name, len(record.chunked), len(record.vectors),
        )
        return str(path)

    async def list_records(self, user: str) -> list[ContextRecord]:
        loop = asyncio.get_running_loop()
        entries = await loop.run_in_executor(None, self._read_all_sync, self._user_dir(user))
        return [record for _, record in entries]

    async def get(self, user: str, file_name: str, uploaded_at: datetime) -> ContextRecord | None:
        loop = asyncio.get_running_loop()
        match = await loop.run_in_executor(
            None, self._find_sync, self._user_dir(user), file_name, _as_utc(uploaded_at),
        )
        return match[1] if match else None

    async def delete(self, user: str, file_name: str, uploaded_at: datetime) -> bool:
        loop = asyncio.get_running_loop()
        match = await loop.run_in_executor(
            None, self._find_sync, self._user_dir(user), file_name, _as_utc(uploaded_at),
        )
        if match is None:
            logger.info("ContextStore | delete found nothing user=%s file=%s", user, file_name)
            return False

        await loop.run_in_executor(None, match[0].unlink)
        logger.info("ContextStore | deleted user=%s file=%s", user, file_name)
        return True

    async def list_base_records(self) -> list[ContextRecord]:
        if self._shared_dir is None:
            return []
        loop = asyncio.get_running_loop()
        entries = await loop.run_in_executor(None, self._read_all_sync, self._shared_dir)
        return [record for _, record in entries]

    async def save_base(self, record: ContextRecord) -> str:
        if self._shared_dir is None:
            raise RuntimeError("No base context directory is configured")
        path = self._shared_dir / f"{_sanitize(record.file_name)}.json"
        payload = record.model_dump_json(by_alias=True)

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._write_sync, path, payload)
        logger.info("ContextStore | saved base file=%s chunks=%d", record.file_name, len(record.chunked))
        return str(path)

    # ------------------------------------------------------------------
    # Blocking helpers (executor only)
    # ------------------------------------------------------------------

    @staticmethod
    def _write_sync(path: Path, payload: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(payload, encoding="utf-8")
        tmp.replace(path)

    @staticmethod
    def _read_all_sync(directory: Path) -> list[tuple[Path, ContextRecord]]:
        if not directory.is_dir():
            return []
        entries: list[tuple[Path, ContextRecord]] = []
        for path in sorted(directory.glob("*.json")):
            try:
                entries.append(
                    (path, ContextRecord.model_validate_json(path.read_text(encoding="utf-8")))
                )
            except (OSError, ValidationError) as exc:
                logger.warning("ContextStore | skipping unreadable record %s: %s", path.name, exc)
        return entries

    @classmethod
    def _find_sync(
        cls, user_dir: Path, file_name: str, uploaded_at: datetime,
    ) -> tuple[Path, ContextRecord] | None:
        for path, record in cls._read_all_sync(user_dir):
            if record.file_name == file_name and _as_utc(record.uploaded_at) == uploaded_at:
                return path, record
        return None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
