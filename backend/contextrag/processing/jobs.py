"""
Cancellable Job Registry
════════════════════════

Maps a job identifier to a cancellation flag plus an asyncio abort signal.

Lifecycle of an entry:

  register() ──► running ──► complete() ──► evicted immediately
                    │
                    └─ cancel() ──► cancelled ──► complete() ──► kept for the
                                                                 grace period,
                                                                 then swept

Cancelled entries outlive their job so a late poll (a page finishing after
the cancel request, a client retrying the cancel call) still sees the flag.

A cancel for an id that is not registered yet (the client picked the id and
cancelled while its upload was still in flight) is remembered for the grace
period. register() with that id then starts the job already cancelled, so
it stops at its first poll point.

Cancellation is cooperative. Work stops at the next poll point only, so the
worst-case latency is one page's rasterize/OCR duration; callers that put a
timeout on the cancel round-trip must allow for that.

One registry instance is owned by the ingestion service (the HTTP layer
holds exactly one); tests build their own, so nothing leaks between cases.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable

from contextrag.core.exceptions import ExtractionError, ExtractionErrorKind

logger = logging.getLogger(__name__)


@dataclass
class ExtractionJob:
    job_id:       str
    created_at:   float
    cancelled:    bool = False
    cancelled_at: float | None = None
    finished_at:  float | None = None
    abort:        asyncio.Event = field(default_factory=asyncio.Event, repr=False)


class CancellableJobRegistry:
    """
    Plain dict keyed by job_id. All mutation happens on the event loop
    thread, so no locking is needed.
    """

    def __init__(
        self,
        grace_period_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._jobs: dict[str, ExtractionJob] = {}
        self._early_cancels: dict[str, float] = {}   # job_id -> requested at
        self._grace = grace_period_seconds
        self._clock = clock

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)

    # ------------------------------------------------------------------
    # Registry operations
    # ------------------------------------------------------------------

    def register(self, job_id: str | None = None) -> ExtractionJob:
        """
        Create a running job. A finished entry with the same id (a cancelled
        job still inside its grace period) is replaced; a running one is not.
        """
        job_id = job_id or uuid.uuid4().hex
        existing = self._jobs.get(job_id)
        if existing is not None and existing.finished_at is None:
            raise ValueError(f"Job '{job_id}' is already running")

        now = self._clock()
        job = ExtractionJob(job_id=job_id, created_at=now)
        self._jobs[job_id] = job

        requested_at = self._early_cancels.pop(job_id, None)
        if requested_at is not None and now - requested_at < self._grace:
            job.cancelled = True
            job.cancelled_at = now
            job.abort.set()
            logger.info("JobRegistry | job=%s registered with an earlier cancel request", job_id)
        else:
            logger.debug("JobRegistry | registered job=%s active=%d", job_id, len(self._jobs))
        return job

    def get(self, job_id: str) -> ExtractionJob | None:
        return self._jobs.get(job_id)

    def cancel(self, job_id: str) -> bool:
        """
        Mark a job cancelled and fire its abort signal.

        Returns False when the id is unknown (not registered yet, or already
        evicted); the request is then kept as pending for the grace period.
        """
        job = self._jobs.get(job_id)
        if job is None:
            self._early_cancels[job_id] = self._clock()
            logger.info("JobRegistry | cancel for unknown job=%s, kept as pending", job_id)
            return False
        if not job.cancelled:
            job.cancelled = True
            job.cancelled_at = self._clock()
            job.abort.set()
            logger.info("JobRegistry | cancelled job=%s", job_id)
        return True

    def has_pending_cancel(self, job_id: str) -> bool:
        requested_at = self._early_cancels.get(job_id)
        return requested_at is not None and self._clock() - requested_at < self._grace

    def is_cancelled(self, job_id: str | None) -> bool:
        if job_id is None:
            return False
        job = self._jobs.get(job_id)
        return job is not None and job.cancelled

    def raise_if_cancelled(self, job_id: str | None) -> None:
        if self.is_cancelled(job_id):
            raise ExtractionError(ExtractionErrorKind.CANCELLED, f"Job {job_id} was cancelled")

    def complete(self, job_id: str) -> None:
        """Mark a job finished. Cancelled jobs stay visible until swept."""
        job = self._jobs.get(job_id)
        if job is None:
            return
        if job.cancelled:
            job.finished_at = self._clock()
        else:
            del self._jobs[job_id]

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    def sweep(self) -> int:
        """
        Drop cancelled entries whose job finished more than the grace period ago.
        A cancelled job that is still winding down is never evicted, or its
        next poll would read "not cancelled".
        """
        now = self._clock()
        expired = [
            job_id
            for job_id, job in self._jobs.items()
            if job.finished_at is not None and now - job.finished_at >= self._grace
        ]
        for job_id in expired:
            del self._jobs[job_id]

        stale = [j for j, t in self._early_cancels.items() if now - t >= self._grace]
        for job_id in stale:
            del self._early_cancels[job_id]
        if stale:
            logger.debug("JobRegistry | dropped pending cancels=%d", len(stale))

        if expired:
            logger.debug("JobRegistry | swept=%d remaining=%d", len(expired), len(self._jobs))
        return len(expired)

    async def run_sweeper(self, interval_seconds: float) -> None:
        """Background task: sweep forever until cancelled."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                self.sweep()
            except Exception as exc:
                logger.warning("JobRegistry sweep failed: %s", exc, exc_info=True)
