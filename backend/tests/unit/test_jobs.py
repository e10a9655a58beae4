"""
Unit Tests — CancellableJobRegistry
"""

from __future__ import annotations

import asyncio

import pytest

from contextrag.core.exceptions import ExtractionError, ExtractionErrorKind
from contextrag.processing.jobs import CancellableJobRegistry


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def jobs(clock) -> CancellableJobRegistry:
    return CancellableJobRegistry(grace_period_seconds=60.0, clock=clock)


@pytest.mark.unit
class TestRegistration:

    def test_register_generates_an_id(self, jobs):
        job = jobs.register()
        assert job.job_id
        assert job.job_id in jobs
        assert not jobs.is_cancelled(job.job_id)

    def test_register_with_explicit_id(self, jobs):
        job = jobs.register("job-1")
        assert jobs.get("job-1") is job

    def test_running_id_cannot_be_reused(self, jobs):
        jobs.register("job-1")
        with pytest.raises(ValueError):
            jobs.register("job-1")

    def test_finished_cancelled_id_can_be_reused(self, jobs):
        jobs.register("job-1")
        jobs.cancel("job-1")
        jobs.complete("job-1")

        job = jobs.register("job-1")
        assert not job.cancelled
        assert not jobs.is_cancelled("job-1")


@pytest.mark.unit
class TestCancellation:

    def test_cancel_sets_flag_and_abort_event(self, jobs):
        job = jobs.register("job-1")
        assert jobs.cancel("job-1") is True
        assert jobs.is_cancelled("job-1")
        assert job.abort.is_set()

    def test_cancel_is_idempotent(self, jobs, clock):
        job = jobs.register("job-1")
        jobs.cancel("job-1")
        first = job.cancelled_at
        clock.now += 5
        assert jobs.cancel("job-1") is True
        assert job.cancelled_at == first

    def test_cancel_unknown_job_returns_false(self, jobs):
        assert jobs.cancel("missing") is False

    def test_unknown_and_none_ids_are_not_cancelled(self, jobs):
        assert not jobs.is_cancelled("missing")
        assert not jobs.is_cancelled(None)

    def test_cancel_before_register_starts_the_job_cancelled(self, jobs, clock):
        assert jobs.cancel("job-early") is False
        assert jobs.has_pending_cancel("job-early")
        assert "job-early" not in jobs

        clock.now += 10
        job = jobs.register("job-early")

        assert job.cancelled
        assert job.abort.is_set()
        assert not jobs.has_pending_cancel("job-early")
        with pytest.raises(ExtractionError):
            jobs.raise_if_cancelled("job-early")

    def test_pending_cancel_expires_after_grace_period(self, jobs, clock):
        jobs.cancel("job-late")
        clock.now += 60
        assert not jobs.has_pending_cancel("job-late")

        job = jobs.register("job-late")
        assert not job.cancelled

    def test_sweep_drops_stale_pending_cancels(self, jobs, clock):
        jobs.cancel("job-a")
        clock.now += 61
        jobs.sweep()
        clock.now -= 61   # rewound: only a swept entry still reads as absent
        assert not jobs.has_pending_cancel("job-a")

    def test_pending_cancel_applies_once(self, jobs):
        jobs.cancel("job-1")
        jobs.register("job-1")
        jobs.complete("job-1")
        jobs.sweep()

        # the cancelled entry is inside its grace period, so re-registering replaces it
        again = jobs.register("job-1")
        assert not again.cancelled

    def test_raise_if_cancelled(self, jobs):
        jobs.register("job-1")
        jobs.raise_if_cancelled("job-1")
        jobs.cancel("job-1")
        with pytest.raises(ExtractionError) as exc_info:
            jobs.raise_if_cancelled("job-1")
        assert exc_info.value.kind is ExtractionErrorKind.CANCELLED
        assert exc_info.value.cancelled

    async def test_abort_event_wakes_waiters(self, jobs):
        job = jobs.register("job-1")
        waiter = asyncio.create_task(job.abort.wait())
        await asyncio.sleep(0)
        jobs.cancel("job-1")
        await asyncio.wait_for(waiter, timeout=1.0)


@pytest.mark.unit
class TestCompletionAndSweep:

    def test_completed_job_is_removed(self, jobs):
        jobs.register("job-1")
        jobs.complete("job-1")
        assert "job-1" not in jobs

    def test_completing_unknown_job_is_a_noop(self, jobs):
        jobs.complete("missing")
        assert len(jobs) == 0

    def test_cancelled_job_survives_until_grace_period(self, jobs, clock):
        jobs.register("job-1")
        jobs.cancel("job-1")
        jobs.complete("job-1")

        clock.now += 59
        assert jobs.sweep() == 0
        assert jobs.is_cancelled("job-1")

        clock.now += 1
        assert jobs.sweep() == 1
        assert "job-1" not in jobs

    def test_cancelled_but_running_job_is_never_swept(self, jobs, clock):
        jobs.register("job-1")
        jobs.cancel("job-1")
        clock.now += 3600
        assert jobs.sweep() == 0
        assert jobs.is_cancelled("job-1")

    async def test_run_sweeper_evicts_in_background(self, clock):
        jobs = CancellableJobRegistry(grace_period_seconds=0.0, clock=clock)
        jobs.register("job-1")
        jobs.cancel("job-1")
        jobs.complete("job-1")

        task = asyncio.create_task(jobs.run_sweeper(0.01))
        try:
            for _ in range(100):
                if "job-1" not in jobs:
                    break
                await asyncio.sleep(0.01)
        finally:
            task.cancel()
        assert "job-1" not in jobs
