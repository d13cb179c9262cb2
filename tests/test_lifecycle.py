"""Tests for publication_engine.scheduling.lifecycle.JobLifecycle.

Validates:
- schedule_job / cancel conditional transitions and their audit events
- mark_published / mark_failed terminal writes and in-place job updates
- Illegal transitions are rejected before touching the store
- recover_stuck_jobs()
- Store timeouts surface as DatabaseError
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from publication_engine.audit import AuditEventKind
from publication_engine.exceptions import (
    ClaimConflictError,
    DatabaseError,
    InvalidTransitionError,
)
from publication_engine.scheduling.lifecycle import JobLifecycle
from publication_engine.scheduling.models import JobStatus


@pytest.fixture
def lifecycle(job_store, audit_sink, clock):
    return JobLifecycle(job_store, audit_sink=audit_sink, clock=clock)


# =============================================================================
# schedule_job / cancel
# =============================================================================


class TestScheduleAndCancel:
    """Tests for the upstream transitions."""

    @pytest.mark.asyncio
    async def test_schedule_draft(self, lifecycle, job_store, make_job, audit_sink):
        job_store.add(make_job("job-1", status=JobStatus.DRAFT, scheduled_at=None))
        when = datetime(2025, 7, 1, 9, 30, tzinfo=timezone.utc)

        await lifecycle.schedule_job("job-1", when, tenant_id="tenant-a")

        job = job_store.jobs["job-1"]
        assert job.status is JobStatus.SCHEDULED
        assert job.scheduled_at == when
        events = audit_sink.get_recent(kind=AuditEventKind.JOB_SCHEDULED)
        assert len(events) == 1
        assert events[0].tenant_id == "tenant-a"

    @pytest.mark.asyncio
    async def test_schedule_naive_datetime_is_utc(self, lifecycle, job_store, make_job):
        job_store.add(make_job("job-1", status=JobStatus.DRAFT))
        await lifecycle.schedule_job("job-1", datetime(2025, 7, 1, 9, 30))
        assert job_store.jobs["job-1"].scheduled_at == datetime(
            2025, 7, 1, 9, 30, tzinfo=timezone.utc
        )

    @pytest.mark.asyncio
    async def test_schedule_non_draft_conflicts(self, lifecycle, job_store, make_job):
        job_store.add(make_job("job-1", status=JobStatus.PUBLISHED))
        with pytest.raises(ClaimConflictError) as exc_info:
            await lifecycle.schedule_job("job-1", datetime(2025, 7, 1, tzinfo=timezone.utc))
        assert exc_info.value.expected_status == "draft"
        assert job_store.status_of("job-1") is JobStatus.PUBLISHED

    @pytest.mark.asyncio
    async def test_cancel_scheduled(self, lifecycle, job_store, make_job, audit_sink):
        job_store.add(make_job("job-1"))

        await lifecycle.cancel("job-1", tenant_id="tenant-a")

        job = job_store.jobs["job-1"]
        assert job.status is JobStatus.DRAFT
        assert job.scheduled_at is None
        assert len(audit_sink.get_recent(kind=AuditEventKind.SCHEDULE_CANCELLED)) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status", [JobStatus.PROCESSING, JobStatus.PUBLISHED, JobStatus.FAILED, JobStatus.DRAFT]
    )
    async def test_cancel_only_from_scheduled(self, lifecycle, job_store, make_job, audit_sink, status):
        job_store.add(make_job("job-1", status=status))
        with pytest.raises(ClaimConflictError):
            await lifecycle.cancel("job-1")
        assert job_store.status_of("job-1") is status
        assert audit_sink.get_recent(kind=AuditEventKind.SCHEDULE_CANCELLED) == []

    @pytest.mark.asyncio
    async def test_cancel_unknown_job(self, lifecycle):
        with pytest.raises(ClaimConflictError):
            await lifecycle.cancel("missing")

    @pytest.mark.asyncio
    async def test_rescheduling_after_cancel(self, lifecycle, job_store, make_job, fixed_now):
        job_store.add(make_job("job-1"))
        await lifecycle.cancel("job-1")
        await lifecycle.schedule_job("job-1", fixed_now + timedelta(hours=1))
        assert job_store.status_of("job-1") is JobStatus.SCHEDULED


# =============================================================================
# Terminal transitions
# =============================================================================


class TestTerminalTransitions:
    """Tests for mark_published / mark_failed."""

    @pytest.mark.asyncio
    async def test_mark_published(self, lifecycle, job_store, make_job, fixed_now):
        job = job_store.add(make_job("job-1", status=JobStatus.PROCESSING))

        await lifecycle.mark_published(job, "https://blog.example.com/p/1")

        assert job.status is JobStatus.PUBLISHED
        assert job.published_at == fixed_now
        assert job.result_url == "https://blog.example.com/p/1"
        stored = job_store.jobs["job-1"]
        assert stored.status is JobStatus.PUBLISHED
        assert stored.result_url == "https://blog.example.com/p/1"
        stored.check_invariants()

    @pytest.mark.asyncio
    async def test_mark_failed(self, lifecycle, job_store, make_job):
        job = job_store.add(make_job("job-1", status=JobStatus.PROCESSING))

        await lifecycle.mark_failed(job, "AuthError: HTTP 401")

        assert job.status is JobStatus.FAILED
        stored = job_store.jobs["job-1"]
        assert stored.error_message == "AuthError: HTTP 401"
        assert stored.published_at is None
        stored.check_invariants()

    @pytest.mark.asyncio
    async def test_scheduled_job_cannot_be_published(self, lifecycle, job_store, make_job):
        job = job_store.add(make_job("job-1"))
        with pytest.raises(InvalidTransitionError):
            await lifecycle.mark_published(job, "https://x")
        assert job_store.status_of("job-1") is JobStatus.SCHEDULED

    @pytest.mark.asyncio
    async def test_failed_job_is_terminal(self, lifecycle, job_store, make_job):
        job = job_store.add(make_job("job-1", status=JobStatus.FAILED))
        with pytest.raises(InvalidTransitionError, match="failed -> published"):
            await lifecycle.mark_published(job, "https://x")

    @pytest.mark.asyncio
    async def test_stored_status_changed_underneath(self, lifecycle, job_store, make_job):
        job = job_store.add(make_job("job-1", status=JobStatus.PROCESSING))
        job_store.jobs["job-1"].status = JobStatus.FAILED

        with pytest.raises(ClaimConflictError) as exc_info:
            await lifecycle.mark_published(job, "https://x")

        assert exc_info.value.expected_status == "processing"
        assert job.status is JobStatus.PROCESSING
        assert job.result_url is None

    @pytest.mark.asyncio
    async def test_store_failure_propagates(self, lifecycle, job_store, make_job):
        job = job_store.add(make_job("job-1", status=JobStatus.PROCESSING))
        job_store.fail_updates = True
        with pytest.raises(DatabaseError):
            await lifecycle.mark_failed(job, "x")

    @pytest.mark.asyncio
    async def test_store_timeout_is_database_error(self, job_store, make_job, clock):
        async def hang(*args, **kwargs):
            await asyncio.sleep(5)

        job_store.update_job = hang
        lifecycle = JobLifecycle(job_store, store_timeout_seconds=0.01, clock=clock)
        job = job_store.add(make_job("job-1", status=JobStatus.PROCESSING))

        with pytest.raises(DatabaseError, match="timed out"):
            await lifecycle.mark_failed(job, "x")


# =============================================================================
# Stuck-job recovery
# =============================================================================


class TestRecovery:
    """Tests for recover_stuck_jobs()."""

    def _processing(self, make_job, job_id, claimed_at):
        job = make_job(job_id, status=JobStatus.PROCESSING)
        job.claimed_at = claimed_at
        return job

    @pytest.mark.asyncio
    async def test_recovers_only_old_claims(self, lifecycle, job_store, make_job, fixed_now, audit_sink):
        job_store.add(self._processing(make_job, "old", fixed_now - timedelta(minutes=61)))
        job_store.add(self._processing(make_job, "fresh", fixed_now - timedelta(minutes=5)))

        recovered = await lifecycle.recover_stuck_jobs(60)

        assert recovered == 1
        old = job_store.jobs["old"]
        assert old.status is JobStatus.FAILED
        assert old.error_message == (
            "Dispatch stuck in processing for more than 60 minutes. "
            "Marked as failed by recovery process."
        )
        old.check_invariants()
        assert job_store.status_of("fresh") is JobStatus.PROCESSING
        assert len(audit_sink.get_recent(kind=AuditEventKind.JOB_RECOVERED)) == 1

    @pytest.mark.asyncio
    async def test_nothing_stuck(self, lifecycle):
        assert await lifecycle.recover_stuck_jobs(30) == 0

    @pytest.mark.asyncio
    async def test_job_finished_meanwhile_is_skipped(self, lifecycle, job_store, make_job, fixed_now):
        job_store.add(self._processing(make_job, "old", fixed_now - timedelta(hours=2)))
        original_get = job_store.get_stuck_jobs

        async def get_then_finish(cutoff):
            stuck = await original_get(cutoff)
            job_store.jobs["old"].status = JobStatus.PUBLISHED
            return stuck

        job_store.get_stuck_jobs = get_then_finish

        assert await lifecycle.recover_stuck_jobs(30) == 0
        assert job_store.status_of("old") is JobStatus.PUBLISHED
