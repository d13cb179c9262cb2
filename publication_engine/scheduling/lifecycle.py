"""
Publication job lifecycle: scheduling, cancellation and terminal states.

``JobLifecycle`` owns every status write the engine performs.  Each write is
a conditional update on the job's current status, so two writers racing on
the same job cannot both succeed.  All job store interactions go through the
``job_store`` parameter (a
:class:`~publication_engine.database.SupabaseJobStore` instance).
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from publication_engine.audit import AuditEventKind
from publication_engine.exceptions import (
    ClaimConflictError,
    DatabaseError,
    InvalidTransitionError,
)
from publication_engine.scheduling.models import JobStatus, PublicationJob
from publication_engine.utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")


class JobLifecycle:
    """Applies state-machine transitions to publication jobs.

    Args:
        job_store: Job store (:class:`~publication_engine.database.SupabaseJobStore`).
        audit_sink: Optional :class:`~publication_engine.audit.AuditSink`.
        store_timeout_seconds: Bound on every job store call.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        job_store: "SupabaseJobStore",  # noqa: F821
        audit_sink: Optional["AuditSink"] = None,  # noqa: F821
        store_timeout_seconds: float = 10.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.job_store = job_store
        self.audit_sink = audit_sink
        self.store_timeout_seconds = store_timeout_seconds
        self.clock = clock

    # ================================================================
    # UPSTREAM OPERATIONS
    # ================================================================

    async def schedule_job(
        self,
        job_id: str,
        scheduled_at: datetime,
        tenant_id: Optional[str] = None,
    ) -> None:
        """Move a draft job to ``SCHEDULED`` for *scheduled_at*.

        Raises:
            ClaimConflictError: If the job is not a draft.
            DatabaseError: If the job store fails or times out.
        """
        when = ensure_utc(scheduled_at)
        claimed = await self._store_call(
            self.job_store.claim_job(
                job_id,
                JobStatus.DRAFT,
                JobStatus.SCHEDULED,
                {"scheduled_at": when.isoformat()},
            ),
            f"schedule job {job_id}",
        )
        if not claimed:
            raise ClaimConflictError(job_id, JobStatus.DRAFT.value)

        logger.info("[SCHEDULER] Job %s scheduled for %s", job_id, when.isoformat())
        await self._audit(
            tenant_id,
            AuditEventKind.JOB_SCHEDULED,
            f"Job {job_id} scheduled for {when.isoformat()}",
        )

    async def cancel(self, job_id: str, tenant_id: Optional[str] = None) -> None:
        """Return a scheduled job to ``DRAFT`` and clear its schedule.

        The update only matches while the job is still ``SCHEDULED``; once
        the scheduler has claimed it the cancel loses.

        Raises:
            ClaimConflictError: If the job is no longer scheduled.
            DatabaseError: If the job store fails or times out.
        """
        cancelled = await self._store_call(
            self.job_store.claim_job(
                job_id,
                JobStatus.SCHEDULED,
                JobStatus.DRAFT,
                {"scheduled_at": None},
            ),
            f"cancel job {job_id}",
        )
        if not cancelled:
            raise ClaimConflictError(job_id, JobStatus.SCHEDULED.value)

        logger.info("[SCHEDULER] Job %s cancelled", job_id)
        await self._audit(
            tenant_id,
            AuditEventKind.SCHEDULE_CANCELLED,
            f"Scheduled publication {job_id} cancelled",
        )

    # ================================================================
    # TERMINAL TRANSITIONS
    # ================================================================

    async def mark_published(
        self,
        job: PublicationJob,
        result_url: str,
        published_at: Optional[datetime] = None,
    ) -> None:
        """Mark a claimed job as ``PUBLISHED`` and update *job* in place.

        Raises:
            InvalidTransitionError: If *job* is not ``PROCESSING``.
            ClaimConflictError: If the stored job is no longer ``PROCESSING``.
            DatabaseError: If the job store fails or times out.
        """
        published_at = ensure_utc(published_at or self.clock())
        await self._finish(
            job,
            JobStatus.PUBLISHED,
            {
                "published_at": published_at.isoformat(),
                "result_url": result_url,
            },
        )
        job.published_at = published_at
        job.result_url = result_url

        logger.info("[SCHEDULER] Job %s published (%s)", job.id, result_url)

    async def mark_failed(self, job: PublicationJob, error_message: str) -> None:
        """Mark a claimed job as ``FAILED`` and update *job* in place.

        Raises:
            InvalidTransitionError: If *job* is not ``PROCESSING``.
            ClaimConflictError: If the stored job is no longer ``PROCESSING``.
            DatabaseError: If the job store fails or times out.
        """
        await self._finish(job, JobStatus.FAILED, {"error_message": error_message})
        job.error_message = error_message

        logger.error("[SCHEDULER] Job %s failed: %s", job.id, error_message)

    async def _finish(
        self,
        job: PublicationJob,
        status: JobStatus,
        fields: Dict[str, Any],
    ) -> None:
        if not job.status.can_transition_to(status):
            raise InvalidTransitionError(job.status.value, status.value)

        updated = await self._store_call(
            self.job_store.update_job(
                job.id,
                {"status": status.value, **fields},
                expected_status=JobStatus.PROCESSING,
            ),
            f"mark job {job.id} {status.value}",
        )
        if not updated:
            raise ClaimConflictError(job.id, JobStatus.PROCESSING.value)
        job.status = status

    # ================================================================
    # RECOVERY
    # ================================================================

    async def recover_stuck_jobs(self, stuck_timeout_minutes: int) -> int:
        """Fail jobs left in ``PROCESSING`` longer than the timeout.

        A job is stuck when the process that claimed it died mid-dispatch.
        Such jobs are marked ``FAILED`` with a descriptive message; they are
        never put back to ``SCHEDULED``.

        Returns:
            Number of jobs recovered.
        """
        cutoff = self.clock() - timedelta(minutes=stuck_timeout_minutes)
        stuck = await self._store_call(
            self.job_store.get_stuck_jobs(cutoff), "query stuck jobs"
        )
        if not stuck:
            return 0

        message = (
            f"Dispatch stuck in processing for more than {stuck_timeout_minutes} "
            "minutes. Marked as failed by recovery process."
        )
        recovered = 0
        for job in stuck:
            updated = await self._store_call(
                self.job_store.update_job(
                    job.id,
                    {"status": JobStatus.FAILED.value, "error_message": message},
                    expected_status=JobStatus.PROCESSING,
                ),
                f"recover job {job.id}",
            )
            if not updated:
                # Finished by its dispatcher after all
                continue
            recovered += 1
            logger.warning(
                "[SCHEDULER] Recovered stuck job %s (processing for >%d min)",
                job.id,
                stuck_timeout_minutes,
            )
            await self._audit(job.tenant_id, AuditEventKind.JOB_RECOVERED, message)

        logger.info(
            "[SCHEDULER] Recovery complete: %d stuck jobs marked as FAILED",
            recovered,
        )
        return recovered

    # ================================================================
    # INTERNAL HELPERS
    # ================================================================

    async def _store_call(self, call: Awaitable[T], action: str) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self.store_timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise DatabaseError(f"Job store timed out: {action}") from exc

    async def _audit(
        self,
        tenant_id: Optional[str],
        kind: AuditEventKind,
        message: str,
    ) -> None:
        if self.audit_sink is not None:
            await self.audit_sink.record(tenant_id, kind, message)


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "JobLifecycle",
]
