"""
Background publishing scheduler that dispatches jobs at their scheduled times.

``PublishingScheduler`` runs as an asyncio background task.  On every tick
it scans the job store for due jobs, claims each one with a conditional
status update, resolves the tenant's credentials, dispatches through the
platform adapter and records the terminal state.  Includes optional
stuck-job recovery for jobs whose dispatcher died mid-flight.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from publication_engine.audit import AuditEventKind
from publication_engine.exceptions import (
    ClaimConflictError,
    CredentialResolutionError,
    DatabaseError,
    DispatchError,
    InvalidTransitionError,
    TransientError,
    UnknownDispatchError,
    UnsupportedPlatformError,
)
from publication_engine.scheduling.models import JobStatus, PublicationJob
from publication_engine.scheduling.ticker import IntervalTicker
from publication_engine.utils import utc_now

logger = logging.getLogger(__name__)


@dataclass
class TickReport:
    """Counters for one tick.

    Attributes:
        due: Jobs returned by the due scan.
        claimed: Jobs this tick won the claim for.
        conflicts: Jobs another writer moved first.
        published: Jobs marked ``PUBLISHED``.
        failed: Jobs marked ``FAILED``.
        errors: Store errors while claiming or recording a terminal state.
    """

    due: int = 0
    claimed: int = 0
    conflicts: int = 0
    published: int = 0
    failed: int = 0
    errors: int = 0


class PublishingScheduler:
    """Background task that publishes scheduled jobs at their designated times.

    Runs an asyncio loop that, on every tick:
    1. Queries jobs due for publication (status ``SCHEDULED``,
       ``scheduled_at <= now``).
    2. Claims each due job (``SCHEDULED -> PROCESSING``).
    3. Resolves the tenant's credentials and dispatches via the adapter
       registered for the job's platform.
    4. Marks the job ``PUBLISHED`` on success or ``FAILED`` on error.
    5. Periodically recovers jobs stuck in ``PROCESSING`` when
       ``stuck_timeout_minutes`` is configured.

    Args:
        job_store: Job store (:class:`~publication_engine.database.SupabaseJobStore`).
        lifecycle: :class:`~publication_engine.scheduling.lifecycle.JobLifecycle`
            used for every terminal transition.
        credential_cache: :class:`~publication_engine.credentials.cache.CredentialCache`.
        adapters: :class:`~publication_engine.adapters.base.AdapterRegistry`.
        audit_sink: Optional :class:`~publication_engine.audit.AuditSink`.
        ticker: Object with ``async wait()``; defaults to an
            :class:`IntervalTicker` of ``tick_interval_seconds``.
        clock: Returns the current UTC time.
    """

    # How often to run stuck-job recovery (every N ticks)
    RECOVERY_INTERVAL_TICKS: int = 10

    def __init__(
        self,
        job_store: "SupabaseJobStore",  # noqa: F821
        lifecycle: "JobLifecycle",  # noqa: F821
        credential_cache: "CredentialCache",  # noqa: F821
        adapters: "AdapterRegistry",  # noqa: F821
        audit_sink: Optional["AuditSink"] = None,  # noqa: F821
        ticker: Optional[object] = None,
        clock: Callable[[], datetime] = utc_now,
        tick_interval_seconds: int = 60,
        max_concurrent_dispatches: int = 5,
        store_timeout_seconds: float = 10.0,
        dispatch_timeout_seconds: float = 120.0,
        stuck_timeout_minutes: Optional[int] = None,
    ) -> None:
        self.job_store = job_store
        self.lifecycle = lifecycle
        self.credential_cache = credential_cache
        self.adapters = adapters
        self.audit_sink = audit_sink
        self.ticker = ticker or IntervalTicker(tick_interval_seconds)
        self.clock = clock
        self.max_concurrent_dispatches = max_concurrent_dispatches
        self.store_timeout_seconds = store_timeout_seconds
        self.dispatch_timeout_seconds = dispatch_timeout_seconds
        self.stuck_timeout_minutes = stuck_timeout_minutes
        self._running: bool = False
        self._tick_count: int = 0

    @property
    def is_running(self) -> bool:
        return self._running

    # ================================================================
    # LIFECYCLE
    # ================================================================

    async def start(self) -> None:
        """Run ticks until :meth:`stop` is called.

        Ticks never overlap: the next wait starts only after the current
        tick has finished.  An error in one tick is logged and the loop
        carries on with the next.
        """
        self._running = True
        self._tick_count = 0
        logger.info(
            "[SCHEDULER] Publishing scheduler started (max_concurrent=%d)",
            self.max_concurrent_dispatches,
        )

        while self._running:
            try:
                await self.run_tick()
                self._tick_count += 1

                if (
                    self.stuck_timeout_minutes
                    and self._tick_count % self.RECOVERY_INTERVAL_TICKS == 0
                ):
                    await self._recover_stuck()

            except asyncio.CancelledError:
                logger.info("[SCHEDULER] Publishing scheduler cancelled")
                break
            except Exception:
                logger.exception(
                    "[SCHEDULER] Unexpected error in publishing scheduler loop"
                )

            if not self._running:
                break

            try:
                await self.ticker.wait()
            except asyncio.CancelledError:
                logger.info("[SCHEDULER] Publishing scheduler wait cancelled")
                break

        self._running = False
        logger.info("[SCHEDULER] Publishing scheduler stopped")

    async def stop(self) -> None:
        """Stop the loop once the current tick completes."""
        self._running = False
        wake = getattr(self.ticker, "wake", None)
        if wake is not None:
            wake()
        logger.info("[SCHEDULER] Publishing scheduler stop requested")

    # ================================================================
    # TICK
    # ================================================================

    async def run_tick(self) -> TickReport:
        """Scan for due jobs and dispatch every job this tick can claim.

        Raises:
            DatabaseError: If the due-job query fails or times out.  No
                job has been touched in that case.
        """
        now = self.clock()

        try:
            due_jobs: List[PublicationJob] = await asyncio.wait_for(
                self.job_store.query_due_jobs(now),
                timeout=self.store_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise DatabaseError("Due-job query timed out") from exc

        report = TickReport(due=len(due_jobs))
        if not due_jobs:
            return report

        logger.info("[SCHEDULER] Found %d jobs due for publishing", len(due_jobs))

        semaphore = asyncio.Semaphore(self.max_concurrent_dispatches)

        async def _guarded(job: PublicationJob) -> None:
            async with semaphore:
                await self._process_job(job, now, report)

        results = await asyncio.gather(
            *(_guarded(job) for job in due_jobs), return_exceptions=True
        )
        for job, result in zip(due_jobs, results):
            if isinstance(result, Exception):
                report.errors += 1
                logger.error(
                    "[SCHEDULER] Unexpected error processing job %s: %r", job.id, result
                )

        logger.info(
            "[SCHEDULER] Tick complete: due=%d claimed=%d conflicts=%d "
            "published=%d failed=%d errors=%d",
            report.due,
            report.claimed,
            report.conflicts,
            report.published,
            report.failed,
            report.errors,
        )
        return report

    async def _process_job(
        self, job: PublicationJob, now: datetime, report: TickReport
    ) -> None:
        try:
            claimed = await asyncio.wait_for(
                self.job_store.claim_job(
                    job.id,
                    JobStatus.SCHEDULED,
                    JobStatus.PROCESSING,
                    {"claimed_at": now.isoformat()},
                ),
                timeout=self.store_timeout_seconds,
            )
        except (DatabaseError, asyncio.TimeoutError) as exc:
            # Left SCHEDULED, picked up again next tick
            report.errors += 1
            logger.error(
                "[SCHEDULER] Failed to claim job %s: %s",
                job.id,
                str(exc) or "timed out",
            )
            return

        if not claimed:
            report.conflicts += 1
            logger.debug("[SCHEDULER] Job %s already claimed, skipping", job.id)
            return

        report.claimed += 1
        job.status = JobStatus.PROCESSING
        job.claimed_at = now

        try:
            result_url = await self._dispatch(job)
        except DispatchError as exc:
            await self._record_failure(job, exc.normalized_message, report)
        except (UnsupportedPlatformError, CredentialResolutionError) as exc:
            await self._record_failure(job, str(exc), report)
        except Exception as exc:
            # A claimed job must always reach a terminal state
            logger.exception("[SCHEDULER] Unexpected error dispatching job %s", job.id)
            await self._record_failure(
                job, f"UnknownError: {type(exc).__name__}: {exc}", report
            )
        else:
            await self._record_success(job, result_url, now, report)

    # ================================================================
    # DISPATCH
    # ================================================================

    async def _dispatch(self, job: PublicationJob) -> str:
        """Resolve credentials and publish *job*, returning the result URL.

        Raises:
            UnsupportedPlatformError: If no adapter handles the platform.
            CredentialResolutionError: If no usable secret exists.
            DispatchError: For every dispatch failure, including timeouts
                and unexpected adapter errors.
        """
        adapter = self.adapters.get(job.platform)
        if adapter is None:
            raise UnsupportedPlatformError(job.platform)

        try:
            secret = await self.credential_cache.resolve(job.tenant_id, job.platform)
        except CredentialResolutionError:
            raise
        except Exception as exc:
            raise CredentialResolutionError(
                f"Credential lookup failed for {job.platform}: "
                f"{type(exc).__name__}: {exc}"
            ) from exc

        logger.info(
            "[SCHEDULER] Dispatching job %s (platform=%s, type=%s)",
            job.id,
            job.platform,
            job.content_type.value,
        )
        try:
            result_url = await asyncio.wait_for(
                adapter.publish(job, secret),
                timeout=self.dispatch_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise TransientError(
                f"Dispatch timed out after {self.dispatch_timeout_seconds:g}s",
                job.platform,
            ) from exc
        except DispatchError:
            raise
        except Exception as exc:
            raise UnknownDispatchError(
                f"{type(exc).__name__}: {exc}", job.platform
            ) from exc

        if not result_url:
            raise UnknownDispatchError("Adapter returned no result URL", job.platform)
        return result_url

    async def _record_success(
        self,
        job: PublicationJob,
        result_url: str,
        now: datetime,
        report: TickReport,
    ) -> None:
        try:
            await self.lifecycle.mark_published(job, result_url, now)
        except (DatabaseError, ClaimConflictError, InvalidTransitionError) as exc:
            report.errors += 1
            logger.error(
                "[SCHEDULER] Job %s published to %s but state update failed: %s",
                job.id,
                result_url,
                exc,
            )
            return

        report.published += 1
        await self._audit(
            job.tenant_id,
            AuditEventKind.PUBLISH_SUCCESS,
            f"Job {job.id} published on {job.platform}: {result_url}",
        )

    async def _record_failure(
        self, job: PublicationJob, message: str, report: TickReport
    ) -> None:
        try:
            await self.lifecycle.mark_failed(job, message)
        except (DatabaseError, ClaimConflictError, InvalidTransitionError) as exc:
            report.errors += 1
            logger.error(
                "[SCHEDULER] Failed to record failure of job %s: %s", job.id, exc
            )
            return

        report.failed += 1
        await self._audit(
            job.tenant_id,
            AuditEventKind.PUBLISH_FAILED,
            f"Job {job.id} failed on {job.platform}: {message}",
        )

    async def _audit(
        self, tenant_id: Optional[str], kind: AuditEventKind, message: str
    ) -> None:
        if self.audit_sink is not None:
            await self.audit_sink.record(tenant_id, kind, message)

    # ================================================================
    # RECOVERY
    # ================================================================

    async def _recover_stuck(self) -> None:
        logger.debug("[SCHEDULER] Running stuck-job recovery check")
        await self.lifecycle.recover_stuck_jobs(self.stuck_timeout_minutes)


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "PublishingScheduler",
    "TickReport",
]
