"""
Async Supabase access for the publication engine.

ALL Supabase queries issued by the engine live in the store classes defined
here.  No direct Supabase calls should appear anywhere else in the codebase.

- ``SupabaseJobStore``: the ``publications`` table (due scan, conditional
  status transitions, terminal updates).
- ``SupabaseCredentialStore``: the ``api_configurations`` table (encrypted
  credentials and their Realtime change feed).
- ``SupabaseAuditWriter``: the ``logs`` table.

Usage::

    from publication_engine.database import (
        SupabaseConfig, SupabaseJobStore, create_supabase_client,
    )

    client = await create_supabase_client(SupabaseConfig.from_env())
    jobs = SupabaseJobStore(client)
    due = await jobs.query_due_jobs(utc_now())
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from supabase import AsyncClient, create_async_client

from publication_engine.credentials.models import (
    EncryptedCredential,
    Scope,
    TenantScope,
)
from publication_engine.exceptions import (
    CredentialStoreError,
    DatabaseError,
    ValidationError,
)
from publication_engine.scheduling.models import JobStatus, PublicationJob
from publication_engine.utils import ensure_utc, with_retry

logger = logging.getLogger(__name__)


# =============================================================================
# VALIDATION HELPERS
# =============================================================================


def validate_not_empty(value: Any, name: str) -> None:
    """Validate that *value* is not ``None`` or an empty string.

    Raises:
        ValidationError: If *value* is ``None`` or a blank string.
    """
    if value is None:
        raise ValidationError(f"{name} cannot be None")
    if isinstance(value, str) and not value.strip():
        raise ValidationError(f"{name} cannot be empty string")


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass
class SupabaseConfig:
    """Supabase configuration loaded from environment variables.

    Attributes:
        url: The Supabase project URL (``SUPABASE_URL``).
        key: The service-role key for full server-side access
            (``SUPABASE_SERVICE_KEY``).
    """

    url: str
    key: str  # service_role key, bypasses row level security

    @classmethod
    def from_env(cls) -> "SupabaseConfig":
        """Create a config instance from environment variables.

        Raises:
            ValueError: If either variable is missing or empty.
        """
        url = os.environ.get("SUPABASE_URL")
        key = os.environ.get("SUPABASE_SERVICE_KEY")

        if not url or not key:
            raise ValueError(
                "SUPABASE_URL and SUPABASE_SERVICE_KEY must be set"
            )

        return cls(url=url, key=key)


async def create_supabase_client(
    config: Optional[SupabaseConfig] = None,
) -> AsyncClient:
    """Create the async Supabase client shared by all stores.

    Args:
        config: Optional configuration.  When ``None``,
            :meth:`SupabaseConfig.from_env` is used.
    """
    config = config or SupabaseConfig.from_env()
    client = await create_async_client(config.url, config.key)
    logger.info("[DB] Supabase client created for %s", config.url)
    return client


# =============================================================================
# JOB STORE
# =============================================================================


class SupabaseJobStore:
    """Job store backed by the ``publications`` table.

    Every status change is a single conditional ``UPDATE`` filtered on the
    current status, so concurrent writers cannot both win a transition.
    """

    def __init__(self, client: AsyncClient, table: str = "publications") -> None:
        self.client = client
        self.table = table

    async def query_due_jobs(self, now: datetime) -> List[PublicationJob]:
        """Get jobs that are due for publishing.

        Returns all jobs with status ``"scheduled"`` whose ``scheduled_at``
        is at or before *now*, oldest first.  Rows that cannot be parsed are
        logged and skipped.

        Raises:
            DatabaseError: When the query fails.
        """
        try:
            result = await (
                self.client.table(self.table)
                .select("*")
                .eq("status", JobStatus.SCHEDULED.value)
                .lte("scheduled_at", ensure_utc(now).isoformat())
                .order("scheduled_at", desc=False)
                .execute()
            )
        except Exception as exc:
            raise DatabaseError(f"Failed to query due jobs: {exc}") from exc

        jobs: List[PublicationJob] = []
        for row in result.data or []:
            try:
                jobs.append(PublicationJob.from_row(row))
            except (ValidationError, KeyError) as exc:
                logger.error(
                    "[DB] Skipping malformed publication row %s: %s",
                    row.get("id"),
                    exc,
                )
        return jobs

    async def claim_job(
        self,
        job_id: str,
        from_status: JobStatus,
        to_status: JobStatus,
        extra_fields: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Atomically move a job from *from_status* to *to_status*.

        Returns:
            ``True`` if the update matched a row, ``False`` if the job was
            in a different status.

        Raises:
            ValidationError: If *job_id* is empty.
            DatabaseError: When the update fails.
        """
        validate_not_empty(job_id, "job_id")

        fields: Dict[str, Any] = {"status": to_status.value}
        if extra_fields:
            fields.update(extra_fields)

        try:
            result = await (
                self.client.table(self.table)
                .update(fields)
                .eq("id", job_id)
                .eq("status", from_status.value)
                .execute()
            )
        except Exception as exc:
            raise DatabaseError(
                f"Failed to transition job {job_id} "
                f"{from_status.value} -> {to_status.value}: {exc}"
            ) from exc
        # If data is returned, the update matched and the claim succeeded
        return bool(result.data)

    async def update_job(
        self,
        job_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[JobStatus] = None,
    ) -> bool:
        """Update *fields* on a job, optionally guarded by its current status.

        Returns:
            ``True`` if a row was updated.

        Raises:
            ValidationError: If *job_id* or *fields* is empty.
            DatabaseError: When the update fails.
        """
        validate_not_empty(job_id, "job_id")
        if not fields:
            raise ValidationError("fields cannot be empty")

        query = self.client.table(self.table).update(fields).eq("id", job_id)
        if expected_status is not None:
            query = query.eq("status", expected_status.value)

        try:
            result = await query.execute()
        except Exception as exc:
            raise DatabaseError(f"Failed to update job {job_id}: {exc}") from exc
        return bool(result.data)

    async def get_job(self, job_id: str) -> Optional[PublicationJob]:
        """Get a job by ID, or ``None`` if it does not exist."""
        validate_not_empty(job_id, "job_id")

        try:
            result = await (
                self.client.table(self.table)
                .select("*")
                .eq("id", job_id)
                .execute()
            )
        except Exception as exc:
            raise DatabaseError(f"Failed to fetch job {job_id}: {exc}") from exc
        return PublicationJob.from_row(result.data[0]) if result.data else None

    async def get_stuck_jobs(self, cutoff: datetime) -> List[PublicationJob]:
        """Get ``processing`` jobs claimed before *cutoff*."""
        try:
            result = await (
                self.client.table(self.table)
                .select("*")
                .eq("status", JobStatus.PROCESSING.value)
                .lt("claimed_at", ensure_utc(cutoff).isoformat())
                .execute()
            )
        except Exception as exc:
            raise DatabaseError(f"Failed to query stuck jobs: {exc}") from exc
        return [PublicationJob.from_row(row) for row in result.data or []]


# =============================================================================
# CREDENTIAL STORE
# =============================================================================


class SupabaseCredentialStore:
    """Read access to encrypted credentials in ``api_configurations``.

    Rows carry ``user_id``, ``platform`` and ``keys`` (the encrypted JSON
    secret).  The engine only writes back refreshed OAuth tokens.
    """

    def __init__(
        self, client: AsyncClient, table: str = "api_configurations"
    ) -> None:
        self.client = client
        self.table = table

    def _scoped_query(self, query: Any, scope: Scope) -> Any:
        query = query.eq("platform", scope.platform)
        if isinstance(scope, TenantScope):
            query = query.eq("user_id", scope.tenant_id)
        return query

    @with_retry(
        max_attempts=3,
        retryable_exceptions=(CredentialStoreError,),
        operation_name="list_credentials",
    )
    async def list_credentials(self) -> List[EncryptedCredential]:
        """Fetch every credential row.

        Raises:
            RetryExhaustedError: When all attempts failed; ``last_error`` is
                the underlying ``CredentialStoreError``.
        """
        try:
            result = await (
                self.client.table(self.table)
                .select("user_id, platform, keys")
                .order("id", desc=False)
                .execute()
            )
        except Exception as exc:
            raise CredentialStoreError(f"Failed to list credentials: {exc}") from exc

        records: List[EncryptedCredential] = []
        for row in result.data or []:
            try:
                records.append(EncryptedCredential.from_row(row))
            except (ValidationError, KeyError) as exc:
                logger.error("[DB] Skipping malformed credential row: %s", exc)
        return records

    async def get_credential(self, scope: Scope) -> Optional[EncryptedCredential]:
        """Fetch the credential row for *scope*, or ``None``."""
        query = self.client.table(self.table).select("user_id, platform, keys")
        try:
            result = await (
                self._scoped_query(query, scope)
                .order("id", desc=True)
                .limit(1)
                .execute()
            )
        except Exception as exc:
            raise CredentialStoreError(
                f"Failed to fetch credential for {scope.platform}: {exc}"
            ) from exc
        return EncryptedCredential.from_row(result.data[0]) if result.data else None

    async def save_credential(self, scope: Scope, ciphertext: str) -> bool:
        """Replace the encrypted keys of an existing credential row."""
        validate_not_empty(ciphertext, "ciphertext")
        query = self.client.table(self.table).update({"keys": ciphertext})
        try:
            result = await self._scoped_query(query, scope).execute()
        except Exception as exc:
            raise CredentialStoreError(
                f"Failed to save credential for {scope.platform}: {exc}"
            ) from exc
        return bool(result.data)

    async def subscribe_to_changes(self, callback: Callable[..., Any]) -> Any:
        """Register *callback* for every insert, update and delete.

        Uses a Supabase Realtime ``postgres_changes`` channel on the
        credential table.

        Returns:
            The subscribed channel.
        """
        channel = self.client.channel(f"{self.table}-changes")
        channel.on_postgres_changes(
            "*",
            callback=callback,
            table=self.table,
            schema="public",
        )
        await channel.subscribe()
        logger.info("[DB] Subscribed to change feed on %s", self.table)
        return channel


# =============================================================================
# AUDIT WRITER
# =============================================================================


class SupabaseAuditWriter:
    """Insert-only access to the ``logs`` table."""

    def __init__(self, client: AsyncClient, table: str = "logs") -> None:
        self.client = client
        self.table = table

    async def save_audit_record(self, row: Dict[str, Any]) -> None:
        """Insert one audit row (``user_id``, ``action``, ``details``).

        Raises:
            ValidationError: If ``action`` is missing.
            DatabaseError: When the insert fails.
        """
        if not row or not row.get("action"):
            raise ValidationError("audit row must have 'action'")
        try:
            await self.client.table(self.table).insert(row).execute()
        except Exception as exc:
            raise DatabaseError(f"Failed to write audit record: {exc}") from exc


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "validate_not_empty",
    "SupabaseConfig",
    "create_supabase_client",
    "SupabaseJobStore",
    "SupabaseCredentialStore",
    "SupabaseAuditWriter",
]
