"""Shared fixtures and in-memory fakes for the publication engine test suite."""

import asyncio
import dataclasses
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set
from unittest.mock import MagicMock

import pytest

from publication_engine.audit import AuditSink
from publication_engine.credentials.models import (
    EncryptedCredential,
    TenantScope,
)
from publication_engine.encryption import CredentialCipher
from publication_engine.exceptions import CredentialStoreError, DatabaseError
from publication_engine.scheduling.models import (
    ContentType,
    JobPayload,
    JobStatus,
    PublicationJob,
)
from publication_engine.utils import parse_timestamp

TEST_ENCRYPTION_KEY = "0123456789abcdef0123456789abcdef"
FIXED_NOW = datetime(2025, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Ensure we don't hit real services during tests
# ---------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def _block_env_keys(monkeypatch):
    """Clear secrets and engine overrides so tests never hit real services."""
    keys = [
        "SUPABASE_URL",
        "SUPABASE_SERVICE_KEY",
        "ENCRYPTION_KEY",
        "TWITTER_CLIENT_ID",
        "ENGINE_TICK_INTERVAL_SECONDS",
        "ENGINE_MAX_CONCURRENT_DISPATCHES",
        "ENGINE_STORE_TIMEOUT_SECONDS",
        "ENGINE_DISPATCH_TIMEOUT_SECONDS",
        "ENGINE_TENANT_SCOPED_PLATFORMS",
        "LOG_LEVEL",
    ]
    for key in keys:
        monkeypatch.delenv(key, raising=False)


# ---------------------------------------------------------------------------
# Common datetime fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def fixed_now():
    """A fixed UTC datetime for deterministic tests."""
    return FIXED_NOW


@pytest.fixture
def clock(fixed_now):
    return lambda: fixed_now


# ---------------------------------------------------------------------------
# In-memory job store
# ---------------------------------------------------------------------------
def _apply_fields(job: PublicationJob, fields: Dict[str, Any]) -> None:
    for name, value in fields.items():
        if name == "status":
            job.status = JobStatus(value)
        elif name in ("scheduled_at", "published_at", "claimed_at"):
            setattr(job, name, parse_timestamp(value))
        else:
            setattr(job, name, value)


class InMemoryJobStore:
    """Job store with compare-and-set semantics on the status column.

    Returned jobs are copies, as they would be when read from a database.
    """

    def __init__(self) -> None:
        self.jobs: Dict[str, PublicationJob] = {}
        self._lock = asyncio.Lock()
        self.fail_query = False
        self.fail_claim_ids: Set[str] = set()
        self.fail_updates = False
        self.claim_calls: List[str] = []

    def add(self, job: PublicationJob) -> PublicationJob:
        self.jobs[job.id] = dataclasses.replace(job)
        return job

    def status_of(self, job_id: str) -> JobStatus:
        return self.jobs[job_id].status

    async def query_due_jobs(self, now: datetime) -> List[PublicationJob]:
        if self.fail_query:
            raise DatabaseError("Failed to query due jobs: connection refused")
        due = [
            dataclasses.replace(job)
            for job in self.jobs.values()
            if job.status is JobStatus.SCHEDULED
            and job.scheduled_at is not None
            and job.scheduled_at <= now
        ]
        return sorted(due, key=lambda job: job.scheduled_at)

    async def claim_job(
        self,
        job_id: str,
        from_status: JobStatus,
        to_status: JobStatus,
        extra_fields: Optional[Dict[str, Any]] = None,
    ) -> bool:
        self.claim_calls.append(job_id)
        if job_id in self.fail_claim_ids:
            raise DatabaseError(f"Failed to transition job {job_id}")
        # Yield so concurrent claimers genuinely race for the lock
        await asyncio.sleep(0)
        async with self._lock:
            job = self.jobs.get(job_id)
            if job is None or job.status is not from_status:
                return False
            _apply_fields(job, {"status": to_status.value, **(extra_fields or {})})
            return True

    async def update_job(
        self,
        job_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[JobStatus] = None,
    ) -> bool:
        if self.fail_updates:
            raise DatabaseError(f"Failed to update job {job_id}")
        async with self._lock:
            job = self.jobs.get(job_id)
            if job is None:
                return False
            if expected_status is not None and job.status is not expected_status:
                return False
            _apply_fields(job, fields)
            return True

    async def get_job(self, job_id: str) -> Optional[PublicationJob]:
        job = self.jobs.get(job_id)
        return dataclasses.replace(job) if job else None

    async def get_stuck_jobs(self, cutoff: datetime) -> List[PublicationJob]:
        return [
            dataclasses.replace(job)
            for job in self.jobs.values()
            if job.status is JobStatus.PROCESSING
            and job.claimed_at is not None
            and job.claimed_at < cutoff
        ]


# ---------------------------------------------------------------------------
# Fake credential store
# ---------------------------------------------------------------------------
class FakeCredentialStore:
    """Credential store backed by a list of encrypted records."""

    def __init__(self, records: Optional[List[EncryptedCredential]] = None) -> None:
        self.records: List[EncryptedCredential] = list(records or [])
        self.fail_list = False
        self.fail_get = False
        self.list_calls = 0
        self.get_calls = 0
        self.saved: Dict[str, str] = {}
        self.callback: Optional[Callable[..., Any]] = None

    async def list_credentials(self) -> List[EncryptedCredential]:
        self.list_calls += 1
        if self.fail_list:
            raise CredentialStoreError("Failed to list credentials: store offline")
        return list(self.records)

    async def get_credential(self, scope) -> Optional[EncryptedCredential]:
        self.get_calls += 1
        if self.fail_get:
            raise CredentialStoreError("store offline")
        for record in self.records:
            if record.platform != scope.platform:
                continue
            if isinstance(scope, TenantScope) and record.tenant_id != scope.tenant_id:
                continue
            return record
        return None

    async def save_credential(self, scope, ciphertext: str) -> bool:
        self.saved[scope.platform] = ciphertext
        return True

    async def subscribe_to_changes(self, callback: Callable[..., Any]) -> str:
        self.callback = callback
        return "channel"


# ---------------------------------------------------------------------------
# Fake adapter
# ---------------------------------------------------------------------------
class FakeAdapter:
    """Adapter whose outcome is set per test.

    ``outcome`` is either a URL string, an exception instance to raise, or
    a callable ``(job, secret) -> str`` (may be async).
    """

    def __init__(self, platform: str, outcome: Any = "https://example.com/post/1") -> None:
        self.platform = platform
        self.outcome = outcome
        self.calls: List[tuple] = []

    async def publish(self, job: PublicationJob, secret: Dict[str, Any]) -> str:
        self.calls.append((job.id, secret))
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        if callable(self.outcome):
            result = self.outcome(job, secret)
            if asyncio.iscoroutine(result):
                result = await result
            return result
        return self.outcome


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def cipher():
    return CredentialCipher(TEST_ENCRYPTION_KEY)


@pytest.fixture
def job_store():
    return InMemoryJobStore()


@pytest.fixture
def credential_store():
    return FakeCredentialStore()


@pytest.fixture
def audit_sink():
    return AuditSink()


@pytest.fixture
def make_job(fixed_now):
    """Factory for scheduled jobs due at ``fixed_now``."""

    def _make(
        job_id: str = "job-1",
        tenant_id: str = "tenant-a",
        platform: str = "wordpress",
        status: JobStatus = JobStatus.SCHEDULED,
        scheduled_at: Optional[datetime] = None,
        text: str = "Hello world",
        media: tuple = (),
        content_type: ContentType = ContentType.TEXT,
    ) -> PublicationJob:
        return PublicationJob(
            id=job_id,
            tenant_id=tenant_id,
            platform=platform,
            content_type=content_type,
            payload=JobPayload(text=text, media=media),
            status=status,
            scheduled_at=scheduled_at if scheduled_at is not None else fixed_now,
        )

    return _make


# ---------------------------------------------------------------------------
# Mock Supabase client
# ---------------------------------------------------------------------------
@pytest.fixture
def mock_supabase_client():
    """A mock Supabase async client whose query chain returns ``rows``.

    Set ``client.rows`` to control the data returned by ``execute()``.
    """
    client = MagicMock()
    client.rows = []
    table_mock = MagicMock()
    for method in (
        "select", "insert", "update", "delete", "eq", "lt", "gte",
        "lte", "order", "limit",
    ):
        getattr(table_mock, method).return_value = table_mock

    async def mock_execute():
        return MagicMock(data=client.rows)

    table_mock.execute = mock_execute
    client.table.return_value = table_mock
    client.query = table_mock
    return client


@pytest.fixture
def fake_adapter():
    """Factory for :class:`FakeAdapter` instances."""
    return FakeAdapter
