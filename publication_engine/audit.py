"""Audit sink for publication lifecycle events.

Every record goes to stdlib logging and an in-memory ring buffer.  When
configured, records are also appended as JSON lines to a local file (via
``aiofiles``) and inserted into the Supabase ``logs`` table as tracked
background tasks.  A failing output never fails the caller.
"""

import asyncio
import json
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional, Set

import aiofiles

from publication_engine.utils import utc_now

logger = logging.getLogger(__name__)


class AuditEventKind(Enum):
    PUBLISH_SUCCESS = "publish_success"
    PUBLISH_FAILED = "publish_failed"
    SCHEDULE_CANCELLED = "schedule_cancelled"
    JOB_SCHEDULED = "job_scheduled"
    CREDENTIAL_RELOAD_FAILED = "credential_reload_failed"
    JOB_RECOVERED = "job_recovered"


_WARNING_KINDS = {
    AuditEventKind.PUBLISH_FAILED,
    AuditEventKind.CREDENTIAL_RELOAD_FAILED,
    AuditEventKind.JOB_RECOVERED,
}


@dataclass
class AuditRecord:
    """One audit event.

    Attributes:
        tenant_id: Tenant the event concerns, ``None`` for engine-wide
            events such as a failed credential reload.
        kind: Event kind.
        message: Human-readable description.
        timestamp: When the event was recorded (UTC).
    """

    tenant_id: Optional[str]
    kind: AuditEventKind
    message: str
    timestamp: datetime = field(default_factory=utc_now)

    def to_row(self) -> Dict[str, Any]:
        """Shape of a ``logs`` table row."""
        return {
            "user_id": self.tenant_id,
            "action": self.kind.value,
            "details": self.message,
        }

    def to_json(self) -> str:
        return json.dumps(
            {
                "timestamp": self.timestamp.isoformat(),
                "tenant_id": self.tenant_id,
                "kind": self.kind.value,
                "message": self.message,
            },
            ensure_ascii=False,
        )


class AuditSink:
    """Records lifecycle events to every configured output.

    Parameters:
        writer: Optional store with ``save_audit_record(row)``
            (:class:`~publication_engine.database.SupabaseAuditWriter`).
        log_dir: Optional directory for ``audit.log`` (created if missing).
        max_recent: Size of the in-memory ring buffer.
    """

    def __init__(
        self,
        writer: Any = None,
        log_dir: Optional[str] = None,
        max_recent: int = 1000,
    ) -> None:
        self.writer = writer
        self._log_file: Optional[Path] = None
        if log_dir:
            path = Path(log_dir)
            path.mkdir(parents=True, exist_ok=True)
            self._log_file = path / "audit.log"

        self._recent: Deque[AuditRecord] = deque(maxlen=max_recent)

        # Track pending async tasks to prevent garbage collection
        self._pending_tasks: Set["asyncio.Task[None]"] = set()

    async def record(
        self,
        tenant_id: Optional[str],
        event_kind: AuditEventKind,
        message: str,
    ) -> AuditRecord:
        """Record an event.  Never raises on output failures."""
        entry = AuditRecord(tenant_id=tenant_id, kind=event_kind, message=message)

        level = logging.WARNING if event_kind in _WARNING_KINDS else logging.INFO
        logger.log(
            level,
            "[AUDIT] %s tenant=%s: %s",
            event_kind.value,
            tenant_id,
            message,
        )

        self._recent.append(entry)

        if self._log_file is not None:
            await self._write_to_file(entry)

        # Fire-and-forget but tracked
        if self.writer is not None:
            task = asyncio.create_task(self._write_to_store(entry))
            self._pending_tasks.add(task)
            task.add_done_callback(self._pending_tasks.discard)

        return entry

    def get_recent(
        self,
        limit: int = 20,
        kind: Optional[AuditEventKind] = None,
        tenant_id: Optional[str] = None,
    ) -> List[AuditRecord]:
        """Return recent records from the ring buffer, oldest first."""
        records = list(self._recent)
        if kind is not None:
            records = [r for r in records if r.kind == kind]
        if tenant_id is not None:
            records = [r for r in records if r.tenant_id == tenant_id]
        return records[-limit:]

    async def flush(self) -> None:
        """Wait for all pending store writes.  Call before shutdown."""
        if self._pending_tasks:
            await asyncio.gather(*self._pending_tasks, return_exceptions=True)
            self._pending_tasks.clear()

    async def _write_to_file(self, entry: AuditRecord) -> None:
        try:
            async with aiofiles.open(self._log_file, "a", encoding="utf-8") as f:
                await f.write(entry.to_json() + "\n")
        except OSError as exc:
            logger.error("[AUDIT] Failed to write %s: %s", self._log_file, exc)

    async def _write_to_store(self, entry: AuditRecord) -> None:
        try:
            await self.writer.save_audit_record(entry.to_row())
        except Exception as exc:
            logger.error("[AUDIT] Failed to write audit record to store: %s", exc)


__all__ = [
    "AuditEventKind",
    "AuditRecord",
    "AuditSink",
]
