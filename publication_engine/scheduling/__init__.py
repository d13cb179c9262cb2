"""Scheduling subsystem: job state machine, lifecycle writes, background publishing."""

from publication_engine.scheduling.lifecycle import JobLifecycle
from publication_engine.scheduling.models import (
    ContentType,
    JobPayload,
    JobStatus,
    PublicationJob,
)
from publication_engine.scheduling.publishing_scheduler import (
    PublishingScheduler,
    TickReport,
)
from publication_engine.scheduling.ticker import IntervalTicker

__all__ = [
    "ContentType",
    "IntervalTicker",
    "JobLifecycle",
    "JobPayload",
    "JobStatus",
    "PublicationJob",
    "PublishingScheduler",
    "TickReport",
]
