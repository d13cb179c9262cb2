"""
Scheduling data models: JobStatus, ContentType, JobPayload, PublicationJob.

Defines the core data structures used by the scheduling subsystem:
- ``JobStatus``: Lifecycle status of a publication job and its edge set.
- ``ContentType``: Shape of the content being published.
- ``JobPayload``: Immutable text + media handed to a dispatch adapter.
- ``PublicationJob``: One publication on one platform for one tenant.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

from publication_engine.exceptions import ValidationError
from publication_engine.utils import normalize_platform, parse_timestamp


# =============================================================================
# JOB STATUS ENUM
# =============================================================================


class JobStatus(Enum):
    """Lifecycle status of a publication job.

    Transitions:
        DRAFT -> SCHEDULED -> PROCESSING -> PUBLISHED
                                         -> FAILED
                 SCHEDULED -> DRAFT   (cancel)
    """

    DRAFT = "draft"
    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    PUBLISHED = "published"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Check if status is terminal (no further transitions allowed)."""
        return self in {JobStatus.PUBLISHED, JobStatus.FAILED}

    def can_transition_to(self, other: "JobStatus") -> bool:
        """Return whether ``self -> other`` is an edge of the state machine."""
        return other in _TRANSITIONS[self]


_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.DRAFT: frozenset({JobStatus.SCHEDULED}),
    JobStatus.SCHEDULED: frozenset({JobStatus.PROCESSING, JobStatus.DRAFT}),
    JobStatus.PROCESSING: frozenset({JobStatus.PUBLISHED, JobStatus.FAILED}),
    JobStatus.PUBLISHED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


# =============================================================================
# CONTENT TYPE ENUM
# =============================================================================


class ContentType(Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    TEXT_IMAGE = "text-image"
    TEXT_VIDEO = "text-video"

    @property
    def has_video(self) -> bool:
        return self in {ContentType.VIDEO, ContentType.TEXT_VIDEO}

    @property
    def has_image(self) -> bool:
        return self in {ContentType.IMAGE, ContentType.TEXT_IMAGE}


# =============================================================================
# PAYLOAD
# =============================================================================


@dataclass(frozen=True)
class JobPayload:
    """Content handed to a dispatch adapter.

    Attributes:
        text: Post body, ``None`` for media-only content.
        media: Media URLs or platform media ids, in display order.
    """

    text: Optional[str] = None
    media: Tuple[str, ...] = ()


# =============================================================================
# PUBLICATION JOB
# =============================================================================


@dataclass
class PublicationJob:
    """A scheduled publication of one payload to one platform.

    Attributes:
        id: Unique identifier (UUID).
        tenant_id: Owning tenant, stored in the ``user_id`` column.
        platform: Normalized target platform identifier.
        content_type: Shape of the payload.
        payload: Immutable text + media.
        status: Current lifecycle status.
        scheduled_at: When the job becomes due (timezone-aware UTC).
        published_at: Set only when the job is ``PUBLISHED``.
        result_url: Platform URL of the published item, only when
            ``PUBLISHED``.
        error_message: Normalized failure message, only when ``FAILED``.
        claimed_at: When the scheduler claimed the job.
    """

    # Required fields
    id: str
    tenant_id: str
    platform: str
    content_type: ContentType
    payload: JobPayload = field(default_factory=JobPayload)

    # Status tracking
    status: JobStatus = JobStatus.DRAFT
    scheduled_at: Optional[datetime] = None
    published_at: Optional[datetime] = None
    result_url: Optional[str] = None
    error_message: Optional[str] = None
    claimed_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.platform = normalize_platform(self.platform)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PublicationJob":
        """Convert a ``publications`` row into a job.

        Raises:
            ValidationError: If the row holds an unknown status or content
                type, or a malformed timestamp.
        """
        try:
            status = JobStatus(row["status"])
        except ValueError as exc:
            raise ValidationError(f"Unknown job status {row['status']!r}") from exc
        try:
            content_type = ContentType(row.get("type") or "text")
        except ValueError as exc:
            raise ValidationError(f"Unknown content type {row.get('type')!r}") from exc

        media = row.get("media") or ()
        if isinstance(media, str):
            media = (media,)

        return cls(
            id=row["id"],
            tenant_id=row["user_id"],
            platform=row["platform"],
            content_type=content_type,
            payload=JobPayload(text=row.get("content"), media=tuple(media)),
            status=status,
            scheduled_at=parse_timestamp(row.get("scheduled_at")),
            published_at=parse_timestamp(row.get("published_at")),
            result_url=row.get("result_url"),
            error_message=row.get("error_message"),
            claimed_at=parse_timestamp(row.get("claimed_at")),
        )

    def check_invariants(self) -> None:
        """Verify that the terminal fields agree with ``status``.

        Raises:
            ValidationError: On the first inconsistency found.
        """
        published = self.status is JobStatus.PUBLISHED
        if published != (self.published_at is not None):
            raise ValidationError(
                f"Job {self.id}: published_at must be set iff status is published"
            )
        if published != (self.result_url is not None):
            raise ValidationError(
                f"Job {self.id}: result_url must be set iff status is published"
            )
        if (self.status is JobStatus.FAILED) != (self.error_message is not None):
            raise ValidationError(
                f"Job {self.id}: error_message must be set iff status is failed"
            )
        if self.status is JobStatus.SCHEDULED and self.scheduled_at is None:
            raise ValidationError(f"Job {self.id}: scheduled job has no scheduled_at")


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "JobStatus",
    "ContentType",
    "JobPayload",
    "PublicationJob",
]
