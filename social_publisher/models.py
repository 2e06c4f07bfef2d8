"""
Core data models for the social publishing pipeline.

Defines the entities persisted in the remote table store and the value
objects exchanged with collaborators:

- ``SocialIntegration``: a user's connection to one platform.
- ``SocialDraft``: one logical post before and during publishing.
- ``PublishQueueItem``: delivery of one draft to one platform.
- ``SocialPublished``: append-only record of a delivered post.
- ``PublishResult``: what a platform publisher returns on success.
- ``ApproveCommand`` / ``RejectCommand``: explicit approval actions.

Every persisted dataclass has a ``to_row()`` method and a ``from_row()``
classmethod that convert to and from Supabase row dicts.  Field names
match column names, so ``serialize_value`` is all that is needed to
translate a partial ``changes`` dict for an update.
"""

from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from social_publisher.utils import parse_timestamp, utc_now


# =============================================================================
# ENUMS
# =============================================================================


class Platform(Enum):
    """Platforms the pipeline can publish to."""

    LINKEDIN = "linkedin"
    TWITTER = "twitter"
    INSTAGRAM = "instagram"
    FACEBOOK = "facebook"
    YOUTUBE = "youtube"
    TIKTOK = "tiktok"
    THREADS = "threads"
    PINTEREST = "pinterest"
    REDDIT = "reddit"
    TELEGRAM = "telegram"
    DISCORD = "discord"
    TUMBLR = "tumblr"
    GITHUB = "github"


class ConnectionType(Enum):
    """How an integration authenticates against the platform."""

    OAUTH = "oauth"
    API_KEY = "api_key"


class IntegrationStatus(Enum):
    """Lifecycle status of a platform integration.

    Transitions:
        PENDING -> CONNECTED -> EXPIRED | ERROR
        any     -> DISCONNECTED (explicit revoke or replacement)
    """

    PENDING = "pending"
    CONNECTED = "connected"
    EXPIRED = "expired"
    ERROR = "error"
    DISCONNECTED = "disconnected"

    @property
    def is_active(self) -> bool:
        """Active integrations block a second connect for the same platform."""
        return self != IntegrationStatus.DISCONNECTED


class DraftStatus(Enum):
    """Lifecycle status of a draft.

    Transitions:
        DRAFT -> PENDING_APPROVAL -> APPROVED -> SCHEDULED -> PUBLISHING -> PUBLISHED
                 PENDING_APPROVAL -> DRAFT (reject)
                                     APPROVED -> PUBLISHING
                                                              PUBLISHING -> FAILED
        any non-terminal -> CANCELLED
    """

    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    SCHEDULED = "scheduled"
    PUBLISHING = "publishing"
    PUBLISHED = "published"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Check if status is terminal (no further automatic transitions)."""
        return self in {DraftStatus.PUBLISHED, DraftStatus.FAILED, DraftStatus.CANCELLED}


class QueueItemStatus(Enum):
    """Lifecycle status of a publish queue item.

    Transitions:
        PENDING -> PROCESSING -> COMPLETED
                              -> PENDING (retryable failure)
                              -> FAILED
        PENDING | PROCESSING -> CANCELLED
        FAILED -> PENDING (manual retry)
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Check if status is terminal for the automatic scheduler."""
        return self in {
            QueueItemStatus.COMPLETED,
            QueueItemStatus.FAILED,
            QueueItemStatus.CANCELLED,
        }


class PublishedStatus(Enum):
    """Outcome recorded on a ledger entry."""

    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"


class MediaType(Enum):
    """Kind of a media attachment."""

    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    FILE = "file"


class PostType(Enum):
    """Shape of a post as presented to the platform."""

    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    LINK = "link"
    ARTICLE = "article"
    POLL = "poll"


class AggregatePolicy(Enum):
    """How a draft's final status is derived from its queue items.

    BEST_EFFORT: published when at least one platform succeeded.
    ANY_FAILURE: failed when any platform failed.
    """

    BEST_EFFORT = "best_effort"
    ANY_FAILURE = "any_failure"


# =============================================================================
# SERIALIZATION HELPERS
# =============================================================================


def serialize_value(value: Any) -> Any:
    """Convert a model value into a JSON-compatible column value."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, MediaAttachment):
        return value.to_dict()
    if isinstance(value, PlatformContent):
        return value.to_dict()
    if isinstance(value, list):
        return [serialize_value(v) for v in value]
    if isinstance(value, dict):
        return {k: serialize_value(v) for k, v in value.items()}
    return value


def serialize_changes(changes: Dict[str, Any]) -> Dict[str, Any]:
    """Serialize a partial ``{field: value}`` update for the table store."""
    return {key: serialize_value(value) for key, value in changes.items()}


# =============================================================================
# VALUE OBJECTS
# =============================================================================


@dataclass
class MediaAttachment:
    """A media file referenced by a draft.

    The file itself lives in external storage; only the reference and
    metadata needed for validation travel with the draft.
    """

    type: MediaType
    url: str
    file_name: str = ""
    file_size: int = 0  # bytes
    mime_type: str = ""
    id: str = ""
    alt_text: Optional[str] = None
    thumbnail_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "url": self.url,
            "file_name": self.file_name,
            "file_size": self.file_size,
            "mime_type": self.mime_type,
            "alt_text": self.alt_text,
            "thumbnail_url": self.thumbnail_url,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MediaAttachment":
        return cls(
            id=data.get("id", ""),
            type=MediaType(data.get("type", "file")),
            url=data["url"],
            file_name=data.get("file_name", ""),
            file_size=int(data.get("file_size") or 0),
            mime_type=data.get("mime_type", ""),
            alt_text=data.get("alt_text"),
            thumbnail_url=data.get("thumbnail_url"),
        )


@dataclass
class PlatformContent:
    """Per-platform override of the draft text."""

    content_text: Optional[str] = None
    hashtags: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"content_text": self.content_text, "hashtags": list(self.hashtags)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PlatformContent":
        return cls(
            content_text=data.get("content_text"),
            hashtags=list(data.get("hashtags") or []),
        )


@dataclass
class PublishResult:
    """Successful outcome of one platform call.

    Attributes:
        platform_post_id: Identifier the platform assigned to the post.
        permalink: Public URL of the post, when the platform returns one.
        metrics: Engagement counters captured at publish time.
        partial: ``True`` when the text went out but some media was dropped.
    """

    platform_post_id: str
    permalink: Optional[str] = None
    metrics: Dict[str, int] = field(default_factory=dict)
    partial: bool = False


@dataclass(frozen=True)
class ApproveCommand:
    """Request to approve a draft waiting in ``pending_approval``."""

    draft_id: str
    actor: str


@dataclass(frozen=True)
class RejectCommand:
    """Request to send a draft back to ``draft`` with a reason."""

    draft_id: str
    actor: str
    reason: str


# =============================================================================
# SOCIAL INTEGRATION
# =============================================================================


@dataclass
class SocialIntegration:
    """A user's connection to one platform.

    Attributes:
        id: Unique identifier (UUID).
        user_id: Owner of the connection.
        platform: Connected platform.
        connection_type: OAuth or API key.
        status: Current connection status.
        credentials: Opaque credential mapping handed to the publisher.
        scopes: Granted OAuth scopes.
        platform_username: Account handle on the platform.
        last_sync_at: Last successful sync with the platform.
        error_message: Description of the last credential failure.
    """

    id: str
    user_id: str
    platform: Platform
    connection_type: ConnectionType
    status: IntegrationStatus = IntegrationStatus.CONNECTED
    credentials: Dict[str, Any] = field(default_factory=dict)
    scopes: List[str] = field(default_factory=list)
    platform_username: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_row(self) -> Dict[str, Any]:
        return {f.name: serialize_value(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SocialIntegration":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            platform=Platform(row["platform"]),
            connection_type=ConnectionType(row.get("connection_type", "oauth")),
            status=IntegrationStatus(row.get("status", "pending")),
            credentials=dict(row.get("credentials") or {}),
            scopes=list(row.get("scopes") or []),
            platform_username=row.get("platform_username"),
            last_sync_at=parse_timestamp(row.get("last_sync_at")),
            error_message=row.get("error_message"),
            created_at=parse_timestamp(row.get("created_at")) or utc_now(),
            updated_at=parse_timestamp(row.get("updated_at")) or utc_now(),
        )


# =============================================================================
# SOCIAL DRAFT
# =============================================================================


@dataclass
class SocialDraft:
    """One logical post before and during publishing.

    Attributes:
        id: Unique identifier (UUID).
        user_id: Creating user; the only owner of the draft.
        content_text: Main post text.
        target_platforms: Platforms to publish to (ordered, no duplicates).
        media_attachments: Media references.
        post_type: Post shape; derived from the first attachment if unset.
        platform_content: Optional per-platform text overrides.
        requires_approval: Whether a human must approve before fan-out.
        scheduled_at: Publish time; ``None`` publishes once approved.
        status: Current lifecycle status.
        approved_at: When the draft was approved.
        approved_by: Who approved it (owner for auto-approval).
        rejection_reason: Set only while the draft is rejected.
    """

    id: str
    user_id: str
    content_text: str
    target_platforms: List[Platform]
    media_attachments: List[MediaAttachment] = field(default_factory=list)
    post_type: PostType = PostType.TEXT
    platform_content: Dict[str, PlatformContent] = field(default_factory=dict)
    title: Optional[str] = None
    requires_approval: bool = True
    scheduled_at: Optional[datetime] = None
    timezone: str = "UTC"
    status: DraftStatus = DraftStatus.DRAFT
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    notes: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def content_for(self, platform: Platform) -> str:
        """Return the exact text to send to *platform*.

        A per-platform override replaces the main text; override hashtags
        are appended on a new line.
        """
        override = self.platform_content.get(platform.value)
        if override is None:
            return self.content_text
        text = override.content_text or self.content_text
        if override.hashtags:
            tags = " ".join(
                tag if tag.startswith("#") else f"#{tag}" for tag in override.hashtags
            )
            text = f"{text}\n\n{tags}"
        return text

    def to_row(self) -> Dict[str, Any]:
        return {f.name: serialize_value(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SocialDraft":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            content_text=row.get("content_text", ""),
            target_platforms=[Platform(p) for p in row.get("target_platforms") or []],
            media_attachments=[
                MediaAttachment.from_dict(m) for m in row.get("media_attachments") or []
            ],
            post_type=PostType(row.get("post_type", "text")),
            platform_content={
                key: PlatformContent.from_dict(value)
                for key, value in (row.get("platform_content") or {}).items()
            },
            title=row.get("title"),
            requires_approval=bool(row.get("requires_approval", True)),
            scheduled_at=parse_timestamp(row.get("scheduled_at")),
            timezone=row.get("timezone", "UTC"),
            status=DraftStatus(row.get("status", "draft")),
            approved_at=parse_timestamp(row.get("approved_at")),
            approved_by=row.get("approved_by"),
            rejection_reason=row.get("rejection_reason"),
            tags=list(row.get("tags") or []),
            notes=row.get("notes"),
            created_at=parse_timestamp(row.get("created_at")) or utc_now(),
            updated_at=parse_timestamp(row.get("updated_at")) or utc_now(),
        )


# =============================================================================
# PUBLISH QUEUE ITEM
# =============================================================================


@dataclass
class PublishQueueItem:
    """Delivery of one draft to one platform.

    Attributes:
        id: Unique identifier (UUID).
        draft_id: Parent draft.
        integration_id: Integration whose credentials are used.
        platform: Target platform (one of the draft's targets).
        status: Current lifecycle status.
        priority: Lower value is dispatched sooner.
        scheduled_at: Earliest dispatch time.
        retry_count: Automatic retries consumed so far.
        max_retries: Upper bound on ``retry_count``.
        last_error: Human-readable description of the last failure.
        next_retry_at: Backoff deadline while waiting out a retryable failure.
        published_id: Ledger entry written on completion.
        sequence: Insertion order, the final dispatch tiebreaker.
    """

    id: str
    user_id: str
    draft_id: str
    integration_id: str
    platform: Platform
    scheduled_at: datetime
    status: QueueItemStatus = QueueItemStatus.PENDING
    priority: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    retry_count: int = 0
    max_retries: int = 3
    last_error: Optional[str] = None
    next_retry_at: Optional[datetime] = None
    published_id: Optional[str] = None
    sequence: int = 0
    created_at: datetime = field(default_factory=utc_now)

    def is_due(self, now: datetime) -> bool:
        """Whether the item may be picked up at *now*."""
        if self.status != QueueItemStatus.PENDING:
            return False
        if self.scheduled_at > now:
            return False
        return self.next_retry_at is None or self.next_retry_at <= now

    @property
    def dispatch_key(self) -> tuple:
        """Sort key for dispatch: priority, then schedule, then insertion order."""
        return (self.priority, self.scheduled_at, self.sequence)

    def to_row(self) -> Dict[str, Any]:
        return {f.name: serialize_value(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PublishQueueItem":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            draft_id=row["draft_id"],
            integration_id=row.get("integration_id", ""),
            platform=Platform(row["platform"]),
            scheduled_at=parse_timestamp(row["scheduled_at"]),
            status=QueueItemStatus(row.get("status", "pending")),
            priority=int(row.get("priority") or 0),
            started_at=parse_timestamp(row.get("started_at")),
            completed_at=parse_timestamp(row.get("completed_at")),
            retry_count=int(row.get("retry_count") or 0),
            max_retries=int(row.get("max_retries") if row.get("max_retries") is not None else 3),
            last_error=row.get("last_error"),
            next_retry_at=parse_timestamp(row.get("next_retry_at")),
            published_id=row.get("published_id"),
            sequence=int(row.get("sequence") or 0),
            created_at=parse_timestamp(row.get("created_at")) or utc_now(),
        )


# =============================================================================
# SOCIAL PUBLISHED (LEDGER ENTRY)
# =============================================================================


@dataclass
class SocialPublished:
    """Immutable record of what was actually sent to a platform.

    Only ``latest_metrics`` and ``metrics_updated_at`` change after the
    record is written.
    """

    id: str
    user_id: str
    draft_id: str
    integration_id: str
    queue_item_id: str
    platform: Platform
    platform_post_id: Optional[str]
    content_snapshot: str
    published_at: datetime
    platform_permalink: Optional[str] = None
    media_snapshot: List[MediaAttachment] = field(default_factory=list)
    status: PublishedStatus = PublishedStatus.SUCCESS
    error_message: Optional[str] = None
    retry_count: int = 0
    initial_metrics: Dict[str, int] = field(default_factory=dict)
    latest_metrics: Dict[str, int] = field(default_factory=dict)
    metrics_updated_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)

    def to_row(self) -> Dict[str, Any]:
        return {f.name: serialize_value(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SocialPublished":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            draft_id=row.get("draft_id", ""),
            integration_id=row.get("integration_id", ""),
            queue_item_id=row.get("queue_item_id", ""),
            platform=Platform(row["platform"]),
            platform_post_id=row.get("platform_post_id"),
            content_snapshot=row.get("content_snapshot") or "",
            published_at=parse_timestamp(row["published_at"]),
            platform_permalink=row.get("platform_permalink"),
            media_snapshot=[
                MediaAttachment.from_dict(m) for m in row.get("media_snapshot") or []
            ],
            status=PublishedStatus(row.get("status", "success")),
            error_message=row.get("error_message"),
            retry_count=int(row.get("retry_count") or 0),
            initial_metrics=dict(row.get("initial_metrics") or {}),
            latest_metrics=dict(row.get("latest_metrics") or {}),
            metrics_updated_at=parse_timestamp(row.get("metrics_updated_at")),
            created_at=parse_timestamp(row.get("created_at")) or utc_now(),
        )


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    # Enums
    "Platform",
    "ConnectionType",
    "IntegrationStatus",
    "DraftStatus",
    "QueueItemStatus",
    "PublishedStatus",
    "MediaType",
    "PostType",
    "AggregatePolicy",
    # Helpers
    "serialize_value",
    "serialize_changes",
    # Value objects
    "MediaAttachment",
    "PlatformContent",
    "PublishResult",
    "ApproveCommand",
    "RejectCommand",
    # Entities
    "SocialIntegration",
    "SocialDraft",
    "PublishQueueItem",
    "SocialPublished",
]
