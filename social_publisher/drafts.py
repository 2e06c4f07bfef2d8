"""
Draft composition and validation.

The ``Composer`` creates and edits drafts while they are in ``draft``
status and validates them against platform capabilities before they are
submitted. Validation collects every problem and raises a single
``ValidationError`` listing them.
"""

from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from social_publisher.exceptions import (
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from social_publisher.logging import ComponentLogger, LogComponent
from social_publisher.models import (
    DraftStatus,
    MediaAttachment,
    MediaType,
    Platform,
    PlatformContent,
    PostType,
    SocialDraft,
    SocialIntegration,
)
from social_publisher.platforms import get_capability
from social_publisher.scheduling.draft_state import EDITABLE_DRAFT_STATUSES
from social_publisher.store.base import SocialStore
from social_publisher.utils import ensure_utc, generate_id, utc_now

# Fields a caller may change through Composer.update()
EDITABLE_FIELDS = frozenset({
    "title",
    "content_text",
    "target_platforms",
    "media_attachments",
    "post_type",
    "platform_content",
    "requires_approval",
    "scheduled_at",
    "timezone",
    "tags",
    "notes",
})

_POST_TYPE_BY_MEDIA = {
    MediaType.IMAGE: PostType.IMAGE,
    MediaType.VIDEO: PostType.VIDEO,
    MediaType.AUDIO: PostType.AUDIO,
}


def normalize_platforms(platforms: Iterable[Any]) -> List[Platform]:
    """Coerce to ``Platform`` members, dropping duplicates but keeping order."""
    result: List[Platform] = []
    for value in platforms:
        try:
            platform = value if isinstance(value, Platform) else Platform(value)
        except ValueError as exc:
            raise ValidationError(f"Unknown platform '{value}'") from exc
        if platform not in result:
            result.append(platform)
    return result


def derive_post_type(media: List[MediaAttachment]) -> PostType:
    """Post type implied by the first attachment; text when there is none."""
    if not media:
        return PostType.TEXT
    return _POST_TYPE_BY_MEDIA.get(media[0].type, PostType.TEXT)


def collect_problems(
    draft: SocialDraft,
    publishable: Dict[Platform, SocialIntegration],
) -> List[str]:
    """
    Check a draft against platform capabilities and the user's integrations.

    Args:
        draft: Draft to check.
        publishable: The owner's connected, publish-capable integrations.

    Returns:
        Human-readable problems; empty when the draft can be submitted.
    """
    problems: List[str] = []

    if not draft.content_text or not draft.content_text.strip():
        problems.append("content_text must not be empty")
    if not draft.target_platforms:
        problems.append("target_platforms must not be empty")

    for key in draft.platform_content:
        if key not in {p.value for p in draft.target_platforms}:
            problems.append(f"platform_content for '{key}' which is not a target")

    for platform in draft.target_platforms:
        capability = get_capability(platform)
        name = capability.display_name

        if not capability.supports_publish or not capability.is_active:
            problems.append(f"{name} does not support publishing")
            continue
        if platform not in publishable:
            problems.append(f"{name} has no connected integration")

        text = draft.content_for(platform)
        if capability.max_post_length is not None and len(text) > capability.max_post_length:
            problems.append(
                f"{name} allows {capability.max_post_length} characters, "
                f"post has {len(text)}"
            )

        if capability.max_media_count is not None and len(draft.media_attachments) > capability.max_media_count:
            problems.append(
                f"{name} allows {capability.max_media_count} attachments, "
                f"post has {len(draft.media_attachments)}"
            )

        size_limit = capability.max_media_size_bytes
        for media in draft.media_attachments:
            if media.type not in capability.supports_media_types:
                problems.append(f"{name} does not accept {media.type.value} attachments")
            if size_limit is not None and media.file_size > size_limit:
                problems.append(
                    f"{name} limits media to {capability.max_media_size_mb} MB, "
                    f"'{media.file_name or media.url}' is {media.file_size} bytes"
                )

    return problems


class Composer:
    """Create, edit and validate drafts."""

    def __init__(
        self,
        store: SocialStore,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.clock = clock
        self.log = ComponentLogger(LogComponent.COMPOSER)

    async def create(
        self,
        user_id: str,
        content_text: str,
        target_platforms: Iterable[Any],
        media_attachments: Optional[List[MediaAttachment]] = None,
        platform_content: Optional[Dict[str, PlatformContent]] = None,
        post_type: Optional[PostType] = None,
        title: Optional[str] = None,
        requires_approval: bool = True,
        scheduled_at: Optional[datetime] = None,
        timezone: str = "UTC",
        tags: Optional[List[str]] = None,
        notes: Optional[str] = None,
    ) -> SocialDraft:
        """Store a new draft in ``draft`` status. Content is checked on submit."""
        if not user_id:
            raise ValidationError("user_id must not be empty")

        media = list(media_attachments or [])
        for attachment in media:
            if not attachment.id:
                attachment.id = generate_id()

        now = self.clock()
        draft = SocialDraft(
            id=generate_id(),
            user_id=user_id,
            title=title,
            content_text=content_text or "",
            target_platforms=normalize_platforms(target_platforms),
            media_attachments=media,
            post_type=post_type or derive_post_type(media),
            platform_content=dict(platform_content or {}),
            requires_approval=requires_approval,
            scheduled_at=ensure_utc(scheduled_at) if scheduled_at else None,
            timezone=timezone,
            status=DraftStatus.DRAFT,
            tags=list(tags or []),
            notes=notes,
            created_at=now,
            updated_at=now,
        )
        draft = await self.store.insert_draft(draft)
        await self.log.info(
            "Draft created",
            draft_id=draft.id,
            data={"platforms": [p.value for p in draft.target_platforms]},
        )
        return draft

    async def get(self, draft_id: str) -> SocialDraft:
        draft = await self.store.get_draft(draft_id)
        if draft is None:
            raise NotFoundError(f"Draft {draft_id} not found")
        return draft

    async def update(self, draft_id: str, actor: str, **changes: Any) -> SocialDraft:
        """
        Edit a draft owned by *actor* while it is in ``draft`` status.

        Raises:
            ValidationError: Unknown field in *changes*.
            PermissionDeniedError: *actor* is not the owner.
            InvalidStateError: The draft is no longer editable.
        """
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields not editable: {sorted(unknown)}")

        draft = await self.get(draft_id)
        if actor != draft.user_id:
            raise PermissionDeniedError(actor, f"edit draft {draft_id}")
        if draft.status not in EDITABLE_DRAFT_STATUSES:
            raise InvalidStateError(draft_id, draft.status.value, "'draft'")

        if "target_platforms" in changes:
            changes["target_platforms"] = normalize_platforms(changes["target_platforms"])
        if changes.get("scheduled_at") is not None:
            changes["scheduled_at"] = ensure_utc(changes["scheduled_at"])
        if "media_attachments" in changes and "post_type" not in changes:
            changes["post_type"] = derive_post_type(changes["media_attachments"])
        changes["updated_at"] = self.clock()

        updated = await self.store.transition_draft(draft_id, EDITABLE_DRAFT_STATUSES, changes)
        if updated is None:
            current = await self.get(draft_id)
            raise InvalidStateError(draft_id, current.status.value, "'draft'")
        return updated

    def validate(
        self,
        draft: SocialDraft,
        publishable: Dict[Platform, SocialIntegration],
    ) -> None:
        """Raise ``ValidationError`` listing every problem with *draft*."""
        problems = collect_problems(draft, publishable)
        if problems:
            raise ValidationError(f"Draft {draft.id} is invalid: " + "; ".join(problems))


__all__ = [
    "EDITABLE_FIELDS",
    "normalize_platforms",
    "derive_post_type",
    "collect_problems",
    "Composer",
]
