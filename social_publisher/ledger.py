"""
Publish ledger: append-only record of delivered posts.

Each successful delivery yields exactly one ``SocialPublished`` row
holding the text and media that were actually sent. Rows are never
updated except for ``latest_metrics`` / ``metrics_updated_at``.
"""

from datetime import datetime
from typing import Dict, List, Optional

from social_publisher.exceptions import NotFoundError, ValidationError
from social_publisher.logging import ComponentLogger, LogComponent
from social_publisher.models import (
    MediaAttachment,
    PublishedStatus,
    PublishQueueItem,
    PublishResult,
    SocialPublished,
)
from social_publisher.store.base import SocialStore
from social_publisher.utils import generate_id, utc_now


class PublishLedger:
    """Writes and reads ``SocialPublished`` records."""

    def __init__(self, store: SocialStore) -> None:
        self.store = store
        self.log = ComponentLogger(LogComponent.LEDGER)

    async def record_success(
        self,
        item: PublishQueueItem,
        result: PublishResult,
        content_snapshot: str,
        media_snapshot: List[MediaAttachment],
        published_at: Optional[datetime] = None,
        published_id: Optional[str] = None,
    ) -> SocialPublished:
        """
        Append the ledger record for a completed queue item.

        Args:
            item: The queue item that was delivered.
            result: The publisher's result.
            content_snapshot: Exact text that was sent.
            media_snapshot: Media that was sent.
            published_at: Delivery time; defaults to now.
            published_id: Pre-allocated record id (the scheduler allocates
                it so the queue item can point at it before the write).
        """
        published_at = published_at or utc_now()
        record = SocialPublished(
            id=published_id or generate_id(),
            user_id=item.user_id,
            draft_id=item.draft_id,
            integration_id=item.integration_id,
            queue_item_id=item.id,
            platform=item.platform,
            platform_post_id=result.platform_post_id,
            platform_permalink=result.permalink,
            content_snapshot=content_snapshot,
            media_snapshot=list(media_snapshot),
            published_at=published_at,
            status=PublishedStatus.PARTIAL if result.partial else PublishedStatus.SUCCESS,
            retry_count=item.retry_count,
            initial_metrics=dict(result.metrics),
            latest_metrics=dict(result.metrics),
            metrics_updated_at=published_at if result.metrics else None,
        )
        record = await self.store.insert_published(record)
        await self.log.info(
            f"Recorded {item.platform.value} post {result.platform_post_id}",
            draft_id=item.draft_id,
            queue_item_id=item.id,
            data={"published_id": record.id, "status": record.status.value},
        )
        return record

    async def refresh_metrics(
        self, published_id: str, metrics: Dict[str, int]
    ) -> SocialPublished:
        """Replace the latest engagement counters of a ledger record."""
        if any(not isinstance(v, int) or v < 0 for v in metrics.values()):
            raise ValidationError("Metric values must be non-negative integers")
        if await self.store.get_published(published_id) is None:
            raise NotFoundError(f"Published record {published_id} not found")
        return await self.store.update_published_metrics(published_id, metrics, utc_now())

    async def get(self, published_id: str) -> SocialPublished:
        record = await self.store.get_published(published_id)
        if record is None:
            raise NotFoundError(f"Published record {published_id} not found")
        return record

    async def list_for_draft(self, draft_id: str) -> List[SocialPublished]:
        return await self.store.list_published(draft_id=draft_id)

    async def list_for_user(self, user_id: str) -> List[SocialPublished]:
        return await self.store.list_published(user_id=user_id)


__all__ = ["PublishLedger"]
