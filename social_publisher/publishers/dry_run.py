"""Publisher that records deliveries without contacting any platform."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List

from social_publisher.models import MediaAttachment, Platform, PublishResult
from social_publisher.publishers.base import PlatformPublisher
from social_publisher.utils import generate_id

logger = logging.getLogger(__name__)


@dataclass
class DryRunDelivery:
    platform: Platform
    content_snapshot: str
    media_count: int
    platform_post_id: str


class DryRunPublisher(PlatformPublisher):
    """Accepts every post and keeps a list of what would have been sent."""

    def __init__(self) -> None:
        self.deliveries: List[DryRunDelivery] = []

    async def publish(
        self,
        platform: Platform,
        credentials: Dict[str, Any],
        content_snapshot: str,
        media: List[MediaAttachment],
    ) -> PublishResult:
        post_id = f"dryrun-{generate_id()}"
        self.deliveries.append(
            DryRunDelivery(
                platform=platform,
                content_snapshot=content_snapshot,
                media_count=len(media),
                platform_post_id=post_id,
            )
        )
        logger.info(
            "[PUBLISHER] Dry run %s (text_len=%d, media=%d) -> %s",
            platform.value,
            len(content_snapshot),
            len(media),
            post_id,
        )
        return PublishResult(platform_post_id=post_id)


__all__ = ["DryRunDelivery", "DryRunPublisher"]
