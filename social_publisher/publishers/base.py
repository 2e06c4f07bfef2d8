"""
Platform publisher interface and registry.

A ``PlatformPublisher`` performs one delivery attempt: it receives the
integration credentials, the exact text to send and the media references,
and either returns a ``PublishResult`` or raises ``PublishError`` with a
failure kind. Publishers never retry on their own; retries, timeouts and
state changes belong to the scheduler.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from social_publisher.exceptions import PublishError, PublishFailureKind
from social_publisher.models import MediaAttachment, Platform, PublishResult


class PlatformPublisher(ABC):
    """One delivery attempt to one platform."""

    @abstractmethod
    async def publish(
        self,
        platform: Platform,
        credentials: Dict[str, Any],
        content_snapshot: str,
        media: List[MediaAttachment],
    ) -> PublishResult:
        """
        Publish a post.

        Args:
            platform: Target platform.
            credentials: Opaque mapping from the integration.
            content_snapshot: Exact text to publish.
            media: Attachments to include.

        Returns:
            ``PublishResult`` with the platform's post id.

        Raises:
            PublishError: On any delivery failure, classified by kind.
        """


class PublisherRegistry:
    """Maps platforms to publishers, with an optional catch-all default.

    Usage::

        registry = PublisherRegistry(default=DryRunPublisher())
        registry.register(Platform.DISCORD, WebhookPublisher())
        publisher = registry.get(Platform.DISCORD)
    """

    def __init__(self, default: Optional[PlatformPublisher] = None) -> None:
        self._publishers: Dict[Platform, PlatformPublisher] = {}
        self.default = default

    def register(self, platform: Platform, publisher: PlatformPublisher) -> None:
        self._publishers[platform] = publisher

    def get(self, platform: Platform) -> PlatformPublisher:
        """
        Resolve the publisher for *platform*.

        Raises:
            PublishError: Kind ``NOT_SUPPORTED`` when nothing is registered.
        """
        publisher = self._publishers.get(platform, self.default)
        if publisher is None:
            raise PublishError(
                f"No publisher registered for {platform.value}",
                kind=PublishFailureKind.NOT_SUPPORTED,
            )
        return publisher

    def __contains__(self, platform: Platform) -> bool:
        return platform in self._publishers or self.default is not None


__all__ = ["PlatformPublisher", "PublisherRegistry"]
