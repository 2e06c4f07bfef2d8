"""
Platform capability registry.

The set of platforms is closed: every ``Platform`` member has exactly one
``PlatformCapability`` record here. Capabilities drive integration setup
(which connection methods are accepted), draft validation (character and
media limits) and fan-out (default retry budget).
"""

from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional

from social_publisher.models import ConnectionType, MediaType, Platform


@dataclass(frozen=True)
class PlatformCapability:
    """Static description of what a platform supports."""

    platform: Platform
    display_name: str
    supports_oauth: bool = True
    supports_api_key: bool = False
    supports_publish: bool = True
    supports_schedule: bool = True
    supports_media_types: FrozenSet[MediaType] = frozenset({MediaType.IMAGE})
    oauth_scopes: tuple = ()
    max_post_length: Optional[int] = None
    max_media_size_mb: Optional[int] = None
    max_media_count: Optional[int] = None
    rate_limit_requests: Optional[int] = None
    rate_limit_window_seconds: Optional[int] = None
    is_active: bool = True

    def supports_connection(self, connection_type: ConnectionType) -> bool:
        if connection_type == ConnectionType.OAUTH:
            return self.supports_oauth
        return self.supports_api_key

    @property
    def max_media_size_bytes(self) -> Optional[int]:
        if self.max_media_size_mb is None:
            return None
        return self.max_media_size_mb * 1024 * 1024


_IMAGE_VIDEO = frozenset({MediaType.IMAGE, MediaType.VIDEO})

PLATFORM_CAPABILITIES: Dict[Platform, PlatformCapability] = {
    Platform.LINKEDIN: PlatformCapability(
        platform=Platform.LINKEDIN,
        display_name="LinkedIn",
        supports_media_types=frozenset({MediaType.IMAGE, MediaType.VIDEO, MediaType.FILE}),
        oauth_scopes=("openid", "profile", "w_member_social"),
        max_post_length=3000,
        max_media_size_mb=200,
        max_media_count=9,
        rate_limit_requests=150,
        rate_limit_window_seconds=86400,
    ),
    Platform.TWITTER: PlatformCapability(
        platform=Platform.TWITTER,
        display_name="X (Twitter)",
        supports_api_key=True,
        supports_media_types=_IMAGE_VIDEO,
        oauth_scopes=("tweet.read", "tweet.write", "users.read", "offline.access"),
        max_post_length=280,
        max_media_size_mb=512,
        max_media_count=4,
        rate_limit_requests=100,
        rate_limit_window_seconds=86400,
    ),
    Platform.INSTAGRAM: PlatformCapability(
        platform=Platform.INSTAGRAM,
        display_name="Instagram",
        supports_media_types=_IMAGE_VIDEO,
        oauth_scopes=("instagram_basic", "instagram_content_publish"),
        max_post_length=2200,
        max_media_size_mb=100,
        max_media_count=10,
        rate_limit_requests=25,
        rate_limit_window_seconds=86400,
    ),
    Platform.FACEBOOK: PlatformCapability(
        platform=Platform.FACEBOOK,
        display_name="Facebook",
        supports_media_types=_IMAGE_VIDEO,
        oauth_scopes=("pages_manage_posts", "pages_read_engagement"),
        max_post_length=63206,
        max_media_size_mb=1024,
        max_media_count=10,
    ),
    Platform.YOUTUBE: PlatformCapability(
        platform=Platform.YOUTUBE,
        display_name="YouTube",
        supports_media_types=frozenset({MediaType.VIDEO}),
        oauth_scopes=("https://www.googleapis.com/auth/youtube.upload",),
        max_post_length=5000,
        max_media_size_mb=256 * 1024,
        max_media_count=1,
    ),
    Platform.TIKTOK: PlatformCapability(
        platform=Platform.TIKTOK,
        display_name="TikTok",
        supports_media_types=frozenset({MediaType.VIDEO}),
        oauth_scopes=("video.publish",),
        max_post_length=2200,
        max_media_size_mb=4096,
        max_media_count=1,
    ),
    Platform.THREADS: PlatformCapability(
        platform=Platform.THREADS,
        display_name="Threads",
        supports_media_types=_IMAGE_VIDEO,
        oauth_scopes=("threads_basic", "threads_content_publish"),
        max_post_length=500,
        max_media_size_mb=100,
        max_media_count=10,
    ),
    Platform.PINTEREST: PlatformCapability(
        platform=Platform.PINTEREST,
        display_name="Pinterest",
        supports_media_types=_IMAGE_VIDEO,
        oauth_scopes=("pins:write", "boards:read"),
        max_post_length=500,
        max_media_size_mb=20,
        max_media_count=1,
    ),
    Platform.REDDIT: PlatformCapability(
        platform=Platform.REDDIT,
        display_name="Reddit",
        supports_media_types=_IMAGE_VIDEO,
        oauth_scopes=("submit", "identity"),
        max_post_length=40000,
        max_media_size_mb=20,
    ),
    Platform.TELEGRAM: PlatformCapability(
        platform=Platform.TELEGRAM,
        display_name="Telegram",
        supports_oauth=False,
        supports_api_key=True,
        supports_media_types=frozenset(
            {MediaType.IMAGE, MediaType.VIDEO, MediaType.AUDIO, MediaType.FILE}
        ),
        max_post_length=4096,
        max_media_size_mb=50,
        max_media_count=10,
        rate_limit_requests=30,
        rate_limit_window_seconds=1,
    ),
    Platform.DISCORD: PlatformCapability(
        platform=Platform.DISCORD,
        display_name="Discord",
        supports_api_key=True,
        supports_media_types=frozenset(
            {MediaType.IMAGE, MediaType.VIDEO, MediaType.AUDIO, MediaType.FILE}
        ),
        oauth_scopes=("webhook.incoming",),
        max_post_length=2000,
        max_media_size_mb=25,
        max_media_count=10,
    ),
    Platform.TUMBLR: PlatformCapability(
        platform=Platform.TUMBLR,
        display_name="Tumblr",
        supports_media_types=frozenset({MediaType.IMAGE, MediaType.VIDEO, MediaType.AUDIO}),
        oauth_scopes=("write",),
        max_post_length=4096,
        max_media_size_mb=10,
    ),
    # Read-only: activity sync, no publishing
    Platform.GITHUB: PlatformCapability(
        platform=Platform.GITHUB,
        display_name="GitHub",
        supports_api_key=True,
        supports_publish=False,
        supports_schedule=False,
        supports_media_types=frozenset(),
        oauth_scopes=("read:user",),
    ),
}


def get_capability(platform: Platform) -> PlatformCapability:
    """Return the capability record for *platform*."""
    return PLATFORM_CAPABILITIES[platform]


def publishable_platforms() -> List[Platform]:
    """Platforms that are active and accept published posts."""
    return [
        cap.platform
        for cap in PLATFORM_CAPABILITIES.values()
        if cap.is_active and cap.supports_publish
    ]


def character_limit(platforms: List[Platform]) -> Optional[int]:
    """Strictest character limit across *platforms*, or ``None`` if unbounded."""
    limits = [
        PLATFORM_CAPABILITIES[p].max_post_length
        for p in platforms
        if PLATFORM_CAPABILITIES[p].max_post_length is not None
    ]
    return min(limits) if limits else None


__all__ = [
    "PlatformCapability",
    "PLATFORM_CAPABILITIES",
    "get_capability",
    "publishable_platforms",
    "character_limit",
]
