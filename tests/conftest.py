"""Shared fixtures for the social publisher test suite."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from social_publisher.config import ENV_OVERRIDES, REQUIRED_ENV_VARS, Settings, reset_settings
from social_publisher.logging import reset_logger
from social_publisher.models import (
    ConnectionType,
    MediaAttachment,
    Platform,
    PublishResult,
)
from social_publisher.pipeline import PublishingPipeline
from social_publisher.publishers import PlatformPublisher, PublisherRegistry
from social_publisher.store import MemoryStore


# ---------------------------------------------------------------------------
# Ensure we don't hit real services during tests
# ---------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def _block_env_keys(monkeypatch):
    """Clear service keys and PUBLISH_* overrides so tests never hit real services."""
    for key in [*REQUIRED_ENV_VARS, *ENV_OVERRIDES]:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture(autouse=True)
def _reset_singletons():
    """Drop cached settings and the global event logger around every test."""
    reset_settings()
    reset_logger()
    yield
    reset_settings()
    reset_logger()


# ---------------------------------------------------------------------------
# Common datetime fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def sample_utc_now():
    """A fixed UTC datetime for deterministic tests."""
    return datetime(2025, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock injected wherever components ask for "now"."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock(sample_utc_now):
    return FakeClock(sample_utc_now)


# ---------------------------------------------------------------------------
# Scripted publisher
# ---------------------------------------------------------------------------
class ScriptedPublisher(PlatformPublisher):
    """Publisher that replays a per-platform script of outcomes.

    Each script entry is either a ``PublishResult``, an exception to raise,
    or ``None`` for a default success. When a platform's script runs out,
    every further call succeeds.
    """

    def __init__(self, scripts: Optional[Dict[Platform, List[Any]]] = None) -> None:
        self.scripts = {p: list(s) for p, s in (scripts or {}).items()}
        self.calls: List[Dict[str, Any]] = []

    async def publish(
        self,
        platform: Platform,
        credentials: Dict[str, Any],
        content_snapshot: str,
        media: List[MediaAttachment],
    ) -> PublishResult:
        self.calls.append({
            "platform": platform,
            "credentials": credentials,
            "content": content_snapshot,
            "media": media,
        })
        script = self.scripts.get(platform, [])
        outcome = script.pop(0) if script else None
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, PublishResult):
            return outcome
        return PublishResult(
            platform_post_id=f"{platform.value}-{len(self.calls)}",
            permalink=f"https://{platform.value}.example/p/{len(self.calls)}",
        )

    def calls_for(self, platform: Platform) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["platform"] == platform]


@pytest.fixture
def publisher():
    return ScriptedPublisher()


@pytest.fixture
def settings():
    """Default settings without reading config/settings.yaml."""
    return Settings()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def pipeline(store, publisher, settings, clock):
    return PublishingPipeline(
        store, PublisherRegistry(default=publisher), settings=settings, clock=clock
    )


@pytest.fixture
def make_pipeline(clock):
    """Build a pipeline around a custom store, publisher or settings."""

    def _make(store=None, publisher=None, **settings_overrides: Any) -> PublishingPipeline:
        return PublishingPipeline(
            store or MemoryStore(),
            PublisherRegistry(default=publisher or ScriptedPublisher()),
            settings=Settings(**settings_overrides),
            clock=clock,
        )

    return _make


@pytest.fixture
def connect(pipeline):
    """Connect one or more platforms for a user with placeholder credentials."""

    async def _connect(user_id: str, *platforms: Platform, target=None):
        target = target or pipeline
        result = []
        for platform in platforms:
            result.append(
                await target.integrations.connect(
                    user_id,
                    platform,
                    ConnectionType.OAUTH,
                    {"access_token": f"token-{platform.value}"},
                )
            )
        return result

    return _connect


# ---------------------------------------------------------------------------
# Mock Supabase client
# ---------------------------------------------------------------------------
@pytest.fixture
def mock_supabase_client():
    """A mock Supabase async client whose query builder records its calls."""
    client = AsyncMock()
    # table().select().eq().execute() chain
    table_mock = MagicMock()
    for method in (
        "select", "insert", "update", "delete", "eq", "in_",
        "lt", "lte", "gte", "order", "limit",
    ):
        getattr(table_mock, method).return_value = table_mock

    table_mock.result = MagicMock(data=[], count=0)

    async def mock_execute():
        return table_mock.result

    table_mock.execute = mock_execute
    client.table = MagicMock(return_value=table_mock)
    return client
