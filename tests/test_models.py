"""Tests for social_publisher.models: enums, row conversion and content rendering."""

from datetime import datetime, timedelta, timezone

import pytest

from social_publisher.models import (
    ConnectionType,
    DraftStatus,
    IntegrationStatus,
    MediaAttachment,
    MediaType,
    Platform,
    PlatformContent,
    PostType,
    PublishedStatus,
    PublishQueueItem,
    QueueItemStatus,
    SocialDraft,
    SocialIntegration,
    SocialPublished,
    serialize_changes,
)

FIXED_TS = datetime(2025, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


def _item(**overrides) -> PublishQueueItem:
    fields = dict(
        id="q1",
        user_id="u1",
        draft_id="d1",
        integration_id="i1",
        platform=Platform.LINKEDIN,
        scheduled_at=FIXED_TS,
    )
    fields.update(overrides)
    return PublishQueueItem(**fields)


# =========================================================================
# Enums
# =========================================================================


class TestStatusEnums:

    def test_terminal_draft_statuses(self):
        terminal = {s for s in DraftStatus if s.is_terminal}
        assert terminal == {DraftStatus.PUBLISHED, DraftStatus.FAILED, DraftStatus.CANCELLED}

    def test_terminal_queue_statuses(self):
        terminal = {s for s in QueueItemStatus if s.is_terminal}
        assert terminal == {
            QueueItemStatus.COMPLETED,
            QueueItemStatus.FAILED,
            QueueItemStatus.CANCELLED,
        }

    def test_only_disconnected_integration_is_inactive(self):
        inactive = {s for s in IntegrationStatus if not s.is_active}
        assert inactive == {IntegrationStatus.DISCONNECTED}

    def test_platform_set_is_closed(self):
        assert len(Platform) == 13
        assert Platform("github") == Platform.GITHUB


# =========================================================================
# SocialDraft.content_for
# =========================================================================


class TestContentFor:

    def _draft(self, **kwargs) -> SocialDraft:
        return SocialDraft(
            id="d1",
            user_id="u1",
            content_text="Main text",
            target_platforms=[Platform.LINKEDIN, Platform.TWITTER],
            **kwargs,
        )

    def test_without_override_uses_main_text(self):
        assert self._draft().content_for(Platform.TWITTER) == "Main text"

    def test_override_replaces_text(self):
        draft = self._draft(platform_content={"twitter": PlatformContent(content_text="Short")})
        assert draft.content_for(Platform.TWITTER) == "Short"
        assert draft.content_for(Platform.LINKEDIN) == "Main text"

    def test_hashtags_appended_with_hash_prefix(self):
        draft = self._draft(
            platform_content={"twitter": PlatformContent(hashtags=["python", "#async"])}
        )
        assert draft.content_for(Platform.TWITTER) == "Main text\n\n#python #async"


# =========================================================================
# PublishQueueItem
# =========================================================================


class TestQueueItem:

    def test_due_when_pending_and_scheduled_in_past(self):
        assert _item().is_due(FIXED_TS)

    def test_not_due_before_schedule(self):
        assert not _item(scheduled_at=FIXED_TS + timedelta(minutes=1)).is_due(FIXED_TS)

    def test_not_due_during_backoff(self):
        item = _item(next_retry_at=FIXED_TS + timedelta(seconds=30))
        assert not item.is_due(FIXED_TS)
        assert item.is_due(FIXED_TS + timedelta(seconds=30))

    def test_not_due_unless_pending(self):
        assert not _item(status=QueueItemStatus.PROCESSING).is_due(FIXED_TS)

    def test_dispatch_key_orders_priority_then_schedule_then_sequence(self):
        a = _item(id="a", priority=1, sequence=1)
        b = _item(id="b", priority=0, scheduled_at=FIXED_TS + timedelta(hours=1), sequence=2)
        c = _item(id="c", priority=0, sequence=3)
        d = _item(id="d", priority=0, sequence=2)
        ordered = sorted([a, b, c, d], key=lambda i: i.dispatch_key)
        assert [i.id for i in ordered] == ["d", "c", "b", "a"]


# =========================================================================
# Row conversion
# =========================================================================


class TestRowConversion:

    def test_draft_row_round_trip(self):
        draft = SocialDraft(
            id="d1",
            user_id="u1",
            content_text="Hello",
            target_platforms=[Platform.THREADS],
            media_attachments=[
                MediaAttachment(type=MediaType.IMAGE, url="https://cdn/x.png", file_size=10)
            ],
            post_type=PostType.IMAGE,
            platform_content={"threads": PlatformContent(hashtags=["a"])},
            scheduled_at=FIXED_TS,
            status=DraftStatus.SCHEDULED,
            created_at=FIXED_TS,
            updated_at=FIXED_TS,
        )
        row = draft.to_row()
        assert row["status"] == "scheduled"
        assert row["target_platforms"] == ["threads"]
        assert row["scheduled_at"] == FIXED_TS.isoformat()
        assert row["media_attachments"][0]["type"] == "image"
        assert SocialDraft.from_row(row) == draft

    def test_queue_item_from_row_with_z_timestamps(self):
        row = {
            "id": "q1",
            "user_id": "u1",
            "draft_id": "d1",
            "integration_id": "i1",
            "platform": "twitter",
            "scheduled_at": "2025-06-15T12:00:00Z",
            "status": "pending",
            "max_retries": 0,
            "sequence": 7,
        }
        item = PublishQueueItem.from_row(row)
        assert item.scheduled_at == FIXED_TS
        assert item.max_retries == 0
        assert item.sequence == 7
        assert item.next_retry_at is None

    def test_integration_from_row_defaults(self):
        integration = SocialIntegration.from_row(
            {"id": "i1", "user_id": "u1", "platform": "telegram", "connection_type": "api_key"}
        )
        assert integration.connection_type == ConnectionType.API_KEY
        assert integration.status == IntegrationStatus.PENDING
        assert integration.credentials == {}

    def test_published_row_keeps_metrics(self):
        record = SocialPublished(
            id="p1",
            user_id="u1",
            draft_id="d1",
            integration_id="i1",
            queue_item_id="q1",
            platform=Platform.LINKEDIN,
            platform_post_id="urn:li:share:1",
            content_snapshot="Hello",
            published_at=FIXED_TS,
            status=PublishedStatus.PARTIAL,
            initial_metrics={"likes": 1},
            latest_metrics={"likes": 5},
            created_at=FIXED_TS,
        )
        restored = SocialPublished.from_row(record.to_row())
        assert restored.status == PublishedStatus.PARTIAL
        assert restored.latest_metrics == {"likes": 5}

    def test_serialize_changes(self):
        changes = serialize_changes(
            {"status": QueueItemStatus.FAILED, "completed_at": FIXED_TS, "next_retry_at": None}
        )
        assert changes == {
            "status": "failed",
            "completed_at": FIXED_TS.isoformat(),
            "next_retry_at": None,
        }

    def test_media_from_dict_requires_url(self):
        with pytest.raises(KeyError):
            MediaAttachment.from_dict({"type": "image"})
