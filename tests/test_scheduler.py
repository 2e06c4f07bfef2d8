"""
Tests for social_publisher.scheduling.publish_scheduler.

Covers:
    - End-to-end publishing: success, retry then success, permanent
      failure, partial success across platforms
    - Queue invariants: retry budget, monotonic backoff, dispatch order,
      atomic fan-out, single dispatch under concurrent ticks
    - Cancellation of drafts and items, including in-flight results
    - Credential failures, timeouts, stuck recovery and reconciliation
    - Manual retry and the start/stop loop
"""

import asyncio
from datetime import timedelta
from typing import Any, Dict, List

import pytest

from social_publisher.exceptions import (
    DatabaseError,
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    PublishError,
    PublishFailureKind,
    ValidationError,
)
from social_publisher.models import (
    DraftStatus,
    IntegrationStatus,
    MediaAttachment,
    MediaType,
    Platform,
    PlatformContent,
    PublishQueueItem,
    PublishResult,
    QueueItemStatus,
    SocialDraft,
)
from social_publisher.publishers import PlatformPublisher
from social_publisher.store import MemoryStore

LI = Platform.LINKEDIN
TW = Platform.TWITTER
TH = Platform.THREADS


def _retryable(reason: str = "HTTP 503: upstream unavailable") -> PublishError:
    return PublishError(reason, kind=PublishFailureKind.TRANSIENT)


def _permanent(reason: str = "HTTP 422: content policy") -> PublishError:
    return PublishError(reason, kind=PublishFailureKind.CONTENT_REJECTED)


async def _submit(pipeline, platforms, user_id="u1", priority=0, **kwargs) -> str:
    """Create an auto-approved draft and push it through submission."""
    draft = await pipeline.create_draft(
        user_id, "Shipping the new release today", platforms, requires_approval=False, **kwargs
    )
    return await pipeline.submit_draft(draft.id, priority=priority)


async def _items_by_platform(pipeline, draft_id):
    return {item.platform: item for item in await pipeline.queue_items(draft_id)}


async def _drain(pipeline, clock, max_ticks: int = 20) -> List:
    """Tick and jump past each backoff until no item is pending."""
    reports = []
    for _ in range(max_ticks):
        reports.append(await pipeline.tick())
        pending = await pipeline.store.list_queue_items(statuses=[QueueItemStatus.PENDING])
        if not pending:
            break
        clock.advance(seconds=pipeline.settings.retry_max_delay_seconds)
    return reports


class GatedPublisher(PlatformPublisher):
    """Blocks inside publish() until the test releases it."""

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def publish(self, platform, credentials, content_snapshot, media):
        self.started.set()
        await self.release.wait()
        return PublishResult(platform_post_id="late-1")


class SlowPublisher(PlatformPublisher):
    async def publish(self, platform, credentials, content_snapshot, media):
        await asyncio.sleep(5)
        return PublishResult(platform_post_id="never")


class CrashingStore(MemoryStore):
    """Fails the fan-out batch when it reaches the n-th item."""

    def __init__(self, crash_at: int) -> None:
        super().__init__()
        self.crash_at = crash_at
        self.crashing = True

    def _check_queue_item(self, item, staged) -> None:
        if self.crashing and len(staged) + 1 == self.crash_at:
            raise DatabaseError("connection lost mid-batch")
        super()._check_queue_item(item, staged)


class CancelDuringFanOutStore(MemoryStore):
    """Cancels the draft right after the queue batch is written."""

    async def create_queue_items(self, items):
        created = await super().create_queue_items(items)
        await self.transition_draft(
            items[0].draft_id, [DraftStatus.APPROVED], {"status": DraftStatus.CANCELLED}
        )
        return created


# =========================================================================
# End-to-end scenarios
# =========================================================================


class TestPublishScenarios:

    @pytest.mark.asyncio
    async def test_single_platform_success(self, pipeline, connect, publisher):
        """Auto-approved draft is published once with no retries."""
        await connect("u1", LI)
        draft_id = await _submit(pipeline, [LI])

        report = await pipeline.tick()

        draft = await pipeline.get_draft(draft_id)
        items = await pipeline.queue_items(draft_id)
        records = await pipeline.published_records(draft_id)
        assert draft.status == DraftStatus.PUBLISHED
        assert report.claimed == 1 and report.completed == 1
        assert len(records) == 1
        assert items[0].status == QueueItemStatus.COMPLETED
        assert items[0].retry_count == 0
        assert items[0].published_id == records[0].id
        assert records[0].content_snapshot == "Shipping the new release today"
        assert len(publisher.calls) == 1

    @pytest.mark.asyncio
    async def test_retry_twice_then_success(self, pipeline, connect, publisher, clock):
        await connect("u1", LI)
        publisher.scripts[LI] = [_retryable(), _retryable()]
        draft_id = await _submit(pipeline, [LI])

        await pipeline.tick()
        item = (await pipeline.queue_items(draft_id))[0]
        assert item.status == QueueItemStatus.PENDING
        assert item.retry_count == 1
        assert item.next_retry_at == clock.now + timedelta(seconds=30)
        assert item.last_error == "HTTP 503: upstream unavailable"

        # Not due until the backoff elapses
        report = await pipeline.tick()
        assert report.claimed == 0

        clock.advance(seconds=30)
        await pipeline.tick()
        item = (await pipeline.queue_items(draft_id))[0]
        assert item.retry_count == 2
        assert item.next_retry_at == clock.now + timedelta(seconds=60)

        clock.advance(seconds=60)
        await pipeline.tick()

        item = (await pipeline.queue_items(draft_id))[0]
        records = await pipeline.published_records(draft_id)
        assert item.status == QueueItemStatus.COMPLETED
        assert item.retry_count == 2
        assert item.last_error is None
        assert records[0].retry_count == 2
        assert (await pipeline.get_draft(draft_id)).status == DraftStatus.PUBLISHED

    @pytest.mark.asyncio
    async def test_non_retryable_failure_is_final(self, pipeline, connect, publisher):
        await connect("u1", LI)
        publisher.scripts[LI] = [_permanent()]
        draft_id = await _submit(pipeline, [LI])

        report = await pipeline.tick()

        item = (await pipeline.queue_items(draft_id))[0]
        assert report.failed == 1
        assert item.status == QueueItemStatus.FAILED
        assert item.retry_count == 0
        assert item.last_error == "HTTP 422: content policy"
        assert len(publisher.calls) == 1
        assert (await pipeline.get_draft(draft_id)).status == DraftStatus.FAILED
        assert await pipeline.published_records(draft_id) == []

    @pytest.mark.asyncio
    async def test_partial_success_is_published_under_best_effort(
        self, pipeline, connect, publisher, clock
    ):
        await connect("u1", LI, TW)
        publisher.scripts[TW] = [_retryable() for _ in range(10)]
        draft_id = await _submit(pipeline, [LI, TW])

        await _drain(pipeline, clock)

        items = await _items_by_platform(pipeline, draft_id)
        assert items[LI].status == QueueItemStatus.COMPLETED
        assert items[TW].status == QueueItemStatus.FAILED
        assert items[TW].retry_count == items[TW].max_retries == 3
        assert "(gave up after 3 retries)" in items[TW].last_error
        assert len(publisher.calls_for(TW)) == 4
        assert len(await pipeline.published_records(draft_id)) == 1
        assert (await pipeline.get_draft(draft_id)).status == DraftStatus.PUBLISHED

    @pytest.mark.asyncio
    async def test_any_failure_policy_fails_partial_success(
        self, make_pipeline, connect, clock
    ):
        pipeline = make_pipeline(aggregate_policy="any_failure")
        pipeline.scheduler.publishers.default.scripts[TW] = [_permanent()]
        await connect("u1", LI, TW, target=pipeline)
        draft_id = await _submit(pipeline, [LI, TW])

        await pipeline.tick()

        assert (await pipeline.get_draft(draft_id)).status == DraftStatus.FAILED
        assert len(await pipeline.published_records(draft_id)) == 1

    @pytest.mark.asyncio
    async def test_platform_override_and_media_reach_publisher(self, pipeline, connect, publisher):
        await connect("u1", LI, TW)
        image = MediaAttachment(type=MediaType.IMAGE, url="https://cdn.example/launch.png")
        draft_id = await _submit(
            pipeline,
            [LI, TW],
            media_attachments=[image],
            platform_content={"twitter": PlatformContent(content_text="Release day", hashtags=["ship"])},
        )

        await pipeline.tick()

        assert publisher.calls_for(TW)[0]["content"] == "Release day\n\n#ship"
        assert publisher.calls_for(LI)[0]["content"] == "Shipping the new release today"
        assert publisher.calls_for(LI)[0]["credentials"] == {"access_token": "token-linkedin"}
        records = {r.platform: r for r in await pipeline.published_records(draft_id)}
        assert records[TW].content_snapshot == "Release day\n\n#ship"
        assert records[LI].media_snapshot[0].url == "https://cdn.example/launch.png"

    @pytest.mark.asyncio
    async def test_sibling_isolated_from_unexpected_exception(self, pipeline, connect, publisher):
        """A publisher bug on one platform does not stop the other."""
        await connect("u1", LI, TW)
        publisher.scripts[LI] = [RuntimeError("boom")]
        draft_id = await _submit(pipeline, [LI, TW])

        report = await pipeline.tick()

        items = await _items_by_platform(pipeline, draft_id)
        assert report.completed == 1 and report.retried == 1
        assert items[TW].status == QueueItemStatus.COMPLETED
        assert items[LI].status == QueueItemStatus.PENDING
        assert items[LI].last_error == "Unexpected RuntimeError: boom"
        assert (await pipeline.get_draft(draft_id)).status == DraftStatus.PUBLISHING


# =========================================================================
# Queue invariants
# =========================================================================


class TestQueueInvariants:

    @pytest.mark.asyncio
    async def test_retry_budget_and_backoff_monotonic(self, pipeline, connect, publisher, clock):
        await connect("u1", LI)
        publisher.scripts[LI] = [_retryable() for _ in range(10)]
        draft_id = await _submit(pipeline, [LI])

        seen_next_retry = []
        for _ in range(10):
            await pipeline.tick()
            item = (await pipeline.queue_items(draft_id))[0]
            assert item.retry_count <= item.max_retries
            if item.status != QueueItemStatus.PENDING:
                break
            seen_next_retry.append(item.next_retry_at - clock.now)
            clock.advance(seconds=3600)

        assert item.status == QueueItemStatus.FAILED
        assert seen_next_retry == sorted(seen_next_retry)
        assert seen_next_retry == [timedelta(seconds=s) for s in (30, 60, 120)]

    @pytest.mark.asyncio
    async def test_platform_retry_override_sets_budget(self, make_pipeline, connect):
        pipeline = make_pipeline(platform_max_retries={"twitter": 5})
        await connect("u1", LI, TW, target=pipeline)
        draft_id = await _submit(pipeline, [LI, TW])

        items = await _items_by_platform(pipeline, draft_id)
        assert items[TW].max_retries == 5
        assert items[LI].max_retries == 3

    @pytest.mark.asyncio
    async def test_configured_default_sets_budget(self, make_pipeline, connect):
        pipeline = make_pipeline(default_max_retries=1)
        await connect("u1", LI, target=pipeline)
        draft_id = await _submit(pipeline, [LI])

        (item,) = await pipeline.queue_items(draft_id)
        assert item.max_retries == 1

    @pytest.mark.asyncio
    async def test_earlier_schedule_wins_at_equal_priority(self, pipeline, connect, clock):
        await connect("u1", LI)
        late = await _submit(pipeline, [LI], scheduled_at=clock.now - timedelta(hours=2))
        early = await _submit(pipeline, [LI], scheduled_at=clock.now - timedelta(hours=3))

        report = await pipeline.tick()

        late_item = (await pipeline.queue_items(late))[0]
        early_item = (await pipeline.queue_items(early))[0]
        assert report.dispatched_ids == [early_item.id, late_item.id]

    @pytest.mark.asyncio
    async def test_priority_beats_schedule(self, pipeline, connect, clock):
        await connect("u1", LI)
        normal = await _submit(pipeline, [LI], scheduled_at=clock.now - timedelta(hours=3))
        urgent = await _submit(pipeline, [LI], priority=-1)

        report = await pipeline.tick()

        urgent_item = (await pipeline.queue_items(urgent))[0]
        normal_item = (await pipeline.queue_items(normal))[0]
        assert report.dispatched_ids == [urgent_item.id, normal_item.id]

    @pytest.mark.asyncio
    async def test_fan_out_is_all_or_nothing(self, make_pipeline, connect):
        store = CrashingStore(crash_at=2)
        pipeline = make_pipeline(store=store)
        await connect("u1", LI, TW, TH, target=pipeline)
        draft = await pipeline.create_draft("u1", "Launch", [LI, TW, TH], requires_approval=False)

        with pytest.raises(DatabaseError):
            await pipeline.submit_draft(draft.id)

        assert await pipeline.queue_items(draft.id) == []
        assert (await pipeline.get_draft(draft.id)).status == DraftStatus.APPROVED

        # The next tick reconciles the approved draft once the store recovers
        store.crashing = False
        report = await pipeline.tick()
        assert report.reconciled == 1
        assert len(await pipeline.queue_items(draft.id)) == 3
        assert (await pipeline.get_draft(draft.id)).status == DraftStatus.PUBLISHED

    @pytest.mark.asyncio
    async def test_concurrent_ticks_never_double_dispatch(self, pipeline, connect, publisher):
        await connect("u1", LI, TW, TH)
        draft_id = await _submit(pipeline, [LI, TW, TH])

        first, second = await asyncio.gather(pipeline.tick(), pipeline.tick())

        dispatched = first.dispatched_ids + second.dispatched_ids
        assert len(dispatched) == len(set(dispatched)) == 3
        assert len(publisher.calls) == 3
        assert len(await pipeline.published_records(draft_id)) == 3

    @pytest.mark.asyncio
    async def test_concurrency_limit_of_one_still_drains(self, make_pipeline, connect):
        pipeline = make_pipeline(max_concurrency=1)
        await connect("u1", LI, TW, target=pipeline)
        draft_id = await _submit(pipeline, [LI, TW])

        report = await pipeline.tick()

        assert report.completed == 2
        assert (await pipeline.get_draft(draft_id)).status == DraftStatus.PUBLISHED


# =========================================================================
# Fan-out
# =========================================================================


class TestFanOut:

    @pytest.mark.asyncio
    async def test_future_schedule_waits(self, pipeline, connect, clock, publisher):
        await connect("u1", LI)
        draft_id = await _submit(pipeline, [LI], scheduled_at=clock.now + timedelta(hours=1))

        assert (await pipeline.get_draft(draft_id)).status == DraftStatus.SCHEDULED
        assert (await pipeline.tick()).claimed == 0

        clock.advance(hours=1)
        await pipeline.tick()

        assert publisher.calls
        assert (await pipeline.get_draft(draft_id)).status == DraftStatus.PUBLISHED

    @pytest.mark.asyncio
    async def test_requires_approved_draft(self, pipeline, connect):
        await connect("u1", LI)
        draft = await pipeline.create_draft("u1", "Hi", [LI])
        with pytest.raises(InvalidStateError):
            await pipeline.scheduler.fan_out(draft)

    @pytest.mark.asyncio
    async def test_requires_connected_integrations(self, pipeline, store):
        draft = await store.insert_draft(
            SocialDraft(
                id="d1",
                user_id="u1",
                content_text="Hi",
                target_platforms=[LI],
                status=DraftStatus.APPROVED,
            )
        )
        with pytest.raises(ValidationError, match="linkedin"):
            await pipeline.scheduler.fan_out(draft)
        assert await store.list_queue_items(draft_id="d1") == []

    @pytest.mark.asyncio
    async def test_cancel_during_fan_out_leaves_no_pending_work(self, make_pipeline, connect):
        pipeline = make_pipeline(store=CancelDuringFanOutStore())
        await connect("u1", LI, TW, target=pipeline)
        draft = await pipeline.create_draft("u1", "Hi", [LI, TW], requires_approval=False)

        await pipeline.submit_draft(draft.id)

        items = await pipeline.queue_items(draft.id)
        assert {i.status for i in items} == {QueueItemStatus.CANCELLED}
        assert (await pipeline.tick()).claimed == 0


# =========================================================================
# Cancellation
# =========================================================================


class TestCancellation:

    @pytest.mark.asyncio
    async def test_in_flight_result_is_discarded(self, make_pipeline, connect):
        gated = GatedPublisher()
        pipeline = make_pipeline(publisher=gated)
        await connect("u1", LI, target=pipeline)
        draft_id = await _submit(pipeline, [LI])

        tick = asyncio.create_task(pipeline.tick())
        await asyncio.wait_for(gated.started.wait(), timeout=1)
        await pipeline.cancel(draft_id, "u1")
        gated.release.set()
        report = await tick

        item = (await pipeline.queue_items(draft_id))[0]
        assert report.discarded == 1
        assert report.completed == 0
        assert item.status == QueueItemStatus.CANCELLED
        assert item.published_id is None
        assert await pipeline.published_records(draft_id) == []
        assert (await pipeline.get_draft(draft_id)).status == DraftStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_keeps_completed_items(self, pipeline, connect, publisher):
        await connect("u1", LI, TW)
        publisher.scripts[TW] = [_retryable()]
        draft_id = await _submit(pipeline, [LI, TW])
        await pipeline.tick()

        await pipeline.cancel(draft_id, "u1")

        items = await _items_by_platform(pipeline, draft_id)
        assert items[LI].status == QueueItemStatus.COMPLETED
        assert items[TW].status == QueueItemStatus.CANCELLED
        assert items[TW].next_retry_at is None
        assert len(await pipeline.published_records(draft_id)) == 1

    @pytest.mark.asyncio
    async def test_cancel_single_item(self, pipeline, connect, clock):
        await connect("u1", LI, TW)
        draft_id = await _submit(pipeline, [LI, TW], scheduled_at=clock.now + timedelta(hours=1))
        items = await _items_by_platform(pipeline, draft_id)

        await pipeline.cancel(items[TW].id, "u1")
        clock.advance(hours=1)
        await pipeline.tick()

        items = await _items_by_platform(pipeline, draft_id)
        assert items[TW].status == QueueItemStatus.CANCELLED
        assert items[LI].status == QueueItemStatus.COMPLETED
        assert (await pipeline.get_draft(draft_id)).status == DraftStatus.PUBLISHED

    @pytest.mark.asyncio
    async def test_cancelling_every_item_cancels_draft(self, pipeline, connect, clock):
        await connect("u1", LI, TW)
        draft_id = await _submit(pipeline, [LI, TW], scheduled_at=clock.now + timedelta(hours=1))

        for item in await pipeline.queue_items(draft_id):
            await pipeline.cancel(item.id, "u1")

        assert (await pipeline.get_draft(draft_id)).status == DraftStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_terminal_draft(self, pipeline, connect):
        await connect("u1", LI)
        draft_id = await _submit(pipeline, [LI])
        await pipeline.tick()
        with pytest.raises(InvalidStateError):
            await pipeline.cancel(draft_id, "u1")

    @pytest.mark.asyncio
    async def test_cancel_requires_owner(self, pipeline, connect):
        await connect("u1", LI)
        draft_id = await _submit(pipeline, [LI])
        with pytest.raises(PermissionDeniedError):
            await pipeline.cancel(draft_id, "u2")

    @pytest.mark.asyncio
    async def test_cancel_unknown_target(self, pipeline):
        with pytest.raises(NotFoundError):
            await pipeline.cancel("nope", "u1")


# =========================================================================
# Credentials, timeouts and recovery
# =========================================================================


class TestFailureHandling:

    @pytest.mark.asyncio
    async def test_expired_credentials_flag_integration(self, pipeline, connect, publisher):
        (integration,) = await connect("u1", LI)
        publisher.scripts[LI] = [
            PublishError("HTTP 401: token expired", kind=PublishFailureKind.CREDENTIALS_EXPIRED)
        ]
        draft_id = await _submit(pipeline, [LI])

        await pipeline.tick()

        item = (await pipeline.queue_items(draft_id))[0]
        flagged = await pipeline.integrations.get(integration.id)
        assert item.status == QueueItemStatus.FAILED
        assert flagged.status == IntegrationStatus.EXPIRED
        assert flagged.error_message == "HTTP 401: token expired"

        # New drafts are blocked until the user reconnects
        with pytest.raises(ValidationError, match="no connected integration"):
            await _submit(pipeline, [LI])

    @pytest.mark.asyncio
    async def test_revoked_permission_flags_error(self, pipeline, connect, publisher):
        (integration,) = await connect("u1", LI)
        publisher.scripts[LI] = [
            PublishError("HTTP 403: scope removed", kind=PublishFailureKind.PERMISSION_REVOKED)
        ]
        await _submit(pipeline, [LI])

        await pipeline.tick()

        assert (await pipeline.integrations.get(integration.id)).status == IntegrationStatus.ERROR

    @pytest.mark.asyncio
    async def test_integration_expired_before_dispatch(self, pipeline, connect, publisher):
        (integration,) = await connect("u1", LI)
        draft_id = await _submit(pipeline, [LI])
        await pipeline.integrations.mark_expired(integration.id, "refresh failed")

        await pipeline.tick()

        item = (await pipeline.queue_items(draft_id))[0]
        assert publisher.calls == []
        assert item.status == QueueItemStatus.FAILED
        assert item.last_error == "Integration is expired"
        assert (await pipeline.integrations.get(integration.id)).error_message == "refresh failed"

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self, make_pipeline, connect, clock):
        pipeline = make_pipeline(publisher=SlowPublisher(), dispatch_timeout_seconds=0.05)
        await connect("u1", LI, target=pipeline)
        draft_id = await _submit(pipeline, [LI])

        report = await pipeline.tick()

        item = (await pipeline.queue_items(draft_id))[0]
        assert report.retried == 1
        assert item.status == QueueItemStatus.PENDING
        assert item.retry_count == 1
        assert "timed out" in item.last_error

    @pytest.mark.asyncio
    async def test_stuck_item_is_recovered(self, pipeline, connect, store, clock):
        await connect("u1", LI)
        draft_id = await _submit(pipeline, [LI])
        item = (await pipeline.queue_items(draft_id))[0]
        # Simulate a worker that claimed the item and died
        await store.transition_queue_item(
            item.id,
            [QueueItemStatus.PENDING],
            {"status": QueueItemStatus.PROCESSING, "started_at": clock.now},
        )

        clock.advance(minutes=5)
        assert (await pipeline.tick()).recovered == 0

        clock.advance(minutes=6)
        report = await pipeline.tick()

        item = (await pipeline.queue_items(draft_id))[0]
        assert report.recovered == 1
        assert report.claimed == 0
        assert item.status == QueueItemStatus.PENDING
        assert item.retry_count == 1
        assert item.last_error.startswith("Stuck in processing")

    @pytest.mark.asyncio
    async def test_missing_publisher_is_not_supported(self, make_pipeline, connect):
        pipeline = make_pipeline()
        pipeline.scheduler.publishers.default = None
        await connect("u1", LI, target=pipeline)
        draft_id = await _submit(pipeline, [LI])

        await pipeline.tick()

        item = (await pipeline.queue_items(draft_id))[0]
        assert item.status == QueueItemStatus.FAILED
        assert item.last_error == "No publisher registered for linkedin"


# =========================================================================
# Manual retry
# =========================================================================


class TestManualRetry:

    @pytest.mark.asyncio
    async def test_retry_reopens_failed_draft(self, pipeline, connect, publisher):
        await connect("u1", LI)
        publisher.scripts[LI] = [_permanent()]
        draft_id = await _submit(pipeline, [LI])
        await pipeline.tick()
        item = (await pipeline.queue_items(draft_id))[0]

        requeued = await pipeline.retry_item(item.id, "u1")

        assert requeued.status == QueueItemStatus.PENDING
        assert requeued.retry_count == 0
        assert (await pipeline.get_draft(draft_id)).status == DraftStatus.PUBLISHING

        await pipeline.tick()
        assert (await pipeline.get_draft(draft_id)).status == DraftStatus.PUBLISHED

    @pytest.mark.asyncio
    async def test_retry_resets_exhausted_budget(self, pipeline, connect, publisher, clock):
        await connect("u1", LI)
        publisher.scripts[LI] = [_retryable() for _ in range(4)]
        draft_id = await _submit(pipeline, [LI])
        await _drain(pipeline, clock)
        item = (await pipeline.queue_items(draft_id))[0]
        assert item.retry_count == 3

        requeued = await pipeline.retry_item(item.id, "u1")
        assert requeued.retry_count == 0
        assert requeued.next_retry_at is None

    @pytest.mark.asyncio
    async def test_retry_only_failed_items(self, pipeline, connect):
        await connect("u1", LI)
        draft_id = await _submit(pipeline, [LI])
        item = (await pipeline.queue_items(draft_id))[0]
        with pytest.raises(InvalidStateError):
            await pipeline.retry_item(item.id, "u1")

    @pytest.mark.asyncio
    async def test_retry_refused_for_cancelled_draft(self, pipeline, connect, publisher):
        await connect("u1", LI, TW)
        publisher.scripts[LI] = [_permanent()]
        publisher.scripts[TW] = [_retryable()]
        draft_id = await _submit(pipeline, [LI, TW])
        await pipeline.tick()
        await pipeline.cancel(draft_id, "u1")
        items = await _items_by_platform(pipeline, draft_id)

        with pytest.raises(InvalidStateError):
            await pipeline.retry_item(items[LI].id, "u1")

    @pytest.mark.asyncio
    async def test_retry_requires_owner(self, pipeline, connect, publisher):
        await connect("u1", LI)
        publisher.scripts[LI] = [_permanent()]
        draft_id = await _submit(pipeline, [LI])
        await pipeline.tick()
        item = (await pipeline.queue_items(draft_id))[0]
        with pytest.raises(PermissionDeniedError):
            await pipeline.retry_item(item.id, "u2")


# =========================================================================
# Reconciliation, summary and loop
# =========================================================================


class TestReconcileAndLoop:

    @pytest.mark.asyncio
    async def test_reconcile_fans_out_orphaned_approved_draft(self, pipeline, connect, store):
        await connect("u1", LI)
        await store.insert_draft(
            SocialDraft(
                id="orphan",
                user_id="u1",
                content_text="Approved before a crash",
                target_platforms=[LI],
                status=DraftStatus.APPROVED,
            )
        )

        report = await pipeline.tick()

        assert report.reconciled == 1
        assert report.completed == 1
        assert (await pipeline.get_draft("orphan")).status == DraftStatus.PUBLISHED

    @pytest.mark.asyncio
    async def test_reconcile_fails_draft_without_integration(self, pipeline, store, clock, caplog):
        await store.insert_draft(
            SocialDraft(
                id="orphan",
                user_id="u1",
                content_text="Nobody connected",
                target_platforms=[LI],
                status=DraftStatus.APPROVED,
            )
        )

        report = await pipeline.tick()

        assert report.reconciled == 1
        assert (await pipeline.get_draft("orphan")).status == DraftStatus.FAILED
        assert await pipeline.queue_items("orphan") == []
        assert "without a connected integration: ['linkedin']" in caplog.text

        clock.advance(hours=1)
        assert (await pipeline.tick()).reconciled == 0
        assert (await pipeline.get_draft("orphan")).status == DraftStatus.FAILED

    @pytest.mark.asyncio
    async def test_scheduled_draft_is_finalised_through_publishing(self, pipeline, store, clock):
        due = clock.now - timedelta(minutes=5)
        await store.insert_draft(
            SocialDraft(
                id="late",
                user_id="u1",
                content_text="Went out before the draft caught up",
                target_platforms=[LI],
                status=DraftStatus.SCHEDULED,
                scheduled_at=due,
            )
        )
        await store.create_queue_items(
            [
                PublishQueueItem(
                    id="q-late",
                    user_id="u1",
                    draft_id="late",
                    integration_id="i1",
                    platform=LI,
                    scheduled_at=due,
                    status=QueueItemStatus.COMPLETED,
                )
            ]
        )

        # scheduled -> published is not an allowed transition
        assert await pipeline.scheduler.reconcile() == 1
        assert (await pipeline.get_draft("late")).status == DraftStatus.PUBLISHING

        assert await pipeline.scheduler.reconcile() == 1
        assert (await pipeline.get_draft("late")).status == DraftStatus.PUBLISHED

    @pytest.mark.asyncio
    async def test_queue_summary(self, pipeline, connect, publisher):
        await connect("u1", LI, TW)
        publisher.scripts[TW] = [_permanent()]
        await _submit(pipeline, [LI, TW])
        before = await pipeline.queue_summary("u1")
        await pipeline.tick()
        after = await pipeline.queue_summary("u1")

        assert before["pending"] == 2 and before["total"] == 2
        assert after["completed"] == 1 and after["failed"] == 1
        assert (await pipeline.queue_summary("someone-else"))["total"] == 0

    @pytest.mark.asyncio
    async def test_start_and_stop(self, make_pipeline, connect):
        pipeline = make_pipeline(tick_interval_seconds=0.01)
        await connect("u1", LI, target=pipeline)
        draft_id = await _submit(pipeline, [LI])

        loop_task = asyncio.create_task(pipeline.scheduler.start())
        await asyncio.sleep(0.05)
        assert pipeline.scheduler.is_running

        await pipeline.scheduler.stop()
        await asyncio.wait_for(loop_task, timeout=1)

        assert not pipeline.scheduler.is_running
        assert (await pipeline.get_draft(draft_id)).status == DraftStatus.PUBLISHED
