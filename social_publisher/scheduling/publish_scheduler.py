"""
Publish scheduler: fan-out, dispatch, retry and draft aggregation.

``PublishScheduler`` owns the lifecycle of ``PublishQueueItem`` rows and
drives drafts from ``approved``/``scheduled`` to a terminal status.

One ``tick()``:
    1. Recovers items stuck in ``processing`` (crashed workers).
    2. Reconciles drafts whose status disagrees with their items.
    3. Selects due items ordered by (priority, scheduled_at, sequence),
       claims each one with a pending -> processing compare-and-swap and
       hands it to a worker, bounded by ``max_concurrency``.
    4. Waits for its workers and returns a ``TickReport``.

Because every pickup is a compare-and-swap, ``tick()`` is safe to call
repeatedly or concurrently: an item is dispatched by exactly one caller.
A result that arrives for an item which is no longer ``processing``
(cancelled meanwhile) is discarded without a ledger write.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from social_publisher.config import Settings, get_settings
from social_publisher.exceptions import (
    DatabaseError,
    InvalidStateError,
    NotFoundError,
    PublishError,
    PublishFailureKind,
    SocialPublisherError,
    ValidationError,
)
from social_publisher.integrations import IntegrationRegistry
from social_publisher.ledger import PublishLedger
from social_publisher.logging import ComponentLogger, LogComponent
from social_publisher.models import (
    DraftStatus,
    IntegrationStatus,
    Platform,
    PublishQueueItem,
    PublishResult,
    QueueItemStatus,
    SocialDraft,
    SocialIntegration,
)
from social_publisher.publishers.base import PublisherRegistry
from social_publisher.scheduling.draft_state import (
    CANCELLABLE_ITEM_STATUSES,
    aggregate_draft_status,
    require_transition,
    sources_for,
)
from social_publisher.scheduling.retry_policy import RetryPolicy
from social_publisher.store.base import SocialStore
from social_publisher.utils import generate_id, utc_now

logger = logging.getLogger(__name__)

# Draft statuses whose final status is still derived from the queue
_AGGREGATING_STATUSES = (DraftStatus.SCHEDULED, DraftStatus.PUBLISHING)


@dataclass
class TickReport:
    """Counters for one scheduler pass."""

    started_at: datetime
    recovered: int = 0
    reconciled: int = 0
    selected: int = 0
    claimed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    discarded: int = 0
    dispatched_ids: List[str] = field(default_factory=list)


class PublishScheduler:
    """Drives queue items through pending -> processing -> terminal.

    Args:
        store: Persistence for drafts, items and integrations.
        publishers: Platform -> publisher lookup.
        ledger: Ledger that records successful deliveries.
        integrations: Registry used to read credentials and to flag
            integrations after credential failures.
        settings: Scheduler settings; defaults to ``get_settings()``.
        clock: Source of "now"; injectable for tests.
    """

    def __init__(
        self,
        store: SocialStore,
        publishers: PublisherRegistry,
        ledger: PublishLedger,
        integrations: IntegrationRegistry,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.publishers = publishers
        self.ledger = ledger
        self.integrations = integrations
        self.settings = settings or get_settings()
        self.clock = clock
        self.retry_policy = RetryPolicy.from_settings(self.settings)
        self.log = ComponentLogger(LogComponent.SCHEDULER)

        self._semaphore = asyncio.Semaphore(self.settings.max_concurrency)
        self._running: bool = False

    # ================================================================
    # FAN-OUT
    # ================================================================

    async def check_publishable(self, draft: SocialDraft) -> Dict[Platform, SocialIntegration]:
        """
        Connected integrations for every target platform of *draft*.

        Raises:
            ValidationError: No target platforms, or a target platform has
                no connected integration.
        """
        if not draft.target_platforms:
            raise ValidationError(f"Draft {draft.id} has no target platforms")

        publishable = await self.integrations.get_publishable(draft.user_id)
        missing = [p.value for p in draft.target_platforms if p not in publishable]
        if missing:
            raise ValidationError(
                f"Draft {draft.id} targets platforms without a connected integration: {missing}"
            )
        return publishable

    async def fan_out(self, draft: SocialDraft, priority: int = 0) -> List[PublishQueueItem]:
        """
        Create one queue item per target platform of an approved draft.

        The batch is written atomically. Afterwards the draft moves to
        ``scheduled`` (future ``scheduled_at``) or ``publishing``.

        Args:
            draft: Draft in ``approved`` status.
            priority: Dispatch priority; lower is sooner.

        Returns:
            The created items, or an empty list if the draft was
            cancelled while the batch was being written.

        Raises:
            InvalidStateError: The draft is not ``approved``.
            ValidationError: A target platform has no connected integration.
        """
        if draft.status != DraftStatus.APPROVED:
            raise InvalidStateError(draft.id, draft.status.value, "'approved'")
        publishable = await self.check_publishable(draft)

        now = self.clock()
        scheduled_at = draft.scheduled_at or now
        target = DraftStatus.SCHEDULED if scheduled_at > now else DraftStatus.PUBLISHING
        require_transition(draft.id, draft.status, target)
        items = [
            PublishQueueItem(
                id=generate_id(),
                user_id=draft.user_id,
                draft_id=draft.id,
                integration_id=publishable[platform].id,
                platform=platform,
                scheduled_at=scheduled_at,
                status=QueueItemStatus.PENDING,
                priority=priority,
                retry_count=0,
                max_retries=self.settings.max_retries_for(platform),
                created_at=now,
            )
            for platform in draft.target_platforms
        ]
        items = await self.store.create_queue_items(items)

        moved = await self.store.transition_draft(draft.id, [draft.status], {"status": target})
        if moved is None:
            # Cancelled while the batch was written: no work may survive
            for item in items:
                await self.store.transition_queue_item(
                    item.id,
                    CANCELLABLE_ITEM_STATUSES,
                    {"status": QueueItemStatus.CANCELLED, "completed_at": now},
                )
            await self.log.warning("Draft left 'approved' during fan-out", draft_id=draft.id)
            return []

        await self.log.info(
            f"Fanned out to {len(items)} platform(s), draft -> {target.value}",
            draft_id=draft.id,
            data={"platforms": [i.platform.value for i in items], "priority": priority},
        )
        return items

    # ================================================================
    # DISPATCH
    # ================================================================

    async def tick(self) -> TickReport:
        """Run one recovery, reconciliation and dispatch pass."""
        now = self.clock()
        report = TickReport(started_at=now)

        report.recovered = await self.recover_stuck_items(now)
        report.reconciled = await self.reconcile(now)

        due = await self.store.list_due_queue_items(now)
        report.selected = len(due)
        if due:
            logger.info("[SCHEDULER] Found %d queue items due for publishing", len(due))

        tasks: List["asyncio.Task[None]"] = []
        for item in due:
            await self._semaphore.acquire()
            try:
                claimed = await self._claim(item)
            except Exception:
                self._semaphore.release()
                logger.exception("[SCHEDULER] Failed to claim queue item %s", item.id)
                continue

            if claimed is None:
                self._semaphore.release()
                logger.debug("[SCHEDULER] Queue item %s already claimed, skipping", item.id)
                continue

            report.claimed += 1
            report.dispatched_ids.append(claimed.id)
            tasks.append(asyncio.create_task(self._run_worker(claimed, report)))

        if tasks:
            async with self.log.timed(f"Dispatch of {len(tasks)} item(s)"):
                await asyncio.gather(*tasks)
        return report

    async def _claim(self, item: PublishQueueItem) -> Optional[PublishQueueItem]:
        """Atomically take a pending item; ``None`` if another caller won."""
        claimed = await self.store.transition_queue_item(
            item.id,
            [QueueItemStatus.PENDING],
            {
                "status": QueueItemStatus.PROCESSING,
                "started_at": self.clock(),
                "next_retry_at": None,
            },
        )
        if claimed is not None:
            # First pickup of a scheduled draft starts its publishing phase
            await self.store.transition_draft(
                claimed.draft_id,
                sources_for(DraftStatus.PUBLISHING, among=[DraftStatus.SCHEDULED]),
                {"status": DraftStatus.PUBLISHING},
            )
        return claimed

    async def _run_worker(self, item: PublishQueueItem, report: TickReport) -> None:
        try:
            await self._dispatch(item, report)
        except Exception:
            # Sibling items must keep running whatever happens to this one
            logger.exception("[SCHEDULER] Worker for queue item %s crashed", item.id)
        finally:
            self._semaphore.release()

    async def _dispatch(self, item: PublishQueueItem, report: TickReport) -> None:
        draft = await self.store.get_draft(item.draft_id)
        if draft is None:
            await self._handle_failure(
                item,
                PublishError(f"Draft {item.draft_id} not found", kind=PublishFailureKind.INVALID_REQUEST),
                report,
            )
            return

        content = draft.content_for(item.platform)
        media = list(draft.media_attachments)

        try:
            integration = await self.store.get_integration(item.integration_id)
            if integration is None:
                raise PublishError(
                    f"Integration {item.integration_id} not found",
                    kind=PublishFailureKind.INVALID_REQUEST,
                )
            if integration.status != IntegrationStatus.CONNECTED:
                raise PublishError(
                    f"Integration is {integration.status.value}",
                    kind=PublishFailureKind.CREDENTIALS_EXPIRED,
                )

            publisher = self.publishers.get(item.platform)
            await self.log.debug(
                f"Publishing to {item.platform.value} (attempt {item.retry_count + 1})",
                draft_id=item.draft_id,
                queue_item_id=item.id,
                platform=item.platform.value,
            )
            result = await asyncio.wait_for(
                publisher.publish(item.platform, dict(integration.credentials), content, media),
                timeout=self.settings.dispatch_timeout_seconds,
            )
        except PublishError as exc:
            await self._handle_failure(item, exc, report)
            return
        except asyncio.TimeoutError:
            error = PublishError(
                f"Publish call timed out after {self.settings.dispatch_timeout_seconds:g}s",
                kind=PublishFailureKind.TIMEOUT,
            )
            await self._handle_failure(item, error, report)
            return
        except Exception as exc:
            error = PublishError(
                f"Unexpected {type(exc).__name__}: {exc}",
                kind=PublishFailureKind.TRANSIENT,
            )
            await self._handle_failure(item, error, report)
            return

        await self._handle_success(item, result, content, media, report)

    # ================================================================
    # RESULT HANDLING
    # ================================================================

    async def _handle_success(
        self,
        item: PublishQueueItem,
        result: PublishResult,
        content: str,
        media: list,
        report: TickReport,
    ) -> None:
        now = self.clock()
        published_id = generate_id()
        completed = await self.store.transition_queue_item(
            item.id,
            [QueueItemStatus.PROCESSING],
            {
                "status": QueueItemStatus.COMPLETED,
                "completed_at": now,
                "published_id": published_id,
                "last_error": None,
            },
        )
        if completed is None:
            report.discarded += 1
            await self.log.warning(
                f"Discarded {item.platform.value} result, item no longer processing",
                draft_id=item.draft_id,
                queue_item_id=item.id,
                platform=item.platform.value,
                data={"platform_post_id": result.platform_post_id},
            )
            return

        report.completed += 1
        try:
            await self.ledger.record_success(
                completed, result, content, media, published_at=now, published_id=published_id
            )
        except SocialPublisherError as exc:
            await self.log.error(
                "Ledger write failed for completed item",
                error=exc,
                draft_id=item.draft_id,
                queue_item_id=item.id,
                platform=item.platform.value,
            )

        await self.log.info(
            f"Published to {item.platform.value} (post_id={result.platform_post_id})",
            draft_id=item.draft_id,
            queue_item_id=item.id,
            platform=item.platform.value,
        )
        await self.aggregate(item.draft_id)

    async def _handle_failure(
        self,
        item: PublishQueueItem,
        error: PublishError,
        report: TickReport,
    ) -> None:
        now = self.clock()

        if error.kind.is_credential_related:
            await self._flag_integration(item, error)

        decision = self.retry_policy.decide(error, item.retry_count, item.max_retries, now)
        if decision.retry:
            changes = {
                "status": QueueItemStatus.PENDING,
                "retry_count": decision.retry_count,
                "last_error": decision.reason,
                "next_retry_at": decision.next_retry_at,
                "started_at": None,
            }
        else:
            changes = {
                "status": QueueItemStatus.FAILED,
                "last_error": decision.reason,
                "completed_at": now,
                "next_retry_at": None,
            }

        updated = await self.store.transition_queue_item(
            item.id, [QueueItemStatus.PROCESSING], changes
        )
        if updated is None:
            report.discarded += 1
            await self.log.warning(
                f"Discarded {item.platform.value} failure, item no longer processing",
                draft_id=item.draft_id,
                queue_item_id=item.id,
                platform=item.platform.value,
            )
            return

        if decision.retry:
            report.retried += 1
            await self.log.warning(
                f"{item.platform.value} failed ({error.kind.value}), retry "
                f"{decision.retry_count}/{item.max_retries} at {decision.next_retry_at.isoformat()}",
                draft_id=item.draft_id,
                queue_item_id=item.id,
                platform=item.platform.value,
                data={"reason": decision.reason},
            )
            return

        report.failed += 1
        await self.log.error(
            f"{item.platform.value} failed permanently ({error.kind.value}): {decision.reason}",
            draft_id=item.draft_id,
            queue_item_id=item.id,
            platform=item.platform.value,
        )
        await self.aggregate(item.draft_id)

    async def _flag_integration(self, item: PublishQueueItem, error: PublishError) -> None:
        integration = await self.store.get_integration(item.integration_id)
        if integration is None or integration.status != IntegrationStatus.CONNECTED:
            return
        if error.kind == PublishFailureKind.CREDENTIALS_EXPIRED:
            await self.integrations.mark_expired(integration.id, error.reason)
        else:
            await self.integrations.mark_error(integration.id, error.reason)

    async def aggregate(self, draft_id: str) -> Optional[DraftStatus]:
        """
        Re-derive a draft's final status from its items.

        Returns:
            The new draft status if the draft was finalised, else ``None``.
        """
        items = await self.store.list_queue_items(draft_id=draft_id)
        status = aggregate_draft_status(items, self.settings.aggregate_policy)
        if status is None:
            return None

        moved = await self.store.transition_draft(
            draft_id, sources_for(status, among=_AGGREGATING_STATUSES), {"status": status}
        )
        if moved is None:
            return None

        await self.log.info(f"Draft finalised as {status.value}", draft_id=draft_id)
        return status

    # ================================================================
    # CANCELLATION AND MANUAL RETRY
    # ================================================================

    async def cancel_draft(self, draft_id: str, reason: str = "Cancelled") -> SocialDraft:
        """
        Cancel a non-terminal draft and every pending or in-flight item.

        In-flight publish calls are not interrupted; their results are
        discarded. Completed items stay completed.

        Raises:
            NotFoundError: Unknown draft.
            InvalidStateError: The draft is already terminal.
        """
        cancelled = await self.store.transition_draft(
            draft_id, sources_for(DraftStatus.CANCELLED), {"status": DraftStatus.CANCELLED}
        )
        if cancelled is None:
            draft = await self.store.get_draft(draft_id)
            if draft is None:
                raise NotFoundError(f"Draft {draft_id} not found")
            raise InvalidStateError(draft_id, draft.status.value, "a non-terminal status")

        now = self.clock()
        count = 0
        for item in await self.store.list_queue_items(
            draft_id=draft_id, statuses=CANCELLABLE_ITEM_STATUSES
        ):
            updated = await self.store.transition_queue_item(
                item.id,
                CANCELLABLE_ITEM_STATUSES,
                {
                    "status": QueueItemStatus.CANCELLED,
                    "completed_at": now,
                    "next_retry_at": None,
                    "last_error": reason,
                },
            )
            if updated is not None:
                count += 1

        await self.log.info(f"Draft cancelled ({count} item(s) cancelled)", draft_id=draft_id)
        return cancelled

    async def cancel_item(self, item_id: str, reason: str = "Cancelled") -> PublishQueueItem:
        """
        Cancel one pending or processing queue item.

        Raises:
            NotFoundError: Unknown item.
            InvalidStateError: The item is already terminal.
        """
        updated = await self.store.transition_queue_item(
            item_id,
            CANCELLABLE_ITEM_STATUSES,
            {
                "status": QueueItemStatus.CANCELLED,
                "completed_at": self.clock(),
                "next_retry_at": None,
                "last_error": reason,
            },
        )
        if updated is None:
            item = await self.store.get_queue_item(item_id)
            if item is None:
                raise NotFoundError(f"Queue item {item_id} not found")
            raise InvalidStateError(item_id, item.status.value, "'pending' or 'processing'")

        await self.log.info(
            f"{updated.platform.value} item cancelled",
            draft_id=updated.draft_id,
            queue_item_id=item_id,
            platform=updated.platform.value,
        )
        await self.aggregate(updated.draft_id)
        return updated

    async def retry_item(self, item_id: str) -> PublishQueueItem:
        """
        Manually re-enter a failed item into the queue with a fresh budget.

        A ``failed`` parent draft is reopened to ``publishing``.

        Raises:
            NotFoundError: Unknown item.
            InvalidStateError: The item is not ``failed`` or its draft was cancelled.
        """
        item = await self.store.get_queue_item(item_id)
        if item is None:
            raise NotFoundError(f"Queue item {item_id} not found")
        draft = await self.store.get_draft(item.draft_id)
        if draft is not None and draft.status == DraftStatus.CANCELLED:
            raise InvalidStateError(draft.id, draft.status.value, "a draft that is not cancelled")

        now = self.clock()
        updated = await self.store.transition_queue_item(
            item_id,
            [QueueItemStatus.FAILED],
            {
                "status": QueueItemStatus.PENDING,
                "retry_count": 0,
                "next_retry_at": None,
                "started_at": None,
                "completed_at": None,
                "scheduled_at": min(item.scheduled_at, now),
            },
        )
        if updated is None:
            current = await self.store.get_queue_item(item_id)
            raise InvalidStateError(
                item_id, current.status.value if current else "missing", "'failed'"
            )

        await self.store.transition_draft(
            item.draft_id,
            sources_for(DraftStatus.PUBLISHING, among=[DraftStatus.FAILED]),
            {"status": DraftStatus.PUBLISHING},
        )
        await self.log.info(
            f"{item.platform.value} item manually re-queued",
            draft_id=item.draft_id,
            queue_item_id=item_id,
            platform=item.platform.value,
        )
        return updated

    # ================================================================
    # RECOVERY AND RECONCILIATION
    # ================================================================

    async def recover_stuck_items(self, now: Optional[datetime] = None) -> int:
        """
        Treat items left in ``processing`` past the stuck timeout as timed out.

        Returns:
            Number of items recovered.
        """
        now = now or self.clock()
        cutoff = now - timedelta(minutes=self.settings.stuck_timeout_minutes)
        stuck = await self.store.list_stuck_queue_items(cutoff)
        if not stuck:
            return 0

        logger.warning("[SCHEDULER] Recovering %d stuck queue item(s)", len(stuck))
        report = TickReport(started_at=now)
        for item in stuck:
            error = PublishError(
                f"Stuck in processing since {item.started_at.isoformat() if item.started_at else 'unknown'}",
                kind=PublishFailureKind.TIMEOUT,
            )
            await self._handle_failure(item, error, report)
        return report.retried + report.failed

    async def reconcile(self, now: Optional[datetime] = None) -> int:
        """
        Repair drafts whose status disagrees with their queue items.

        - ``scheduled`` drafts whose time has come move to ``publishing``.
        - ``approved`` drafts without items are fanned out again, or
          failed when a target platform has no connected integration.
        - ``scheduled``/``publishing`` drafts whose items are all terminal
          are finalised.

        Returns:
            Number of drafts changed.
        """
        now = now or self.clock()
        changed = 0

        for draft in await self.store.list_drafts(statuses=[DraftStatus.APPROVED]):
            if await self.store.list_queue_items(draft_id=draft.id):
                continue
            try:
                if await self.fan_out(draft):
                    changed += 1
            except ValidationError as exc:
                if await self._fail_unpublishable(draft, str(exc)):
                    changed += 1
            except DatabaseError as exc:
                await self.log.warning(f"Cannot fan out approved draft: {exc}", draft_id=draft.id)

        for draft in await self.store.list_drafts(statuses=_AGGREGATING_STATUSES):
            if await self.aggregate(draft.id) is not None:
                changed += 1
                continue
            if (
                draft.status == DraftStatus.SCHEDULED
                and draft.scheduled_at is not None
                and draft.scheduled_at <= now
            ):
                moved = await self.store.transition_draft(
                    draft.id,
                    sources_for(DraftStatus.PUBLISHING, among=[DraftStatus.SCHEDULED]),
                    {"status": DraftStatus.PUBLISHING},
                )
                if moved is not None:
                    changed += 1

        return changed

    async def _fail_unpublishable(self, draft: SocialDraft, reason: str) -> bool:
        """Fail an approved draft that can never be fanned out."""
        failed = await self.store.transition_draft(
            draft.id,
            sources_for(DraftStatus.FAILED, among=[DraftStatus.APPROVED]),
            {"status": DraftStatus.FAILED},
        )
        if failed is None:
            return False
        await self.log.error(
            f"Approved draft failed without publishing: {reason}",
            draft_id=draft.id,
            data={"reason": reason},
        )
        return True

    # ================================================================
    # QUERIES
    # ================================================================

    async def queue_summary(self, user_id: Optional[str] = None) -> Dict[str, int]:
        """Count queue items per status."""
        summary = {status.value: 0 for status in QueueItemStatus}
        for item in await self.store.list_queue_items(user_id=user_id):
            summary[item.status.value] += 1
        summary["total"] = sum(summary.values())
        return summary

    # ================================================================
    # LIFECYCLE
    # ================================================================

    async def start(self) -> None:
        """Run ``tick()`` every ``tick_interval_seconds`` until :meth:`stop`."""
        self._running = True
        logger.info(
            "[SCHEDULER] Publish scheduler started (interval=%ss, concurrency=%d)",
            self.settings.tick_interval_seconds,
            self.settings.max_concurrency,
        )

        while self._running:
            try:
                report = await self.tick()
                if report.claimed:
                    logger.info(
                        "[SCHEDULER] Tick: %d claimed, %d completed, %d retried, %d failed",
                        report.claimed,
                        report.completed,
                        report.retried,
                        report.failed,
                    )
            except asyncio.CancelledError:
                logger.info("[SCHEDULER] Publish scheduler cancelled")
                break
            except Exception:
                logger.exception("[SCHEDULER] Unexpected error in publish scheduler loop")

            try:
                await asyncio.sleep(self.settings.tick_interval_seconds)
            except asyncio.CancelledError:
                logger.info("[SCHEDULER] Publish scheduler sleep cancelled")
                break

        self._running = False
        logger.info("[SCHEDULER] Publish scheduler stopped")

    async def stop(self) -> None:
        """Ask the loop in :meth:`start` to exit after the current tick."""
        self._running = False
        logger.info("[SCHEDULER] Publish scheduler stop requested")

    @property
    def is_running(self) -> bool:
        return self._running


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "TickReport",
    "PublishScheduler",
]
