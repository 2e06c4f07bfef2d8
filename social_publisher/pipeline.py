"""
Publishing pipeline facade.

``PublishingPipeline`` wires the composer, approval gate, integration
registry, scheduler and ledger around one store and exposes the
operations the rest of the application calls:

    create_draft / update_draft / submit_draft
    approve / reject
    cancel / retry_item
    tick / refresh_metrics / queue_summary

Usage::

    store = MemoryStore()
    pipeline = PublishingPipeline(store, PublisherRegistry(default=DryRunPublisher()))
    await pipeline.integrations.connect("u1", Platform.LINKEDIN, ConnectionType.OAUTH, creds)
    draft = await pipeline.create_draft("u1", "Hello", [Platform.LINKEDIN], requires_approval=False)
    await pipeline.submit_draft(draft.id)
    await pipeline.tick()
"""

from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from social_publisher.approval import ApprovalDecision, ApprovalGate
from social_publisher.config import Settings, get_settings
from social_publisher.drafts import Composer
from social_publisher.exceptions import (
    DatabaseError,
    NotFoundError,
    PermissionDeniedError,
)
from social_publisher.integrations import IntegrationRegistry
from social_publisher.ledger import PublishLedger
from social_publisher.logging import ComponentLogger, LogComponent
from social_publisher.models import (
    ApproveCommand,
    DraftStatus,
    PublishQueueItem,
    RejectCommand,
    SocialDraft,
    SocialPublished,
)
from social_publisher.publishers.base import PublisherRegistry
from social_publisher.scheduling.publish_scheduler import PublishScheduler, TickReport
from social_publisher.store.base import SocialStore
from social_publisher.utils import utc_now


class PublishingPipeline:
    """Entry point for composing, approving and publishing posts."""

    def __init__(
        self,
        store: SocialStore,
        publishers: PublisherRegistry,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self.clock = clock

        self.integrations = IntegrationRegistry(store)
        self.composer = Composer(store, clock=clock)
        self.gate = ApprovalGate(store, self.settings, clock=clock)
        self.ledger = PublishLedger(store)
        self.scheduler = PublishScheduler(
            store,
            publishers,
            self.ledger,
            self.integrations,
            settings=self.settings,
            clock=clock,
        )
        self.log = ComponentLogger(LogComponent.PIPELINE)

    # -----------------------------------------------------------------
    # COMPOSITION
    # -----------------------------------------------------------------

    async def create_draft(
        self,
        user_id: str,
        content_text: str,
        target_platforms: Iterable[Any],
        **kwargs: Any,
    ) -> SocialDraft:
        return await self.composer.create(user_id, content_text, target_platforms, **kwargs)

    async def update_draft(self, draft_id: str, actor: str, **changes: Any) -> SocialDraft:
        return await self.composer.update(draft_id, actor, **changes)

    async def get_draft(self, draft_id: str) -> SocialDraft:
        return await self.composer.get(draft_id)

    async def submit_draft(self, draft_id: str, priority: int = 0) -> str:
        """
        Validate a draft and send it through the approval gate.

        Drafts that do not require approval are auto-approved by their
        owner and fanned out immediately.

        Returns:
            The draft id.

        Raises:
            ValidationError: Empty content or targets, platform limits
                exceeded, or a target without a connected integration.
            InvalidStateError: The draft is not in ``draft`` status.
        """
        draft = await self.composer.get(draft_id)
        publishable = await self.integrations.get_publishable(draft.user_id)
        self.composer.validate(draft, publishable)

        decision, draft = await self.gate.submit(draft)
        if decision == ApprovalDecision.AUTO_APPROVED:
            await self._fan_out(draft, priority)
        return draft.id

    # -----------------------------------------------------------------
    # APPROVAL
    # -----------------------------------------------------------------

    async def approve(self, draft_id: str, actor: str, priority: int = 0) -> None:
        """
        Approve a pending draft and fan it out.

        Raises:
            PermissionDeniedError: *actor* may not approve this draft.
            InvalidStateError: The draft is not ``pending_approval``.
            ValidationError: A target platform lost its connected
                integration; the draft stays ``pending_approval``.
        """
        draft = await self.gate.approve(
            ApproveCommand(draft_id=draft_id, actor=actor),
            check=self.scheduler.check_publishable,
        )
        await self._fan_out(draft, priority)

    async def reject(self, draft_id: str, actor: str, reason: str) -> None:
        await self.gate.reject(RejectCommand(draft_id=draft_id, actor=actor, reason=reason))

    async def _fan_out(self, draft: SocialDraft, priority: int) -> List[PublishQueueItem]:
        try:
            return await self.scheduler.fan_out(draft, priority)
        except DatabaseError:
            # A concurrent reconcile pass may already have fanned the draft out
            current = await self.composer.get(draft.id)
            if current.status != DraftStatus.APPROVED:
                return await self.store.list_queue_items(draft_id=draft.id)
            raise

    # -----------------------------------------------------------------
    # CANCELLATION AND RETRY
    # -----------------------------------------------------------------

    async def cancel(self, target_id: str, actor: str) -> None:
        """
        Cancel a draft, or a single queue item, by id.

        Raises:
            NotFoundError: *target_id* is neither a draft nor a queue item.
            PermissionDeniedError: *actor* does not own the draft.
            InvalidStateError: The target is already terminal.
        """
        draft = await self.store.get_draft(target_id)
        if draft is not None:
            self._require_owner(draft.user_id, actor, f"cancel draft {target_id}")
            await self.scheduler.cancel_draft(target_id, reason=f"Cancelled by {actor}")
            return

        item = await self.store.get_queue_item(target_id)
        if item is None:
            raise NotFoundError(f"No draft or queue item with id {target_id}")
        self._require_owner(item.user_id, actor, f"cancel queue item {target_id}")
        await self.scheduler.cancel_item(target_id, reason=f"Cancelled by {actor}")

    async def retry_item(self, queue_item_id: str, actor: str) -> PublishQueueItem:
        """Manually re-queue a failed item with its retry budget reset."""
        item = await self.store.get_queue_item(queue_item_id)
        if item is None:
            raise NotFoundError(f"Queue item {queue_item_id} not found")
        self._require_owner(item.user_id, actor, f"retry queue item {queue_item_id}")
        return await self.scheduler.retry_item(queue_item_id)

    def _require_owner(self, owner: str, actor: str, action: str) -> None:
        if actor != owner:
            raise PermissionDeniedError(actor, action)

    # -----------------------------------------------------------------
    # SCHEDULER AND LEDGER
    # -----------------------------------------------------------------

    async def tick(self) -> TickReport:
        return await self.scheduler.tick()

    async def refresh_metrics(self, published_id: str, metrics: Dict[str, int]) -> SocialPublished:
        return await self.ledger.refresh_metrics(published_id, metrics)

    async def queue_summary(self, user_id: Optional[str] = None) -> Dict[str, int]:
        return await self.scheduler.queue_summary(user_id)

    async def queue_items(self, draft_id: str) -> List[PublishQueueItem]:
        return await self.store.list_queue_items(draft_id=draft_id)

    async def published_records(self, draft_id: str) -> List[SocialPublished]:
        return await self.ledger.list_for_draft(draft_id)


__all__ = ["PublishingPipeline"]
