"""
Persistence contract for the publishing pipeline.

``SocialStore`` is the only seam between the pipeline and its table
store. Two implementations ship with the package:

- ``MemoryStore``: in-process, used by tests and dry runs.
- ``SupabaseStore``: the remote PostgREST tables.

Every method takes and returns model objects; row conversion is the
implementation's concern. Status changes that race with other writers
go through the compare-and-swap methods ``transition_draft`` and
``transition_queue_item``: they apply ``changes`` only if the current
status is one of ``expected_statuses`` and return the updated entity,
or ``None`` when the swap lost.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from social_publisher.models import (
    DraftStatus,
    IntegrationStatus,
    Platform,
    PublishQueueItem,
    QueueItemStatus,
    SocialDraft,
    SocialIntegration,
    SocialPublished,
)


class SocialStore(ABC):
    """Abstract table store for integrations, drafts, queue items and ledger."""

    # -----------------------------------------------------------------
    # INTEGRATIONS
    # -----------------------------------------------------------------

    @abstractmethod
    async def insert_integration(self, integration: SocialIntegration) -> SocialIntegration:
        ...

    @abstractmethod
    async def get_integration(self, integration_id: str) -> Optional[SocialIntegration]:
        ...

    @abstractmethod
    async def update_integration(
        self, integration_id: str, changes: Dict[str, Any]
    ) -> SocialIntegration:
        """Apply *changes* unconditionally.

        Raises:
            NotFoundError: If the integration does not exist.
        """

    @abstractmethod
    async def list_integrations(
        self,
        user_id: str,
        platform: Optional[Platform] = None,
        statuses: Optional[Iterable[IntegrationStatus]] = None,
    ) -> List[SocialIntegration]:
        ...

    # -----------------------------------------------------------------
    # DRAFTS
    # -----------------------------------------------------------------

    @abstractmethod
    async def insert_draft(self, draft: SocialDraft) -> SocialDraft:
        ...

    @abstractmethod
    async def get_draft(self, draft_id: str) -> Optional[SocialDraft]:
        ...

    @abstractmethod
    async def transition_draft(
        self,
        draft_id: str,
        expected_statuses: Iterable[DraftStatus],
        changes: Dict[str, Any],
    ) -> Optional[SocialDraft]:
        """Compare-and-swap update of a draft.

        Returns:
            The updated draft, or ``None`` if its status was not in
            *expected_statuses* (or it does not exist).
        """

    @abstractmethod
    async def list_drafts(
        self,
        statuses: Optional[Iterable[DraftStatus]] = None,
        user_id: Optional[str] = None,
    ) -> List[SocialDraft]:
        ...

    # -----------------------------------------------------------------
    # PUBLISH QUEUE
    # -----------------------------------------------------------------

    @abstractmethod
    async def create_queue_items(
        self, items: List[PublishQueueItem]
    ) -> List[PublishQueueItem]:
        """Insert a fan-out batch atomically: all items or none.

        Implementations assign ``sequence`` in list order.

        Raises:
            DatabaseError: If the batch could not be written. No item of
                the batch is visible afterwards.
        """

    @abstractmethod
    async def get_queue_item(self, item_id: str) -> Optional[PublishQueueItem]:
        ...

    @abstractmethod
    async def list_queue_items(
        self,
        draft_id: Optional[str] = None,
        user_id: Optional[str] = None,
        statuses: Optional[Iterable[QueueItemStatus]] = None,
    ) -> List[PublishQueueItem]:
        """List queue items ordered by ``sequence``."""

    @abstractmethod
    async def list_due_queue_items(self, now: datetime) -> List[PublishQueueItem]:
        """Pending items due at *now*, ordered by (priority, scheduled_at, sequence)."""

    @abstractmethod
    async def list_stuck_queue_items(self, started_before: datetime) -> List[PublishQueueItem]:
        """Items still ``processing`` that were claimed before *started_before*."""

    @abstractmethod
    async def transition_queue_item(
        self,
        item_id: str,
        expected_statuses: Iterable[QueueItemStatus],
        changes: Dict[str, Any],
    ) -> Optional[PublishQueueItem]:
        """Compare-and-swap update of a queue item.

        Returns:
            The updated item, or ``None`` if the swap lost.
        """

    # -----------------------------------------------------------------
    # LEDGER
    # -----------------------------------------------------------------

    @abstractmethod
    async def insert_published(self, record: SocialPublished) -> SocialPublished:
        ...

    @abstractmethod
    async def get_published(self, published_id: str) -> Optional[SocialPublished]:
        ...

    @abstractmethod
    async def update_published_metrics(
        self, published_id: str, metrics: Dict[str, int], updated_at: datetime
    ) -> SocialPublished:
        """Replace ``latest_metrics``; the only mutation a ledger row allows."""

    @abstractmethod
    async def list_published(
        self, draft_id: Optional[str] = None, user_id: Optional[str] = None
    ) -> List[SocialPublished]:
        ...

    # -----------------------------------------------------------------
    # EVENTS
    # -----------------------------------------------------------------

    async def save_event(self, event: Dict[str, Any]) -> None:
        """Persist a structured log event. Stores without an event sink ignore it."""
        return None


__all__ = ["SocialStore"]
