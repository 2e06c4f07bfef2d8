"""
In-process implementation of ``SocialStore``.

All state lives in dicts guarded by a single ``asyncio.Lock``, so every
method, including the compare-and-swap transitions, is atomic with
respect to other coroutines on the same event loop. Entities are
deep-copied on the way in and out; callers never share mutable state
with the store.
"""

import asyncio
import copy
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from social_publisher.exceptions import DatabaseError, NotFoundError
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
from social_publisher.store.base import SocialStore
from social_publisher.utils import utc_now


class MemoryStore(SocialStore):
    """Dict-backed store with the same contract as the Supabase tables."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._integrations: Dict[str, SocialIntegration] = {}
        self._drafts: Dict[str, SocialDraft] = {}
        self._queue: Dict[str, PublishQueueItem] = {}
        self._published: Dict[str, SocialPublished] = {}
        self._events: List[Dict[str, Any]] = []
        self._sequence = 0

    @property
    def events(self) -> List[Dict[str, Any]]:
        return list(self._events)

    # -----------------------------------------------------------------
    # INTEGRATIONS
    # -----------------------------------------------------------------

    async def insert_integration(self, integration: SocialIntegration) -> SocialIntegration:
        async with self._lock:
            if integration.id in self._integrations:
                raise DatabaseError(f"Duplicate integration id {integration.id}")
            self._integrations[integration.id] = copy.deepcopy(integration)
            return copy.deepcopy(integration)

    async def get_integration(self, integration_id: str) -> Optional[SocialIntegration]:
        async with self._lock:
            found = self._integrations.get(integration_id)
            return copy.deepcopy(found) if found else None

    async def update_integration(
        self, integration_id: str, changes: Dict[str, Any]
    ) -> SocialIntegration:
        async with self._lock:
            current = self._integrations.get(integration_id)
            if current is None:
                raise NotFoundError(f"Integration {integration_id} not found")
            updated = replace(current, **{"updated_at": utc_now(), **changes})
            self._integrations[integration_id] = updated
            return copy.deepcopy(updated)

    async def list_integrations(
        self,
        user_id: str,
        platform: Optional[Platform] = None,
        statuses: Optional[Iterable[IntegrationStatus]] = None,
    ) -> List[SocialIntegration]:
        wanted = set(statuses) if statuses is not None else None
        async with self._lock:
            return [
                copy.deepcopy(i)
                for i in sorted(self._integrations.values(), key=lambda i: i.created_at)
                if i.user_id == user_id
                and (platform is None or i.platform == platform)
                and (wanted is None or i.status in wanted)
            ]

    # -----------------------------------------------------------------
    # DRAFTS
    # -----------------------------------------------------------------

    async def insert_draft(self, draft: SocialDraft) -> SocialDraft:
        async with self._lock:
            if draft.id in self._drafts:
                raise DatabaseError(f"Duplicate draft id {draft.id}")
            self._drafts[draft.id] = copy.deepcopy(draft)
            return copy.deepcopy(draft)

    async def get_draft(self, draft_id: str) -> Optional[SocialDraft]:
        async with self._lock:
            found = self._drafts.get(draft_id)
            return copy.deepcopy(found) if found else None

    async def transition_draft(
        self,
        draft_id: str,
        expected_statuses: Iterable[DraftStatus],
        changes: Dict[str, Any],
    ) -> Optional[SocialDraft]:
        expected = set(expected_statuses)
        async with self._lock:
            current = self._drafts.get(draft_id)
            if current is None or current.status not in expected:
                return None
            updated = replace(current, **{"updated_at": utc_now(), **copy.deepcopy(changes)})
            self._drafts[draft_id] = updated
            return copy.deepcopy(updated)

    async def list_drafts(
        self,
        statuses: Optional[Iterable[DraftStatus]] = None,
        user_id: Optional[str] = None,
    ) -> List[SocialDraft]:
        wanted = set(statuses) if statuses is not None else None
        async with self._lock:
            return [
                copy.deepcopy(d)
                for d in sorted(self._drafts.values(), key=lambda d: d.created_at)
                if (wanted is None or d.status in wanted)
                and (user_id is None or d.user_id == user_id)
            ]

    # -----------------------------------------------------------------
    # PUBLISH QUEUE
    # -----------------------------------------------------------------

    def _check_queue_item(self, item: PublishQueueItem, staged: Dict[str, PublishQueueItem]) -> None:
        """Reject an item that would break queue uniqueness."""
        if item.id in self._queue or item.id in staged:
            raise DatabaseError(f"Duplicate queue item id {item.id}")
        for other in list(self._queue.values()) + list(staged.values()):
            if other.draft_id == item.draft_id and other.platform == item.platform:
                raise DatabaseError(
                    f"Draft {item.draft_id} already has a {item.platform.value} queue item"
                )

    async def create_queue_items(
        self, items: List[PublishQueueItem]
    ) -> List[PublishQueueItem]:
        async with self._lock:
            staged: Dict[str, PublishQueueItem] = {}
            sequence = self._sequence
            for item in items:
                self._check_queue_item(item, staged)
                sequence += 1
                staged[item.id] = replace(copy.deepcopy(item), sequence=sequence)

            # Nothing is visible until every item passed
            self._queue.update(staged)
            self._sequence = sequence
            return [copy.deepcopy(staged[item.id]) for item in items]

    async def get_queue_item(self, item_id: str) -> Optional[PublishQueueItem]:
        async with self._lock:
            found = self._queue.get(item_id)
            return copy.deepcopy(found) if found else None

    async def list_queue_items(
        self,
        draft_id: Optional[str] = None,
        user_id: Optional[str] = None,
        statuses: Optional[Iterable[QueueItemStatus]] = None,
    ) -> List[PublishQueueItem]:
        wanted = set(statuses) if statuses is not None else None
        async with self._lock:
            return [
                copy.deepcopy(q)
                for q in sorted(self._queue.values(), key=lambda q: q.sequence)
                if (draft_id is None or q.draft_id == draft_id)
                and (user_id is None or q.user_id == user_id)
                and (wanted is None or q.status in wanted)
            ]

    async def list_due_queue_items(self, now: datetime) -> List[PublishQueueItem]:
        async with self._lock:
            due = [copy.deepcopy(q) for q in self._queue.values() if q.is_due(now)]
        return sorted(due, key=lambda q: q.dispatch_key)

    async def list_stuck_queue_items(self, started_before: datetime) -> List[PublishQueueItem]:
        async with self._lock:
            return [
                copy.deepcopy(q)
                for q in sorted(self._queue.values(), key=lambda q: q.sequence)
                if q.status == QueueItemStatus.PROCESSING
                and q.started_at is not None
                and q.started_at < started_before
            ]

    async def transition_queue_item(
        self,
        item_id: str,
        expected_statuses: Iterable[QueueItemStatus],
        changes: Dict[str, Any],
    ) -> Optional[PublishQueueItem]:
        expected = set(expected_statuses)
        async with self._lock:
            current = self._queue.get(item_id)
            if current is None or current.status not in expected:
                return None
            updated = replace(current, **copy.deepcopy(changes))
            self._queue[item_id] = updated
            return copy.deepcopy(updated)

    # -----------------------------------------------------------------
    # LEDGER
    # -----------------------------------------------------------------

    async def insert_published(self, record: SocialPublished) -> SocialPublished:
        async with self._lock:
            if record.id in self._published:
                raise DatabaseError(f"Duplicate published id {record.id}")
            self._published[record.id] = copy.deepcopy(record)
            return copy.deepcopy(record)

    async def get_published(self, published_id: str) -> Optional[SocialPublished]:
        async with self._lock:
            found = self._published.get(published_id)
            return copy.deepcopy(found) if found else None

    async def update_published_metrics(
        self, published_id: str, metrics: Dict[str, int], updated_at: datetime
    ) -> SocialPublished:
        async with self._lock:
            current = self._published.get(published_id)
            if current is None:
                raise NotFoundError(f"Published record {published_id} not found")
            updated = replace(
                current, latest_metrics=dict(metrics), metrics_updated_at=updated_at
            )
            self._published[published_id] = updated
            return copy.deepcopy(updated)

    async def list_published(
        self, draft_id: Optional[str] = None, user_id: Optional[str] = None
    ) -> List[SocialPublished]:
        async with self._lock:
            return [
                copy.deepcopy(p)
                for p in sorted(self._published.values(), key=lambda p: p.published_at)
                if (draft_id is None or p.draft_id == draft_id)
                and (user_id is None or p.user_id == user_id)
            ]

    # -----------------------------------------------------------------
    # EVENTS
    # -----------------------------------------------------------------

    async def save_event(self, event: Dict[str, Any]) -> None:
        async with self._lock:
            self._events.append(copy.deepcopy(event))


__all__ = ["MemoryStore"]
