"""
Supabase-backed implementation of ``SocialStore``.

ALL remote table access of the pipeline goes through ``SupabaseStore``.
No direct Supabase calls should appear anywhere else in the codebase.

Usage::

    from social_publisher.store import SupabaseStore

    store = await SupabaseStore.create()
    draft = await store.get_draft(draft_id)

Tables:
    social_integrations, social_drafts, social_publish_queue,
    social_published, social_publish_events

Fan-out batches are written with a single bulk insert, which PostgREST
runs as one statement, so a batch is either fully visible or not at all.
Compare-and-swap transitions are conditional updates filtered on the
expected statuses; a non-empty ``result.data`` means the swap won.
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import httpx
from supabase import AsyncClient, create_async_client

from social_publisher.exceptions import DatabaseError, NotFoundError, ValidationError
from social_publisher.models import (
    DraftStatus,
    IntegrationStatus,
    Platform,
    PublishQueueItem,
    QueueItemStatus,
    SocialDraft,
    SocialIntegration,
    SocialPublished,
    serialize_changes,
    serialize_value,
)
from social_publisher.store.base import SocialStore
from social_publisher.utils import with_retry

logger = logging.getLogger(__name__)

INTEGRATIONS_TABLE = "social_integrations"
DRAFTS_TABLE = "social_drafts"
QUEUE_TABLE = "social_publish_queue"
PUBLISHED_TABLE = "social_published"
EVENTS_TABLE = "social_publish_events"

# Reads are idempotent and safe to repeat on a dropped connection
_read_retry = with_retry(
    max_attempts=3,
    base_delay=1.0,
    retryable_exceptions=(httpx.TransportError,),
)


# =============================================================================
# VALIDATION HELPERS
# =============================================================================


def validate_not_empty(value: Any, name: str) -> None:
    """Validate that *value* is not ``None`` or an empty string.

    Raises:
        ValidationError: If *value* is ``None`` or a blank string.
    """
    if value is None:
        raise ValidationError(f"{name} cannot be None")
    if isinstance(value, str) and not value.strip():
        raise ValidationError(f"{name} cannot be empty string")


def _status_values(statuses: Iterable[Any]) -> List[str]:
    return [s.value for s in statuses]


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass
class SupabaseConfig:
    """Supabase configuration loaded from environment variables.

    Attributes:
        url: The Supabase project URL (``SUPABASE_URL``).
        key: The service-role key for full server-side access
            (``SUPABASE_SERVICE_KEY``).
    """

    url: str
    key: str  # service_role key for full server-side access

    @classmethod
    def from_env(cls) -> "SupabaseConfig":
        """Create a config instance from environment variables.

        Raises:
            ValueError: If either variable is missing or empty.
        """
        url = os.environ.get("SUPABASE_URL")
        key = os.environ.get("SUPABASE_SERVICE_KEY")

        if not url or not key:
            raise ValueError(
                "SUPABASE_URL and SUPABASE_SERVICE_KEY must be set"
            )

        return cls(url=url, key=key)


# =============================================================================
# SUPABASE STORE
# =============================================================================


class SupabaseStore(SocialStore):
    """Async ``SocialStore`` over the Supabase PostgREST API.

    **Important:** Use the :meth:`create` factory method instead of
    ``__init__`` directly -- the underlying async client requires an
    ``await`` during initialisation.
    """

    def __init__(self, client: AsyncClient) -> None:
        """Private constructor.  Use :meth:`create` factory method."""
        self.client = client

    @classmethod
    async def create(
        cls, config: Optional[SupabaseConfig] = None
    ) -> "SupabaseStore":
        """Factory method to create an async :class:`SupabaseStore`.

        Args:
            config: Optional configuration.  When ``None``,
                :meth:`SupabaseConfig.from_env` is used.
        """
        config = config or SupabaseConfig.from_env()
        client = await create_async_client(config.url, config.key)
        return cls(client)

    # -----------------------------------------------------------------
    # INTEGRATIONS
    # -----------------------------------------------------------------

    async def insert_integration(self, integration: SocialIntegration) -> SocialIntegration:
        result = await (
            self.client.table(INTEGRATIONS_TABLE)
            .insert(integration.to_row())
            .execute()
        )
        if not result.data:
            raise DatabaseError("Insert succeeded but returned no data")
        return SocialIntegration.from_row(result.data[0])

    @_read_retry
    async def get_integration(self, integration_id: str) -> Optional[SocialIntegration]:
        validate_not_empty(integration_id, "integration_id")

        result = await (
            self.client.table(INTEGRATIONS_TABLE)
            .select("*")
            .eq("id", integration_id)
            .execute()
        )
        return SocialIntegration.from_row(result.data[0]) if result.data else None

    async def update_integration(
        self, integration_id: str, changes: Dict[str, Any]
    ) -> SocialIntegration:
        validate_not_empty(integration_id, "integration_id")

        result = await (
            self.client.table(INTEGRATIONS_TABLE)
            .update(serialize_changes(changes))
            .eq("id", integration_id)
            .execute()
        )
        if not result.data:
            raise NotFoundError(f"Integration {integration_id} not found")
        return SocialIntegration.from_row(result.data[0])

    @_read_retry
    async def list_integrations(
        self,
        user_id: str,
        platform: Optional[Platform] = None,
        statuses: Optional[Iterable[IntegrationStatus]] = None,
    ) -> List[SocialIntegration]:
        validate_not_empty(user_id, "user_id")

        query = self.client.table(INTEGRATIONS_TABLE).select("*").eq("user_id", user_id)
        if platform is not None:
            query = query.eq("platform", platform.value)
        if statuses is not None:
            query = query.in_("status", _status_values(statuses))
        result = await query.order("created_at", desc=False).execute()
        return [SocialIntegration.from_row(row) for row in result.data]

    # -----------------------------------------------------------------
    # DRAFTS
    # -----------------------------------------------------------------

    async def insert_draft(self, draft: SocialDraft) -> SocialDraft:
        result = await self.client.table(DRAFTS_TABLE).insert(draft.to_row()).execute()
        if not result.data:
            raise DatabaseError("Insert succeeded but returned no data")
        return SocialDraft.from_row(result.data[0])

    @_read_retry
    async def get_draft(self, draft_id: str) -> Optional[SocialDraft]:
        validate_not_empty(draft_id, "draft_id")

        result = await (
            self.client.table(DRAFTS_TABLE)
            .select("*")
            .eq("id", draft_id)
            .execute()
        )
        return SocialDraft.from_row(result.data[0]) if result.data else None

    async def transition_draft(
        self,
        draft_id: str,
        expected_statuses: Iterable[DraftStatus],
        changes: Dict[str, Any],
    ) -> Optional[SocialDraft]:
        validate_not_empty(draft_id, "draft_id")

        result = await (
            self.client.table(DRAFTS_TABLE)
            .update(serialize_changes(changes))
            .eq("id", draft_id)
            .in_("status", _status_values(expected_statuses))
            .execute()
        )
        # If data is returned, the update matched and the swap won
        return SocialDraft.from_row(result.data[0]) if result.data else None

    @_read_retry
    async def list_drafts(
        self,
        statuses: Optional[Iterable[DraftStatus]] = None,
        user_id: Optional[str] = None,
    ) -> List[SocialDraft]:
        query = self.client.table(DRAFTS_TABLE).select("*")
        if statuses is not None:
            query = query.in_("status", _status_values(statuses))
        if user_id is not None:
            query = query.eq("user_id", user_id)
        result = await query.order("created_at", desc=False).execute()
        return [SocialDraft.from_row(row) for row in result.data]

    # -----------------------------------------------------------------
    # PUBLISH QUEUE
    # -----------------------------------------------------------------

    async def create_queue_items(
        self, items: List[PublishQueueItem]
    ) -> List[PublishQueueItem]:
        if not items:
            return []

        rows = []
        for item in items:
            row = item.to_row()
            # sequence is an identity column assigned by the database
            row.pop("sequence", None)
            rows.append(row)

        try:
            result = await self.client.table(QUEUE_TABLE).insert(rows).execute()
        except Exception as exc:
            raise DatabaseError(f"Queue fan-out insert failed: {exc}") from exc
        if not result.data or len(result.data) != len(items):
            raise DatabaseError("Queue fan-out insert returned an incomplete batch")

        by_id = {row["id"]: PublishQueueItem.from_row(row) for row in result.data}
        return [by_id[item.id] for item in items]

    @_read_retry
    async def get_queue_item(self, item_id: str) -> Optional[PublishQueueItem]:
        validate_not_empty(item_id, "item_id")

        result = await (
            self.client.table(QUEUE_TABLE)
            .select("*")
            .eq("id", item_id)
            .execute()
        )
        return PublishQueueItem.from_row(result.data[0]) if result.data else None

    @_read_retry
    async def list_queue_items(
        self,
        draft_id: Optional[str] = None,
        user_id: Optional[str] = None,
        statuses: Optional[Iterable[QueueItemStatus]] = None,
    ) -> List[PublishQueueItem]:
        query = self.client.table(QUEUE_TABLE).select("*")
        if draft_id is not None:
            query = query.eq("draft_id", draft_id)
        if user_id is not None:
            query = query.eq("user_id", user_id)
        if statuses is not None:
            query = query.in_("status", _status_values(statuses))
        result = await query.order("sequence", desc=False).execute()
        return [PublishQueueItem.from_row(row) for row in result.data]

    @_read_retry
    async def list_due_queue_items(self, now: datetime) -> List[PublishQueueItem]:
        result = await (
            self.client.table(QUEUE_TABLE)
            .select("*")
            .eq("status", QueueItemStatus.PENDING.value)
            .lte("scheduled_at", serialize_value(now))
            .order("priority", desc=False)
            .order("scheduled_at", desc=False)
            .order("sequence", desc=False)
            .execute()
        )
        items = [PublishQueueItem.from_row(row) for row in result.data]
        # next_retry_at is nullable; filtering it locally keeps the query simple
        return sorted(
            (item for item in items if item.is_due(now)),
            key=lambda item: item.dispatch_key,
        )

    @_read_retry
    async def list_stuck_queue_items(self, started_before: datetime) -> List[PublishQueueItem]:
        result = await (
            self.client.table(QUEUE_TABLE)
            .select("*")
            .eq("status", QueueItemStatus.PROCESSING.value)
            .lt("started_at", serialize_value(started_before))
            .order("sequence", desc=False)
            .execute()
        )
        return [PublishQueueItem.from_row(row) for row in result.data]

    async def transition_queue_item(
        self,
        item_id: str,
        expected_statuses: Iterable[QueueItemStatus],
        changes: Dict[str, Any],
    ) -> Optional[PublishQueueItem]:
        validate_not_empty(item_id, "item_id")

        result = await (
            self.client.table(QUEUE_TABLE)
            .update(serialize_changes(changes))
            .eq("id", item_id)
            .in_("status", _status_values(expected_statuses))
            .execute()
        )
        return PublishQueueItem.from_row(result.data[0]) if result.data else None

    # -----------------------------------------------------------------
    # LEDGER
    # -----------------------------------------------------------------

    async def insert_published(self, record: SocialPublished) -> SocialPublished:
        result = await (
            self.client.table(PUBLISHED_TABLE)
            .insert(record.to_row())
            .execute()
        )
        if not result.data:
            raise DatabaseError("Insert succeeded but returned no data")
        return SocialPublished.from_row(result.data[0])

    @_read_retry
    async def get_published(self, published_id: str) -> Optional[SocialPublished]:
        validate_not_empty(published_id, "published_id")

        result = await (
            self.client.table(PUBLISHED_TABLE)
            .select("*")
            .eq("id", published_id)
            .execute()
        )
        return SocialPublished.from_row(result.data[0]) if result.data else None

    async def update_published_metrics(
        self, published_id: str, metrics: Dict[str, int], updated_at: datetime
    ) -> SocialPublished:
        validate_not_empty(published_id, "published_id")

        result = await (
            self.client.table(PUBLISHED_TABLE)
            .update({
                "latest_metrics": dict(metrics),
                "metrics_updated_at": serialize_value(updated_at),
            })
            .eq("id", published_id)
            .execute()
        )
        if not result.data:
            raise NotFoundError(f"Published record {published_id} not found")
        return SocialPublished.from_row(result.data[0])

    @_read_retry
    async def list_published(
        self, draft_id: Optional[str] = None, user_id: Optional[str] = None
    ) -> List[SocialPublished]:
        query = self.client.table(PUBLISHED_TABLE).select("*")
        if draft_id is not None:
            query = query.eq("draft_id", draft_id)
        if user_id is not None:
            query = query.eq("user_id", user_id)
        result = await query.order("published_at", desc=False).execute()
        return [SocialPublished.from_row(row) for row in result.data]

    # -----------------------------------------------------------------
    # EVENTS
    # -----------------------------------------------------------------

    async def save_event(self, event: Dict[str, Any]) -> None:
        await self.client.table(EVENTS_TABLE).insert(event).execute()


__all__ = [
    "SupabaseConfig",
    "SupabaseStore",
    "validate_not_empty",
    "INTEGRATIONS_TABLE",
    "DRAFTS_TABLE",
    "QUEUE_TABLE",
    "PUBLISHED_TABLE",
    "EVENTS_TABLE",
]
