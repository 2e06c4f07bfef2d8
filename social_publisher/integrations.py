"""
Integration registry: per-user, per-platform platform connections.

At most one integration with status other than ``disconnected`` exists per
(user, platform). A connect against an ``expired`` or ``error`` integration
replaces it: the old row is disconnected and a fresh row is created.
Integrations are never deleted.

Credential acquisition (OAuth redirects, key entry) happens outside this
package; ``connect`` receives the finished credential mapping.
"""

from typing import Any, Dict, List, Optional

from social_publisher.exceptions import (
    DuplicateConnectionError,
    IntegrationConnectionError,
    NotFoundError,
)
from social_publisher.logging import ComponentLogger, LogComponent
from social_publisher.models import (
    ConnectionType,
    IntegrationStatus,
    Platform,
    SocialIntegration,
)
from social_publisher.platforms import get_capability
from social_publisher.store.base import SocialStore
from social_publisher.utils import generate_id, utc_now

_BLOCKING_STATUSES = (IntegrationStatus.CONNECTED, IntegrationStatus.PENDING)
_REPLACEABLE_STATUSES = (IntegrationStatus.EXPIRED, IntegrationStatus.ERROR)


class IntegrationRegistry:
    """Create, query and update platform integrations."""

    def __init__(self, store: SocialStore) -> None:
        self.store = store
        self.log = ComponentLogger(LogComponent.INTEGRATIONS)

    async def connect(
        self,
        user_id: str,
        platform: Platform,
        method: ConnectionType,
        credentials: Dict[str, Any],
        scopes: Optional[List[str]] = None,
        username: Optional[str] = None,
    ) -> SocialIntegration:
        """
        Register a connected integration for (user, platform).

        Args:
            user_id: Owner of the new connection.
            platform: Platform being connected.
            method: OAuth or API key.
            credentials: Opaque credential mapping for the publisher.
            scopes: Granted OAuth scopes.
            username: Account handle on the platform.

        Returns:
            The new ``connected`` integration.

        Raises:
            IntegrationConnectionError: Platform inactive, method not
                supported, or credentials empty.
            DuplicateConnectionError: A connected or pending integration
                already exists.
        """
        capability = get_capability(platform)
        if not capability.is_active:
            raise IntegrationConnectionError(f"Platform {platform.value} is not active")
        if not capability.supports_connection(method):
            raise IntegrationConnectionError(
                f"Platform {platform.value} does not support {method.value} connections"
            )
        if not credentials:
            raise IntegrationConnectionError("Credentials must not be empty")

        existing = await self.store.list_integrations(
            user_id,
            platform=platform,
            statuses=_BLOCKING_STATUSES + _REPLACEABLE_STATUSES,
        )
        for integration in existing:
            if integration.status in _BLOCKING_STATUSES:
                raise DuplicateConnectionError(user_id, platform.value, integration.id)

        for integration in existing:
            await self.store.update_integration(
                integration.id, {"status": IntegrationStatus.DISCONNECTED}
            )
            await self.log.info(
                f"Replaced {integration.status.value} {platform.value} integration",
                data={"integration_id": integration.id, "user_id": user_id},
            )

        now = utc_now()
        integration = SocialIntegration(
            id=generate_id(),
            user_id=user_id,
            platform=platform,
            connection_type=method,
            status=IntegrationStatus.CONNECTED,
            credentials=dict(credentials),
            scopes=list(scopes) if scopes is not None else list(capability.oauth_scopes),
            platform_username=username,
            last_sync_at=now,
            created_at=now,
            updated_at=now,
        )
        integration = await self.store.insert_integration(integration)
        await self.log.info(
            f"Connected {platform.value} via {method.value}",
            data={"integration_id": integration.id, "user_id": user_id},
        )
        return integration

    async def get(self, integration_id: str) -> SocialIntegration:
        integration = await self.store.get_integration(integration_id)
        if integration is None:
            raise NotFoundError(f"Integration {integration_id} not found")
        return integration

    async def mark_expired(self, integration_id: str, reason: str = "Credentials expired") -> SocialIntegration:
        """Flag an integration whose credentials no longer authenticate."""
        return await self._set_status(integration_id, IntegrationStatus.EXPIRED, reason)

    async def mark_error(self, integration_id: str, reason: str) -> SocialIntegration:
        """Flag an integration whose permissions were revoked or broke."""
        return await self._set_status(integration_id, IntegrationStatus.ERROR, reason)

    async def disconnect(self, integration_id: str) -> SocialIntegration:
        """Revoke an integration. The row is kept with status ``disconnected``."""
        return await self._set_status(integration_id, IntegrationStatus.DISCONNECTED, None)

    async def record_sync(self, integration_id: str) -> SocialIntegration:
        """Stamp a successful sync with the platform."""
        integration = await self.get(integration_id)
        if integration.status == IntegrationStatus.DISCONNECTED:
            raise IntegrationConnectionError(
                f"Integration {integration_id} is disconnected"
            )
        return await self.store.update_integration(
            integration_id, {"last_sync_at": utc_now(), "error_message": None}
        )

    async def list_for_user(self, user_id: str) -> List[SocialIntegration]:
        return await self.store.list_integrations(user_id)

    async def get_publishable(self, user_id: str) -> Dict[Platform, SocialIntegration]:
        """Connected integrations whose platform supports publishing."""
        connected = await self.store.list_integrations(
            user_id, statuses=[IntegrationStatus.CONNECTED]
        )
        return {
            integration.platform: integration
            for integration in connected
            if get_capability(integration.platform).supports_publish
            and get_capability(integration.platform).is_active
        }

    async def _set_status(
        self,
        integration_id: str,
        status: IntegrationStatus,
        error_message: Optional[str],
    ) -> SocialIntegration:
        current = await self.get(integration_id)
        updated = await self.store.update_integration(
            integration_id, {"status": status, "error_message": error_message}
        )
        await self.log.warning(
            f"Integration {current.platform.value} {current.status.value} -> {status.value}",
            data={"integration_id": integration_id, "reason": error_message},
        )
        return updated


__all__ = ["IntegrationRegistry"]
