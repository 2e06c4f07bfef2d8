"""
Custom exception classes for the social publishing pipeline.

This module defines all exception classes used throughout the codebase.
Errors raised by synchronous operations (draft submission, approval,
integration setup) surface to the caller immediately.  Platform delivery
failures are expressed as ``PublishError`` and drive the scheduler's
retry/backoff path instead of propagating.

Hierarchy:
    Exception
    +-- SocialPublisherError (base for all pipeline errors)
    |   +-- ValidationError (also ValueError)
    |   +-- PermissionDeniedError
    |   +-- InvalidStateError
    |   +-- NotFoundError
    |   +-- IntegrationConnectionError
    |   |   +-- DuplicateConnectionError
    |   +-- PublishError
    |   +-- DatabaseError
    |   +-- ConfigurationError
    +-- RetryExhaustedError
"""

from enum import Enum
from typing import Optional


# =============================================================================
# BASE EXCEPTION
# =============================================================================


class SocialPublisherError(Exception):
    """Base exception for all publishing pipeline errors."""

    pass


# =============================================================================
# CORE EXCEPTIONS
# =============================================================================


class ValidationError(SocialPublisherError, ValueError):
    """Raised when a draft or command fails validation."""

    pass


class PermissionDeniedError(SocialPublisherError):
    """Raised when an actor lacks the right to perform an action.

    Attributes:
        actor: The user who attempted the action.
        action: Name of the rejected action.
    """

    def __init__(self, actor: str, action: str):
        self.actor = actor
        self.action = action
        super().__init__(f"Actor '{actor}' is not allowed to {action}")


class InvalidStateError(SocialPublisherError):
    """Raised when an entity is not in a state that permits the transition.

    Attributes:
        entity_id: Identifier of the draft or queue item.
        current: Status the entity is actually in.
        expected: Human-readable description of the allowed statuses.
    """

    def __init__(self, entity_id: str, current: str, expected: str):
        self.entity_id = entity_id
        self.current = current
        self.expected = expected
        super().__init__(
            f"{entity_id} is in status '{current}', expected {expected}"
        )


class NotFoundError(SocialPublisherError):
    """Raised when a draft, queue item or integration does not exist."""

    pass


class DatabaseError(SocialPublisherError):
    """Raised when persistence operations fail."""

    pass


class ConfigurationError(SocialPublisherError):
    """Raised when system configuration is invalid."""

    pass


# =============================================================================
# INTEGRATION EXCEPTIONS
# =============================================================================


class IntegrationConnectionError(SocialPublisherError):
    """Raised when a platform integration cannot be established."""

    pass


class DuplicateConnectionError(IntegrationConnectionError):
    """Raised when an active integration already exists for (user, platform).

    Attributes:
        user_id: Owner of the existing integration.
        platform: Platform identifier.
        existing_id: ID of the integration that blocks the connect.
    """

    def __init__(self, user_id: str, platform: str, existing_id: str):
        self.user_id = user_id
        self.platform = platform
        self.existing_id = existing_id
        super().__init__(
            f"User '{user_id}' already has an active {platform} integration "
            f"({existing_id})"
        )


# =============================================================================
# PUBLISH EXCEPTIONS
# =============================================================================


class PublishFailureKind(Enum):
    """Classification of a failed platform call.

    The first three kinds are transient and eligible for automatic retry.
    ``CREDENTIALS_EXPIRED`` and ``PERMISSION_REVOKED`` are attributable to
    the integration and also change its status.
    """

    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    CREDENTIALS_EXPIRED = "credentials_expired"
    PERMISSION_REVOKED = "permission_revoked"
    CONTENT_REJECTED = "content_rejected"
    INVALID_REQUEST = "invalid_request"
    NOT_SUPPORTED = "not_supported"

    @property
    def is_retryable(self) -> bool:
        return self in {
            PublishFailureKind.TRANSIENT,
            PublishFailureKind.RATE_LIMITED,
            PublishFailureKind.TIMEOUT,
        }

    @property
    def is_credential_related(self) -> bool:
        return self in {
            PublishFailureKind.CREDENTIALS_EXPIRED,
            PublishFailureKind.PERMISSION_REVOKED,
        }


class PublishError(SocialPublisherError):
    """Raised by a platform publisher when delivery fails.

    Attributes:
        reason: Human-readable failure description, stored as
            ``last_error`` on the queue item.
        kind: Failure classification.
        retryable: Whether the scheduler may re-attempt the delivery.
            Defaults to the classification of ``kind``.
    """

    def __init__(
        self,
        reason: str,
        kind: PublishFailureKind = PublishFailureKind.TRANSIENT,
        retryable: Optional[bool] = None,
    ):
        self.reason = reason
        self.kind = kind
        self.retryable = kind.is_retryable if retryable is None else retryable
        super().__init__(reason)


# =============================================================================
# RETRY EXCEPTIONS
# =============================================================================


class RetryExhaustedError(Exception):
    """Raised when all retry attempts have been exhausted.

    Attributes:
        operation: Name of the operation that was retried.
        attempts: Total number of attempts made.
        last_error: The last exception raised before giving up.
    """

    def __init__(self, operation: str, attempts: int, last_error: Exception):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{operation} failed after {attempts} attempts. "
            f"Last error: {last_error}"
        )


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    # Base
    "SocialPublisherError",
    # Core
    "ValidationError",
    "PermissionDeniedError",
    "InvalidStateError",
    "NotFoundError",
    "DatabaseError",
    "ConfigurationError",
    # Integrations
    "IntegrationConnectionError",
    "DuplicateConnectionError",
    # Publishing
    "PublishFailureKind",
    "PublishError",
    # Retry
    "RetryExhaustedError",
]
