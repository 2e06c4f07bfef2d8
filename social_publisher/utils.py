"""
Time, id and retry helpers shared by the store, scheduler and ledger.

Every timestamp that reaches Supabase (TIMESTAMPTZ) or is compared with
``scheduled_at`` / ``next_retry_at`` goes through ``utc_now``,
``ensure_utc`` or ``parse_timestamp`` so that naive datetimes never mix
with aware ones.

``with_retry`` is for transient store/transport failures only. Delivery
retries of queue items belong to ``scheduling.retry_policy``; both share
``backoff_delay``.
"""

from datetime import datetime, timezone
import uuid
import asyncio
import inspect
import logging
from functools import wraps
from typing import Callable, TypeVar, Any, Tuple, Type, Optional, Union

from social_publisher.exceptions import RetryExhaustedError

T = TypeVar("T")

logger = logging.getLogger(__name__)


# ===========================================================================
# TIMESTAMPS AND IDS
# ===========================================================================


def utc_now() -> datetime:
    """Aware "now" in UTC. The default clock of every pipeline component."""
    return datetime.now(timezone.utc)


def generate_id() -> str:
    """UUID4 string used as primary key for drafts, items and records."""
    return str(uuid.uuid4())


def ensure_utc(dt: datetime) -> datetime:
    """Return *dt* as an aware UTC datetime; naive values are read as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """
    Read a TIMESTAMPTZ column into an aware UTC datetime.

    PostgREST answers with ``+00:00`` offsets, rows written by other
    clients may end in ``Z``. Empty values map to ``None``.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    text = value[:-1] + "+00:00" if value.endswith("Z") else value
    return ensure_utc(datetime.fromisoformat(text))


# ===========================================================================
# BACKOFF
# ===========================================================================


def backoff_delay(base: float, attempt: int, cap: Optional[float] = None) -> float:
    """
    Exponential delay in seconds before retry number *attempt* (1-based).

    ``base * 2 ** (attempt - 1)``, limited to *cap* when one is given.
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    delay = base * (2 ** (attempt - 1))
    return min(delay, cap) if cap is not None else delay


def with_retry(
    max_attempts: int = 3,
    base_delay: float = 2.0,
    retryable_exceptions: Tuple[Type[Exception], ...] = (Exception,),
    operation_name: Optional[str] = None,
) -> Callable:
    """
    Retry a coroutine function on transient exceptions.

    Exceptions outside *retryable_exceptions* propagate on the first
    attempt. After *max_attempts* failures ``RetryExhaustedError`` is
    raised with the last error attached. Decorating a plain function
    raises ``TypeError``.

    Usage::

        @with_retry(max_attempts=3, retryable_exceptions=(httpx.TransportError,))
        async def get_draft(self, draft_id: str) -> Optional[SocialDraft]:
            ...
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        op_name = operation_name or func.__name__

        def on_failure(attempt: int, error: Exception) -> Optional[float]:
            # Seconds to wait before the next attempt, None when out of attempts
            if attempt >= max_attempts:
                logger.error(
                    "[RETRY EXHAUSTED] %s failed after %d attempts: %s",
                    op_name, max_attempts, error,
                )
                return None
            delay = backoff_delay(base_delay, attempt)
            logger.warning(
                "[RETRY] %s attempt %d/%d failed: %s. Retrying in %.1fs...",
                op_name, attempt, max_attempts, error, delay,
            )
            return delay

        if not inspect.iscoroutinefunction(func):
            raise TypeError(f"with_retry needs a coroutine function, got {op_name}")

        @wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> T:
            attempt = 0
            while True:
                attempt += 1
                try:
                    return await func(*args, **kwargs)
                except retryable_exceptions as e:
                    delay = on_failure(attempt, e)
                    if delay is None:
                        raise RetryExhaustedError(op_name, max_attempts, e) from e
                await asyncio.sleep(delay)

        return async_wrapper  # type: ignore[return-value]

    return decorator
