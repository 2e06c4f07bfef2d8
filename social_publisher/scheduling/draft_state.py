"""
Draft lifecycle rules.

Holds the allowed draft transitions and the derivation of a draft's
final status from its queue items. Both are pure; the components that
change state consult them and then write through the store's
compare-and-swap methods.
"""

from typing import Dict, FrozenSet, Iterable, Optional

from social_publisher.exceptions import InvalidStateError
from social_publisher.models import (
    AggregatePolicy,
    DraftStatus,
    PublishQueueItem,
    QueueItemStatus,
)

# Cancellation is added for every non-terminal status below.
ALLOWED_TRANSITIONS: Dict[DraftStatus, FrozenSet[DraftStatus]] = {
    DraftStatus.DRAFT: frozenset({DraftStatus.PENDING_APPROVAL, DraftStatus.APPROVED}),
    # -> DRAFT only through a rejection
    DraftStatus.PENDING_APPROVAL: frozenset({DraftStatus.APPROVED, DraftStatus.DRAFT}),
    # -> FAILED when no connected integration is left to fan out to
    DraftStatus.APPROVED: frozenset(
        {DraftStatus.SCHEDULED, DraftStatus.PUBLISHING, DraftStatus.FAILED}
    ),
    DraftStatus.SCHEDULED: frozenset({DraftStatus.PUBLISHING}),
    DraftStatus.PUBLISHING: frozenset({DraftStatus.PUBLISHED, DraftStatus.FAILED}),
    DraftStatus.PUBLISHED: frozenset(),
    # Manual retry of a failed item reopens the draft
    DraftStatus.FAILED: frozenset({DraftStatus.PUBLISHING}),
    DraftStatus.CANCELLED: frozenset(),
}

CANCELLABLE_DRAFT_STATUSES: FrozenSet[DraftStatus] = frozenset(
    status for status in DraftStatus if not status.is_terminal
)

CANCELLABLE_ITEM_STATUSES: FrozenSet[QueueItemStatus] = frozenset(
    {QueueItemStatus.PENDING, QueueItemStatus.PROCESSING}
)

EDITABLE_DRAFT_STATUSES: FrozenSet[DraftStatus] = frozenset({DraftStatus.DRAFT})


def can_transition(current: DraftStatus, target: DraftStatus) -> bool:
    if target == DraftStatus.CANCELLED:
        return current in CANCELLABLE_DRAFT_STATUSES
    return target in ALLOWED_TRANSITIONS[current]


def sources_for(
    target: DraftStatus, among: Optional[Iterable[DraftStatus]] = None
) -> FrozenSet[DraftStatus]:
    """
    Statuses from which *target* is reachable; used as CAS expectations.

    *among* narrows the result to the statuses a caller is prepared to
    move from. A pair the table does not allow drops out, so the CAS
    cannot match it.
    """
    candidates = DraftStatus if among is None else among
    return frozenset(
        status for status in candidates if can_transition(status, target)
    )


def require_transition(draft_id: str, current: DraftStatus, target: DraftStatus) -> None:
    """
    Raise unless ``current -> target`` is an allowed draft transition.

    Raises:
        InvalidStateError: If the transition is not allowed.
    """
    if not can_transition(current, target):
        allowed = sorted(s.value for s in sources_for(target))
        raise InvalidStateError(draft_id, current.value, f"one of {allowed}")


def aggregate_draft_status(
    items: Iterable[PublishQueueItem],
    policy: AggregatePolicy = AggregatePolicy.BEST_EFFORT,
) -> Optional[DraftStatus]:
    """
    Derive the final draft status from its queue items.

    Returns ``None`` while any item is still pending or processing, or
    when the draft has no items.

    Under ``BEST_EFFORT`` a draft is published if at least one item
    completed. Under ``ANY_FAILURE`` a single failed item fails the draft.
    Cancelled items count as neither success nor failure; a draft whose
    items were all cancelled is reported ``CANCELLED``.
    """
    statuses = [item.status for item in items]
    if not statuses or not all(status.is_terminal for status in statuses):
        return None

    completed = statuses.count(QueueItemStatus.COMPLETED)
    failed = statuses.count(QueueItemStatus.FAILED)

    if completed == 0 and failed == 0:
        return DraftStatus.CANCELLED
    if policy == AggregatePolicy.ANY_FAILURE and failed > 0:
        return DraftStatus.FAILED
    return DraftStatus.PUBLISHED if completed > 0 else DraftStatus.FAILED


__all__ = [
    "ALLOWED_TRANSITIONS",
    "CANCELLABLE_DRAFT_STATUSES",
    "CANCELLABLE_ITEM_STATUSES",
    "EDITABLE_DRAFT_STATUSES",
    "can_transition",
    "sources_for",
    "require_transition",
    "aggregate_draft_status",
]
