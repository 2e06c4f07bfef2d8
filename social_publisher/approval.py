"""
Approval gate between composition and scheduling.

``decide`` is the pure decision function; ``ApprovalGate`` applies its
outcome to the stored draft through compare-and-swap updates so that
two racing approvers cannot both win.

Approval rights: the draft owner, plus every user listed in
``Settings.approvers``. Rejection requires the same rights as approval.
"""

from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Optional, Tuple, Union

from social_publisher.config import Settings, get_settings
from social_publisher.exceptions import (
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from social_publisher.logging import ComponentLogger, LogComponent
from social_publisher.models import (
    ApproveCommand,
    DraftStatus,
    RejectCommand,
    SocialDraft,
)
from social_publisher.scheduling.draft_state import require_transition
from social_publisher.store.base import SocialStore
from social_publisher.utils import utc_now


class ApprovalDecision(Enum):
    AUTO_APPROVED = "auto_approved"
    NEEDS_HUMAN = "needs_human"
    APPROVED = "approved"
    REJECTED = "rejected"


Command = Union[ApproveCommand, RejectCommand]

# Runs after the decision and before the approval is committed
PreApproveCheck = Callable[[SocialDraft], Awaitable[object]]


def decide(
    draft: SocialDraft,
    requires_approval: bool,
    actor_has_approval_right: bool,
    command: Optional[Command] = None,
) -> ApprovalDecision:
    """
    Decide how a draft proceeds through the gate.

    Without a command this is the submission path: drafts that do not
    require approval pass automatically, the rest wait for a human. With
    a command the actor's decision is validated and returned.

    Args:
        draft: The draft being submitted or decided on.
        requires_approval: Whether a human decision is required.
        actor_has_approval_right: Whether the command's actor may decide.
        command: ``ApproveCommand`` or ``RejectCommand``; ``None`` on submission.

    Raises:
        InvalidStateError: Submission of a draft not in ``draft``, or a
            decision on a draft not in ``pending_approval``.
        PermissionDeniedError: The actor has no approval right.
    """
    if command is None:
        if draft.status != DraftStatus.DRAFT:
            raise InvalidStateError(draft.id, draft.status.value, "'draft'")
        if requires_approval:
            return ApprovalDecision.NEEDS_HUMAN
        return ApprovalDecision.AUTO_APPROVED

    if command.draft_id != draft.id:
        raise ValidationError(
            f"Command targets draft {command.draft_id}, got draft {draft.id}"
        )

    action = "approve" if isinstance(command, ApproveCommand) else "reject"
    if not actor_has_approval_right:
        raise PermissionDeniedError(command.actor, f"{action} draft {draft.id}")
    if draft.status != DraftStatus.PENDING_APPROVAL:
        raise InvalidStateError(draft.id, draft.status.value, "'pending_approval'")

    if isinstance(command, ApproveCommand):
        return ApprovalDecision.APPROVED
    return ApprovalDecision.REJECTED


class ApprovalGate:
    """Applies approval decisions to stored drafts."""

    def __init__(
        self,
        store: SocialStore,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self.clock = clock
        self.log = ComponentLogger(LogComponent.APPROVAL)

    def has_approval_right(self, draft: SocialDraft, actor: str) -> bool:
        return actor == draft.user_id or self.settings.can_approve_for_others(actor)

    async def _load(self, draft_id: str) -> SocialDraft:
        draft = await self.store.get_draft(draft_id)
        if draft is None:
            raise NotFoundError(f"Draft {draft_id} not found")
        return draft

    async def submit(self, draft: SocialDraft) -> Tuple[ApprovalDecision, SocialDraft]:
        """
        Move a validated draft out of ``draft``.

        Returns:
            The decision and the updated draft, which is either
            ``pending_approval`` or ``approved`` (auto-approved by its owner).
        """
        decision = decide(draft, draft.requires_approval, True)

        if decision == ApprovalDecision.NEEDS_HUMAN:
            changes = {"status": DraftStatus.PENDING_APPROVAL, "rejection_reason": None}
        else:
            changes = {
                "status": DraftStatus.APPROVED,
                "rejection_reason": None,
                "approved_at": self.clock(),
                "approved_by": draft.user_id,
            }

        require_transition(draft.id, draft.status, changes["status"])
        updated = await self.store.transition_draft(draft.id, [draft.status], changes)
        if updated is None:
            current = await self._load(draft.id)
            raise InvalidStateError(draft.id, current.status.value, "'draft'")

        await self.log.info(f"Submission {decision.value}", draft_id=draft.id)
        return decision, updated

    async def approve(
        self, command: ApproveCommand, check: Optional[PreApproveCheck] = None
    ) -> SocialDraft:
        """
        Approve a draft waiting in ``pending_approval``.

        Args:
            command: The approval.
            check: Awaited with the loaded draft once the actor's rights
                are confirmed. Whatever it raises propagates and the draft
                stays ``pending_approval``.
        """
        draft = await self._load(command.draft_id)
        decide(draft, True, self.has_approval_right(draft, command.actor), command)
        require_transition(draft.id, draft.status, DraftStatus.APPROVED)
        if check is not None:
            await check(draft)

        updated = await self.store.transition_draft(
            draft.id,
            [draft.status],
            {
                "status": DraftStatus.APPROVED,
                "approved_at": self.clock(),
                "approved_by": command.actor,
                "rejection_reason": None,
            },
        )
        if updated is None:
            current = await self._load(draft.id)
            raise InvalidStateError(draft.id, current.status.value, "'pending_approval'")

        await self.log.info(f"Approved by {command.actor}", draft_id=draft.id)
        return updated

    async def reject(self, command: RejectCommand) -> SocialDraft:
        """Send a draft back to ``draft`` with a rejection reason."""
        if not command.reason or not command.reason.strip():
            raise ValidationError("Rejection reason must not be empty")

        draft = await self._load(command.draft_id)
        decide(draft, True, self.has_approval_right(draft, command.actor), command)
        require_transition(draft.id, draft.status, DraftStatus.DRAFT)

        updated = await self.store.transition_draft(
            draft.id,
            [draft.status],
            {"status": DraftStatus.DRAFT, "rejection_reason": command.reason.strip()},
        )
        if updated is None:
            current = await self._load(draft.id)
            raise InvalidStateError(draft.id, current.status.value, "'pending_approval'")

        await self.log.info(
            f"Rejected by {command.actor}",
            draft_id=draft.id,
            data={"reason": command.reason.strip()},
        )
        return updated


__all__ = ["ApprovalDecision", "decide", "ApprovalGate"]
