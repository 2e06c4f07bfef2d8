"""Scheduling subsystem: draft lifecycle rules, retry policy, queue dispatch."""

from social_publisher.scheduling.draft_state import aggregate_draft_status, can_transition
from social_publisher.scheduling.publish_scheduler import PublishScheduler, TickReport
from social_publisher.scheduling.retry_policy import RetryDecision, RetryPolicy

__all__ = [
    "aggregate_draft_status",
    "can_transition",
    "PublishScheduler",
    "TickReport",
    "RetryDecision",
    "RetryPolicy",
]
