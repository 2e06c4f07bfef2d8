"""Platform publishers: delivery interface, registry and built-in implementations."""

from social_publisher.publishers.base import PlatformPublisher, PublisherRegistry
from social_publisher.publishers.dry_run import DryRunDelivery, DryRunPublisher
from social_publisher.publishers.http import WebhookPublisher, classify_http_error

__all__ = [
    "PlatformPublisher",
    "PublisherRegistry",
    "DryRunDelivery",
    "DryRunPublisher",
    "WebhookPublisher",
    "classify_http_error",
]
