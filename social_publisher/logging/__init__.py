"""Structured event logging for the publishing pipeline."""
from social_publisher.logging.models import LogLevel, LogComponent, LogEntry
from social_publisher.logging.event_logger import (
    EventLogger,
    init_logger,
    get_logger,
    is_initialized,
    reset_logger,
)
from social_publisher.logging.component_logger import ComponentLogger, TimedOperation

__all__ = [
    "LogLevel", "LogComponent", "LogEntry",
    "EventLogger", "init_logger", "get_logger", "is_initialized", "reset_logger",
    "ComponentLogger", "TimedOperation",
]
