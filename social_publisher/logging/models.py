"""Log record types for pipeline events: LogLevel, LogComponent, LogEntry."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class LogLevel(Enum):
    """Severity, valued like the stdlib ``logging`` levels so they compare numerically."""

    DEBUG = 10
    INFO = 20
    WARNING = 30
    ERROR = 40
    CRITICAL = 50

    @property
    def name_str(self) -> str:
        return self.name.lower()

    @property
    def tag(self) -> str:
        """Fixed-width tag used in console lines."""
        return {"WARNING": "WARN", "CRITICAL": "CRIT"}.get(self.name, self.name)


class LogComponent(Enum):
    """Pipeline components that can produce logs."""

    COMPOSER = "composer"
    APPROVAL = "approval"
    INTEGRATIONS = "integrations"
    SCHEDULER = "scheduler"
    PUBLISHER = "publisher"
    LEDGER = "ledger"
    PIPELINE = "pipeline"
    STORE = "store"
    STARTUP = "startup"
    CONFIG = "config"


# Context keys carried by every entry, in serialisation order
CONTEXT_FIELDS = ("draft_id", "queue_item_id", "platform")


@dataclass
class LogEntry:
    """One pipeline event.

    ``draft_id``, ``queue_item_id`` and ``platform`` locate the event in
    the fan-out; ``data`` holds anything else worth keeping.
    """

    timestamp: datetime
    level: LogLevel
    component: LogComponent
    message: str

    draft_id: Optional[str] = None
    queue_item_id: Optional[str] = None
    platform: Optional[str] = None

    data: Dict[str, Any] = field(default_factory=dict)

    error_type: Optional[str] = None
    error_traceback: Optional[str] = None

    duration_ms: Optional[int] = None

    def context(self) -> Dict[str, str]:
        """Non-empty context fields."""
        return {key: getattr(self, key) for key in CONTEXT_FIELDS if getattr(self, key)}

    def to_dict(self) -> Dict[str, Any]:
        """Row for the ``social_publish_events`` table and the JSON-lines files."""
        row: Dict[str, Any] = {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.value,
            "level_name": self.level.name_str,
            "component": self.component.value,
            "message": self.message,
        }
        row.update({key: getattr(self, key) for key in CONTEXT_FIELDS})
        row.update(
            data=self.data,
            error_type=self.error_type,
            error_traceback=self.error_traceback,
            duration_ms=self.duration_ms,
        )
        return row

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)

    def to_readable(self) -> str:
        """``[INFO] [12:00:00] [scheduler] Published draft=... (42ms)``"""
        parts = [
            f"[{self.level.tag}]",
            f"[{self.timestamp:%H:%M:%S}]",
            f"[{self.component.value}]",
            self.message,
        ]
        if self.draft_id:
            parts.append(f"draft={self.draft_id}")
        if self.platform:
            parts.append(f"platform={self.platform}")
        line = " ".join(parts)
        if self.duration_ms:
            line += f" ({self.duration_ms}ms)"
        return line
