"""Event logger for the publishing pipeline.

``EventLogger`` records every ``LogEntry`` three ways:

* an in-memory ring buffer, queried with ``get_recent()``;
* JSON-lines files under ``log_dir`` (``publisher.log``, plus
  ``errors.log`` for ERROR and above), appended with ``aiofiles``;
* optionally the ``save_event`` sink of a ``SocialStore`` for entries at
  or above ``min_level``. Store writes run as background tasks; call
  ``flush()`` before shutdown.

Module-level ``init_logger`` / ``get_logger`` / ``is_initialized`` /
``reset_logger`` manage the process-wide instance that
``ComponentLogger`` forwards to.
"""

import asyncio
import logging
import traceback
from collections import deque
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional, Set

import aiofiles

from social_publisher.logging.models import LogComponent, LogEntry, LogLevel
from social_publisher.utils import utc_now

logger = logging.getLogger(__name__)

MAIN_LOG_NAME = "publisher.log"
ERROR_LOG_NAME = "errors.log"


class EventLogger:
    """Structured event log.

    Parameters:
        log_dir: Directory for the JSON-lines files (created if missing).
        store: Optional ``SocialStore`` used as event sink.
        min_level: Minimum level forwarded to the store.
        max_recent: Capacity of the ring buffer.
    """

    def __init__(
        self,
        log_dir: str = "logs",
        store: Any = None,
        min_level: LogLevel = LogLevel.INFO,
        max_recent: int = 1000,
    ) -> None:
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.store = store
        self.min_level = min_level

        self._recent: Deque[LogEntry] = deque(maxlen=max_recent)
        self._store_tasks: Set["asyncio.Task[None]"] = set()

    async def log(
        self,
        level: LogLevel,
        component: LogComponent,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        error: Optional[BaseException] = None,
        duration_ms: Optional[int] = None,
        draft_id: Optional[str] = None,
        queue_item_id: Optional[str] = None,
        platform: Optional[str] = None,
    ) -> LogEntry:
        """Record one event; returns the entry after the file write completes."""
        entry = LogEntry(
            timestamp=utc_now(),
            level=level,
            component=component,
            message=message,
            draft_id=draft_id,
            queue_item_id=queue_item_id,
            platform=platform,
            data=dict(data or {}),
            duration_ms=duration_ms,
        )
        if error is not None:
            entry.error_type = type(error).__name__
            entry.error_traceback = "".join(
                traceback.format_exception(type(error), error, error.__traceback__)
            )

        self._recent.append(entry)
        await self._append_files(entry)

        if self.store is not None and level.value >= self.min_level.value:
            task = asyncio.create_task(self._save(entry))
            self._store_tasks.add(task)
            task.add_done_callback(self._store_tasks.discard)

        return entry

    async def debug(self, component: LogComponent, message: str, **kwargs: Any) -> LogEntry:
        return await self.log(LogLevel.DEBUG, component, message, **kwargs)

    async def info(self, component: LogComponent, message: str, **kwargs: Any) -> LogEntry:
        return await self.log(LogLevel.INFO, component, message, **kwargs)

    async def warning(self, component: LogComponent, message: str, **kwargs: Any) -> LogEntry:
        return await self.log(LogLevel.WARNING, component, message, **kwargs)

    async def error(self, component: LogComponent, message: str, **kwargs: Any) -> LogEntry:
        return await self.log(LogLevel.ERROR, component, message, **kwargs)

    def get_recent(
        self,
        limit: int = 20,
        level: Optional[LogLevel] = None,
        component: Optional[LogComponent] = None,
        draft_id: Optional[str] = None,
        platform: Optional[str] = None,
    ) -> List[LogEntry]:
        """Newest *limit* buffered entries matching every given filter, oldest first."""
        matches = [
            entry
            for entry in self._recent
            if (level is None or entry.level == level)
            and (component is None or entry.component == component)
            and (draft_id is None or entry.draft_id == draft_id)
            and (platform is None or entry.platform == platform)
        ]
        return matches[-limit:]

    async def flush(self) -> None:
        """Wait for outstanding store writes."""
        if self._store_tasks:
            await asyncio.gather(*self._store_tasks, return_exceptions=True)
            self._store_tasks.clear()

    async def _append_files(self, entry: LogEntry) -> None:
        line = entry.to_json() + "\n"
        targets = [MAIN_LOG_NAME]
        if entry.level.value >= LogLevel.ERROR.value:
            targets.append(ERROR_LOG_NAME)
        for name in targets:
            async with aiofiles.open(self.log_dir / name, "a", encoding="utf-8") as f:
                await f.write(line)

    async def _save(self, entry: LogEntry) -> None:
        try:
            await self.store.save_event(entry.to_dict())
        except Exception as exc:
            # A broken event sink must not break publishing
            logger.warning("[LOGGING] Failed to write event to store: %s", exc)


# ======================================================================
# PROCESS-WIDE INSTANCE
# ======================================================================

_logger: Optional[EventLogger] = None


def init_logger(
    log_dir: str = "logs",
    store: Any = None,
    min_level: LogLevel = LogLevel.INFO,
) -> EventLogger:
    global _logger
    _logger = EventLogger(log_dir=log_dir, store=store, min_level=min_level)
    return _logger


def get_logger() -> EventLogger:
    """Return the instance created by ``init_logger()``.

    Raises:
        RuntimeError: ``init_logger()`` has not been called.
    """
    if _logger is None:
        raise RuntimeError("Logger not initialized. Call init_logger() first.")
    return _logger


def is_initialized() -> bool:
    return _logger is not None


def reset_logger() -> None:
    global _logger
    _logger = None
