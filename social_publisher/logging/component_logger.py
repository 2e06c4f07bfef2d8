"""Per-component logger wrapper and timed-operation context manager.

``ComponentLogger`` binds a fixed ``LogComponent`` and writes every
message twice: to the stdlib ``logging`` tree with a bracketed component
prefix (``[SCHEDULER] ...``), and to the global ``EventLogger`` when one
has been initialised. Components can therefore log unconditionally; an
application that never calls ``init_logger()`` still gets console logs.

``TimedOperation`` is an async context manager returned by
``ComponentLogger.timed()`` that logs the elapsed duration and the
success or failure of a block of code.
"""

import logging
import time
from typing import Any, Optional

from social_publisher.logging.event_logger import get_logger, is_initialized
from social_publisher.logging.models import CONTEXT_FIELDS, LogComponent, LogLevel

_STDLIB_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
    LogLevel.CRITICAL: logging.CRITICAL,
}


class ComponentLogger:
    """Wrapper that binds a fixed ``LogComponent`` to both log outputs.

    Each component creates its own ``ComponentLogger`` at ``__init__`` time::

        self.log = ComponentLogger(LogComponent.SCHEDULER)
        await self.log.info("Claimed item", queue_item_id=item.id)
    """

    def __init__(self, component: LogComponent) -> None:
        self.component = component
        self.prefix = f"[{component.value.upper()}]"
        self._stdlib = logging.getLogger(f"social_publisher.{component.value}")

    async def log(
        self,
        level: LogLevel,
        message: str,
        error: Optional[BaseException] = None,
        **kwargs: Any,
    ) -> None:
        context = " ".join(
            f"{key}={kwargs[key]}"
            for key in CONTEXT_FIELDS
            if kwargs.get(key)
        )
        line = f"{self.prefix} {message}" + (f" ({context})" if context else "")
        if error is not None:
            line += f": {error}"
        self._stdlib.log(_STDLIB_LEVELS[level], line)

        if is_initialized():
            await get_logger().log(level, self.component, message, error=error, **kwargs)

    async def debug(self, message: str, **kwargs: Any) -> None:
        await self.log(LogLevel.DEBUG, message, **kwargs)

    async def info(self, message: str, **kwargs: Any) -> None:
        await self.log(LogLevel.INFO, message, **kwargs)

    async def warning(self, message: str, **kwargs: Any) -> None:
        await self.log(LogLevel.WARNING, message, **kwargs)

    async def error(
        self, message: str, error: Optional[BaseException] = None, **kwargs: Any
    ) -> None:
        await self.log(LogLevel.ERROR, message, error=error, **kwargs)

    def timed(self, message: str, **kwargs: Any) -> "TimedOperation":
        """Return an async context manager that logs the block's duration.

        Usage::

            async with self.log.timed("Dispatching tick"):
                await self._dispatch(items)
        """
        return TimedOperation(self, message, **kwargs)


class TimedOperation:
    """Async context manager that measures and logs operation duration.

    On successful exit, logs an INFO message with ``duration_ms``.
    On exception, logs an ERROR message with ``duration_ms`` and the error,
    then re-raises the exception (does **not** suppress it).
    """

    def __init__(self, logger: ComponentLogger, message: str, **kwargs: Any) -> None:
        self.logger = logger
        self.message = message
        self.kwargs = kwargs
        self.start: Optional[float] = None
        self.duration_ms: Optional[int] = None

    async def __aenter__(self) -> "TimedOperation":
        self.start = time.monotonic()
        await self.logger.debug(f"Starting: {self.message}", **self.kwargs)
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type],
        exc_val: Optional[BaseException],
        exc_tb: Any,
    ) -> None:
        assert self.start is not None
        self.duration_ms = int((time.monotonic() - self.start) * 1000)

        if exc_type is not None:
            await self.logger.error(
                f"Failed: {self.message}",
                error=exc_val,
                duration_ms=self.duration_ms,
                **self.kwargs,
            )
        else:
            await self.logger.info(
                f"Completed: {self.message}",
                duration_ms=self.duration_ms,
                **self.kwargs,
            )
        # Return None (falsy) so exceptions propagate
