"""Shared utility functions.

Small helpers used across multiple modules: fire-and-forget tasks that log
their failures, millisecond timestamps, ANSI stripping, and shell quoting
for values embedded in remote command strings.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Coroutine
from datetime import UTC, datetime
from typing import Any

from pvescripts.logger import logger

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*m")


def now_ms() -> int:
    """Milliseconds since the epoch, used for event timestamps."""
    return int(datetime.now(UTC).timestamp() * 1000)


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


def strip_ansi(text: str) -> str:
    """Remove SGR color sequences (``ESC[...m``)."""
    return _ANSI_RE.sub("", text)


def single_quote_escape(value: str) -> str:
    """Escape a value for use inside a single-quoted shell string."""
    return value.replace("'", "'\\''")


def create_background_task(
    coro: Coroutine[Any, Any, Any],
    *,
    name: str | None = None,
) -> asyncio.Task[Any]:
    """Create an asyncio task that logs exceptions instead of swallowing them.

    A drop-in replacement for ``asyncio.create_task`` for fire-and-forget
    work (output pumps, delayed input, restore runs) where we don't await the
    result but still want failures to appear in logs.
    """
    task = asyncio.create_task(coro, name=name)
    task.add_done_callback(_log_task_exception)
    return task


def _log_task_exception(task: asyncio.Task[Any]) -> None:
    """Callback attached to background tasks — logs unhandled exceptions."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        # Pass the exception to exc_info so structlog renders the full
        # traceback.  logger.exception() won't work here because we're
        # in a done-callback, not an except handler.
        logger.error(
            "Background task failed",
            task_name=task.get_name(),
            exc_info=exc,
        )
