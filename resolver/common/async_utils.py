from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, TypeVar

from .logging import log_event

T = TypeVar("T")


async def guarded_call(
    action: Callable[[], Awaitable[T] | T],
    *,
    logger: logging.Logger,
    event: str,
    message: str,
    level: str = "warning",
    default: T | None = None,
    reraise: bool = False,
    **fields: Any,
) -> T | None:
    """Run a best-effort side effect; failures are logged and ``default`` is returned."""
    try:
        outcome = action()
        return await outcome if inspect.isawaitable(outcome) else outcome
    except asyncio.CancelledError:
        raise
    except Exception as error:
        log_event(logger, level=level, event=event, message=message, error=str(error), **fields)
        if reraise:
            raise
    return default


async def wait_with_stop(stop_event: asyncio.Event, timeout_seconds: float) -> bool:
    """Sleep up to ``timeout_seconds``; returns True when woken by ``stop_event``."""
    if stop_event.is_set():
        return True
    if timeout_seconds <= 0:
        return False
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        return False
    return True
