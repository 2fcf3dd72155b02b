from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Optional

from agent_engine.core.logging import get_logger


_logger = get_logger("AsyncRunner")

_loop: Optional[asyncio.AbstractEventLoop] = None


def get_worker_event_loop() -> asyncio.AbstractEventLoop:
    """
    One asyncio loop per Celery worker process, created on first use.

    It stays open for the life of the process: Motor, redis.asyncio and the
    provider HTTP clients all bind to the first loop they run on.
    """
    global _loop

    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()
        asyncio.set_event_loop(_loop)
        _logger.info("AsyncRunner.loop.initialised")

    return _loop


def run_worker_coroutine(coro: Awaitable[Any]) -> Any:
    """Block the calling Celery task until `coro` finishes on the worker loop."""
    loop = get_worker_event_loop()
    try:
        return loop.run_until_complete(coro)
    except Exception as exc:
        _logger.error("AsyncRunner.run.error", error=str(exc), exc_info=exc)
        raise


def close_worker_event_loop(final: Optional[Awaitable[Any]] = None) -> None:
    """Run an optional cleanup coroutine, then close the loop. Used at worker process shutdown."""
    global _loop

    if _loop is None or _loop.is_closed():
        return
    try:
        if final is not None:
            _loop.run_until_complete(final)
        _loop.run_until_complete(_loop.shutdown_asyncgens())
    finally:
        _loop.close()
        _loop = None
        _logger.info("AsyncRunner.loop.closed")
