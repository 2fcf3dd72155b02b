from __future__ import annotations

import asyncio
import weakref
from typing import Awaitable, Callable, Dict, Optional, Set

from agent_engine.core.logging import get_logger


class CancellationToken:
    """Cooperative cancellation flag handed to a background job."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


JobFactory = Callable[[CancellationToken], Awaitable[None]]


class RunWorkerPool:
    """
    Bounded pool of asyncio tasks for run execution and briefing.

    `submit` returns immediately; at most `size` jobs execute concurrently and
    the rest wait on the semaphore. Each job gets its own CancellationToken,
    reachable by key until the job finishes, so `cancel(key)` can flag it.
    """

    def __init__(self, size: int = 8) -> None:
        self.size = max(1, size)
        self._semaphore = asyncio.Semaphore(self.size)
        self._tasks: Set[asyncio.Task] = set()
        self._tokens: Dict[str, CancellationToken] = {}
        self._closed = False
        self.logger = get_logger("RunWorkerPool")

    def submit(self, key: str, job: JobFactory) -> CancellationToken:
        if self._closed:
            raise RuntimeError("Worker pool is shut down.")

        token = CancellationToken()
        self._tokens[key] = token
        task = asyncio.create_task(self._run(key, job, token), name=f"job:{key}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return token

    async def _run(self, key: str, job: JobFactory, token: CancellationToken) -> None:
        try:
            async with self._semaphore:
                if token.cancelled:
                    self.logger.info("WorkerPool.skipped_cancelled", key=key)
                    return
                await job(token)
        except asyncio.CancelledError:
            self.logger.warning("WorkerPool.job_cancelled", key=key)
            raise
        except Exception as exc:
            # Jobs record their own failures; reaching this means the bookkeeping itself broke.
            self.logger.error("WorkerPool.job_crashed", key=key, error=str(exc), exc_info=exc)
        finally:
            if self._tokens.get(key) is token:
                del self._tokens[key]

    def cancel(self, key: str) -> bool:
        token = self._tokens.get(key)
        if token is None:
            return False
        token.cancel()
        return True

    @property
    def active(self) -> int:
        return len(self._tasks)

    async def join(self) -> None:
        """Wait until every submitted job has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, timeout: Optional[float] = 10.0) -> None:
        self._closed = True
        for token in list(self._tokens.values()):
            token.cancel()
        if not self._tasks:
            return
        pending = list(self._tasks)
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
        self.logger.info("WorkerPool.shutdown", abandoned=len(still_running))


class AgentLocks:
    """
    One asyncio.Lock per agent; serializes admission and status writes for that agent.

    Entries are weak: a lock nobody holds or waits on is dropped, so agents
    that are gone do not accumulate.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def for_agent(self, agent_id: str) -> asyncio.Lock:
        lock = self._locks.get(agent_id)
        if lock is None:
            lock = self._locks[agent_id] = asyncio.Lock()
        return lock

    def __len__(self) -> int:
        return len(self._locks)
