from __future__ import annotations

from typing import Awaitable, Callable, Optional, Protocol

from agent_engine.core.logging import get_logger
from agent_engine.worker.pool import CancellationToken, RunWorkerPool

RunHandler = Callable[[str, str, Optional[CancellationToken]], Awaitable[None]]
BriefingHandler = Callable[[str, str, Optional[CancellationToken]], Awaitable[None]]


class Dispatcher(Protocol):
    """Hands detached work (run execution, agent briefing) to a background executor."""

    def dispatch_run(self, tenant_id: str, run_id: str) -> None: ...

    def dispatch_briefing(self, tenant_id: str, agent_id: str) -> None: ...

    def cancel_run(self, run_id: str) -> None: ...


class LocalDispatcher:
    """
    Runs jobs on the in-process RunWorkerPool.

    Handlers are bound after construction because the services that own them
    also hold a reference to the dispatcher.
    """

    def __init__(self, pool: RunWorkerPool) -> None:
        self.pool = pool
        self.run_handler: Optional[RunHandler] = None
        self.briefing_handler: Optional[BriefingHandler] = None
        self.logger = get_logger("LocalDispatcher")

    def bind(self, *, run_handler: RunHandler, briefing_handler: BriefingHandler) -> None:
        self.run_handler = run_handler
        self.briefing_handler = briefing_handler

    def dispatch_run(self, tenant_id: str, run_id: str) -> None:
        handler = self.run_handler
        if handler is None:
            raise RuntimeError("LocalDispatcher has no run handler bound.")
        self.pool.submit(f"run:{run_id}", lambda token: handler(tenant_id, run_id, token))
        self.logger.info("Dispatch.run", run_id=run_id, active=self.pool.active)

    def dispatch_briefing(self, tenant_id: str, agent_id: str) -> None:
        handler = self.briefing_handler
        if handler is None:
            raise RuntimeError("LocalDispatcher has no briefing handler bound.")
        self.pool.submit(f"briefing:{agent_id}", lambda token: handler(tenant_id, agent_id, token))
        self.logger.info("Dispatch.briefing", agent_id=agent_id)

    def cancel_run(self, run_id: str) -> None:
        if not self.pool.cancel(f"run:{run_id}"):
            self.logger.debug("Dispatch.cancel_no_token", run_id=run_id)


class CeleryDispatcher:
    """
    Enqueues jobs on the Celery worker.

    There is no in-process token to flip; the worker observes cancellation
    through the persisted run status at each checkpoint.
    """

    def __init__(self) -> None:
        self.logger = get_logger("CeleryDispatcher")

    def dispatch_run(self, tenant_id: str, run_id: str) -> None:
        from agent_engine.worker.tasks import execute_run

        execute_run.delay(tenant_id, run_id)
        self.logger.info("Dispatch.run_enqueued", run_id=run_id)

    def dispatch_briefing(self, tenant_id: str, agent_id: str) -> None:
        from agent_engine.worker.tasks import run_briefing

        run_briefing.delay(tenant_id, agent_id)
        self.logger.info("Dispatch.briefing_enqueued", agent_id=agent_id)

    def cancel_run(self, run_id: str) -> None:
        self.logger.info("Dispatch.cancel_via_status", run_id=run_id)
