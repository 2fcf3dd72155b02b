from __future__ import annotations

from typing import Any, Optional

from celery.signals import worker_process_shutdown

from agent_engine.core.config import get_settings
from agent_engine.core.logging import get_logger
from agent_engine.services.container import ServiceContainer, build_container
from agent_engine.worker.async_runner import close_worker_event_loop, run_worker_coroutine
from .celery_app import celery_app


logger = get_logger("CeleryWorker")

_container: Optional[ServiceContainer] = None


async def _get_container() -> ServiceContainer:
    """One container per worker process, started on the shared worker loop."""
    global _container
    if _container is None:
        container = build_container(get_settings())
        await container.start()
        _container = container
    return _container


async def _execute_run_async(tenant_id: str, run_id: str) -> None:
    container = await _get_container()
    # No in-process token here: cancellation is read back from the run status.
    await container.executions.execute_run(tenant_id, run_id)
    logger.info("Worker.execute_run.done", run_id=run_id)


async def _run_briefing_async(tenant_id: str, agent_id: str) -> None:
    container = await _get_container()
    await container.agents.run_briefing(tenant_id, agent_id)
    logger.info("Worker.run_briefing.done", agent_id=agent_id)


@celery_app.task(name="execute_run")
def execute_run(tenant_id: str, run_id: str) -> None:
    """
    Celery entrypoint for a dispatched run.

    asyncio.run() would close its loop after every task while Motor and
    redis.asyncio keep references to the first loop they used.
    """
    run_worker_coroutine(_execute_run_async(tenant_id, run_id))


@celery_app.task(name="run_briefing")
def run_briefing(tenant_id: str, agent_id: str) -> None:
    run_worker_coroutine(_run_briefing_async(tenant_id, agent_id))


@worker_process_shutdown.connect
def _shutdown_container(**_: Any) -> None:
    global _container
    container, _container = _container, None
    close_worker_event_loop(container.shutdown() if container is not None else None)
    logger.info("Worker.process_shutdown", had_container=container is not None)
