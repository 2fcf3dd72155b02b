from __future__ import annotations

from typing import Any, Dict

from celery import Celery

from agent_engine.core.config import Settings, get_settings
from agent_engine.core.logging import get_logger


logger = get_logger("CeleryApp")

RUN_QUEUE = "agent_runs"
BRIEFING_QUEUE = "agent_briefings"


def redis_hash_tag_prefix(settings: Settings) -> str:
    """Celery key prefix wrapped in a Redis Cluster hash tag, so every Celery key shares one slot."""
    base = (settings.redis_global_keyprefix or settings.app_name).strip() or "celery"
    if "{" in base or "}" in base:
        return f"{base}."
    return f"{{{base}}}."


def celery_config(settings: Settings) -> Dict[str, Any]:
    """
    Worker configuration derived from the engine settings.

    Runs and briefings get separate queues so a backlog of slow briefings
    never delays admitted runs. Each provider call already carries the
    agent's own timeout; the task limits only reap a wedged worker.
    """
    run_limit = settings.default_timeout_seconds * 3
    briefing_limit = int(max(settings.briefing_delays.values(), default=0.0)) + 60
    prefix = redis_hash_tag_prefix(settings)
    return {
        "task_default_queue": RUN_QUEUE,
        "task_routes": {
            "execute_run": {"queue": RUN_QUEUE},
            "run_briefing": {"queue": BRIEFING_QUEUE},
        },
        "task_annotations": {
            "execute_run": {"soft_time_limit": run_limit, "time_limit": run_limit + 30},
            "run_briefing": {"soft_time_limit": briefing_limit, "time_limit": briefing_limit + 30},
        },
        "task_acks_late": True,
        "task_ignore_result": True,
        "worker_prefetch_multiplier": 1,
        "broker_transport_options": {"global_keyprefix": prefix},
        "result_backend_transport_options": {"global_keyprefix": prefix},
    }


def _create_celery_app() -> Celery:
    settings = get_settings()
    app = Celery(
        "agent_execution_worker",
        broker=settings.celery_broker,
        backend=settings.celery_backend,
        include=["agent_engine.worker.tasks"],
    )
    app.conf.update(celery_config(settings))
    logger.info(
        "Celery app configured",
        queues=[RUN_QUEUE, BRIEFING_QUEUE],
        global_keyprefix=app.conf.broker_transport_options["global_keyprefix"],
    )
    return app


celery_app = _create_celery_app()
