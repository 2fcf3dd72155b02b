from __future__ import annotations

import logging
import sys
from typing import Any, Dict, List

import structlog

from .config import get_settings
from .utils import sanitize_error

# Context keys carried by every log line of a request or background job.
CONTEXT_KEYS = ("request_id", "tenant_id", "agent_id", "run_id", "endpoint")


def redact_secrets(_: Any, __: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Provider errors can echo credentials back; scrub them before rendering."""
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = sanitize_error(value)
    return event_dict


def _get_structlog_processors(json_logs: bool) -> List[Any]:
    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        redact_secrets,
    ]
    if json_logs:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))
    return processors


def configure_logging() -> None:
    settings = get_settings()

    logging_level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=logging_level,
    )

    structlog.configure(
        processors=_get_structlog_processors(json_logs=settings.environment.lower() != "local"),
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    if name is None:
        name = get_settings().app_name
    return structlog.get_logger(name)


def bind_request_context(logger: structlog.stdlib.BoundLogger, **fields: Any) -> structlog.stdlib.BoundLogger:
    """Bind the known context keys that are set; unknown or empty ones are dropped."""
    context = {key: fields[key] for key in CONTEXT_KEYS if fields.get(key)}
    return logger.bind(**context)
