from __future__ import annotations

from typing import Any, Dict

from fastapi import Request

from agent_engine.models.api.responses import ErrorEnvelope
from agent_engine.services.container import ServiceContainer

# OpenAPI documentation for the error envelope every handler returns.
ERROR_RESPONSES: Dict[int | str, Dict[str, Any]] = {
    400: {"model": ErrorEnvelope, "description": "Invalid request or lifecycle transition"},
    404: {"model": ErrorEnvelope, "description": "Resource not found for this tenant"},
    409: {"model": ErrorEnvelope, "description": "Agent not ready or budget exceeded"},
}


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container  # type: ignore[no-any-return]
