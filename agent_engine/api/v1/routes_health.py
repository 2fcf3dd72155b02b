from __future__ import annotations

from typing import Dict

from fastapi import APIRouter, Depends

from agent_engine.api.deps import get_container
from agent_engine.core.redis_client import redis_available
from agent_engine.models.api.responses import HealthResponse
from agent_engine.services.container import ServiceContainer

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check(container: ServiceContainer = Depends(get_container)) -> HealthResponse:
    settings = container.settings
    dependencies: Dict[str, bool] = {}

    # Only probe what this deployment actually uses; a probe failure degrades, never errors.
    if settings.storage_backend.lower() != "memory":
        from agent_engine.db.mongo import mongo_available

        dependencies["mongo"] = await mongo_available()
    if settings.events_enabled or settings.execution_backend.lower() == "celery":
        dependencies["redis"] = await redis_available()

    return HealthResponse(
        status="ok" if all(dependencies.values()) else "degraded",
        storage=settings.storage_backend,
        dependencies={name: "up" if up else "down" for name, up in dependencies.items()},
        providers=sorted(container.registry.list()),
    )
