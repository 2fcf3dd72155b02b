from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware import Middleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from agent_engine.api.v1 import routes_agents, routes_executions, routes_health, routes_providers
from agent_engine.core.config import get_settings
from agent_engine.core.debug import log_settings_debug
from agent_engine.core.errors import setup_exception_handlers
from agent_engine.core.logging import configure_logging, get_logger
from agent_engine.core.metrics import REQUEST_COUNT, REQUEST_LATENCY
from agent_engine.core.rate_limit import RateLimiterMiddleware
from agent_engine.core.redis_client import close_redis_client
from agent_engine.core.security import configure_cors
from agent_engine.core.utils import start_timer, stop_timer
from agent_engine.services.container import ServiceContainer, build_container


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable[[Request], Response]) -> Response:
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        request.state.request_id = request_id  # type: ignore[attr-defined]
        logger = get_logger("RequestContext")
        logger.info("request.start", request_id=request_id, path=str(request.url.path), method=request.method)
        timer = start_timer()
        response = await call_next(request)
        # Labelled after routing so ids in the path do not explode cardinality.
        endpoint = _endpoint_label(request)
        REQUEST_LATENCY.labels(request.method, endpoint).observe(stop_timer(timer) / 1000.0)
        REQUEST_COUNT.labels(request.method, endpoint, str(response.status_code)).inc()
        response.headers["X-Request-Id"] = request_id
        return response


def _endpoint_label(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", None) or str(request.url.path)


def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    configure_logging()
    settings = get_settings()
    log_settings_debug(settings)
    logger = get_logger("App")

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        active = container or build_container(settings)
        app.state.container = active
        await active.start()
        try:
            yield
        finally:
            await active.shutdown()
            if settings.events_enabled or settings.execution_backend.lower() == "celery":
                await close_redis_client()
            logger.info("App.shutdown")

    middleware = [
        Middleware(RequestContextMiddleware),
        Middleware(RateLimiterMiddleware),
    ]

    app = FastAPI(
        title=settings.app_name,
        version="1.0.0",
        middleware=middleware,
        lifespan=lifespan,
    )

    configure_cors(app)
    setup_exception_handlers(app)

    app.include_router(routes_executions.router)
    app.include_router(routes_agents.router)
    app.include_router(routes_providers.router)
    app.include_router(routes_health.router)

    if settings.prometheus_enabled:

        @app.get("/metrics")
        async def metrics() -> Response:
            data = generate_latest()
            return Response(content=data, media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
