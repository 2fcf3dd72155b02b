from __future__ import annotations

import math
from typing import Awaitable, Callable

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

from .config import get_settings
from .errors import RateLimitExceededError
from .logging import get_logger
from .redis_client import get_redis_client
from .utils import utc_now

_UNLIMITED_PATHS = {"/health", "/metrics"}


class RateLimiterMiddleware(BaseHTTPMiddleware):
    """
    Fixed one-minute window per tenant (falling back to client IP), counted in
    Redis so that every API replica shares the same budget.
    """

    def __init__(self, app) -> None:  # type: ignore[no-untyped-def]
        super().__init__(app)
        self.settings = get_settings()
        self.logger = get_logger("rate-limit")

    def _is_enabled(self) -> bool:
        # Local and test runs never depend on Redis being reachable.
        env = self.settings.environment.lower()
        if env in {"local", "test"}:
            return False
        return self.settings.api_rate_limit_per_minute > 0

    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        if not self._is_enabled() or request.url.path in _UNLIMITED_PATHS:
            return await call_next(request)

        limit_per_min = self.settings.api_rate_limit_per_minute
        client_ip = request.client.host if request.client else "unknown"
        tenant_id = request.headers.get("X-Tenant-Id", "")
        key = self._build_key(client_ip, tenant_id)

        now = utc_now()
        redis_key = f"rl:{int(now.timestamp() // 60)}:{key}"
        try:
            redis = get_redis_client()
            current = await redis.incr(redis_key)
            if current == 1:
                await redis.expire(redis_key, math.ceil(60 - (now.timestamp() % 60)))
        except Exception as exc:
            # Fail open: an unavailable limiter must not take the API down with it.
            self.logger.error(
                "Rate limit backend error; continuing without enforcement",
                error=str(exc),
                redis_key=redis_key,
            )
            return await call_next(request)

        if current > limit_per_min:
            self.logger.warning("Rate limit exceeded", key=key, limit=limit_per_min)
            exc = RateLimitExceededError()
            # Raised exceptions never reach the app's handlers from inside middleware.
            return JSONResponse(
                status_code=exc.status_code,
                content={"error": {"code": exc.code, "message": exc.message}},
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(limit_per_min)
        response.headers["X-RateLimit-Remaining"] = str(max(0, limit_per_min - current))
        return response

    @staticmethod
    def _build_key(client_ip: str, tenant_id: str) -> str:
        if tenant_id:
            return f"tenant:{tenant_id}"
        return f"ip:{client_ip}"
