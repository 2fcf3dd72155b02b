from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .logging import get_logger
from .utils import sanitize_error

# Provider response bodies are never surfaced beyond this many characters.
BODY_EXCERPT_LIMIT = 500


class AppError(Exception):
    def __init__(self, code: str, message: str, status_code: int = 400, *, extra: Optional[Dict[str, Any]] = None) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        self.extra = extra or {}
        super().__init__(message)


class InvalidTransitionError(AppError):
    def __init__(self, source: str, target: str) -> None:
        self.source = source
        self.target = target
        super().__init__(
            code="INVALID_TRANSITION",
            message=f"Invalid agent status transition: {source} -> {target}.",
            status_code=400,
            extra={"source": source, "target": target},
        )


class NotFoundError(AppError):
    def __init__(self, resource: str, resource_id: str) -> None:
        super().__init__(
            code="NOT_FOUND",
            message=f"{resource.capitalize()} not found.",
            status_code=404,
            extra={"resource": resource, "id": resource_id},
        )


class AgentNotReadyError(AppError):
    def __init__(self, status: str, reason: Optional[str] = None) -> None:
        message = f"Agent is not ready, current status: {status}."
        if reason:
            message = f"{message} {reason}"
        super().__init__(code="AGENT_NOT_READY", message=message, status_code=409, extra={"status": status})


class BudgetExceededError(AppError):
    def __init__(self, spent: float, limit: float) -> None:
        super().__init__(
            code="BUDGET_EXCEEDED",
            message="Agent has exceeded its monthly budget limit.",
            status_code=409,
            extra={"spent": round(spent, 6), "limit": limit},
        )


class BudgetCheckUnavailableError(AppError):
    def __init__(self, message: str = "Budget could not be verified; execution refused in strict mode.") -> None:
        super().__init__(code="BUDGET_CHECK_UNAVAILABLE", message=message, status_code=503)


class RunNotCancellableError(AppError):
    def __init__(self, status: str) -> None:
        super().__init__(
            code="RUN_NOT_CANCELLABLE",
            message=f"Run cannot be cancelled in status: {status}.",
            status_code=400,
            extra={"status": status},
        )


class ProviderNotFoundError(AppError):
    def __init__(self, provider: str) -> None:
        super().__init__(
            code="PROVIDER_NOT_FOUND",
            message=f"Provider not found: {provider}.",
            status_code=400,
            extra={"provider": provider},
        )


class ModelUnknownError(AppError):
    def __init__(self, model: str) -> None:
        super().__init__(
            code="MODEL_UNKNOWN",
            message=f"Model not known to any registered provider: {model}.",
            status_code=404,
            extra={"model": model},
        )


class ProviderError(AppError):
    """A backend call failed: network error, non-2xx status or an unparseable body."""

    def __init__(
        self,
        provider: str,
        message: str,
        *,
        status: Optional[int] = None,
        body: Optional[str] = None,
        code: str = "PROVIDER_ERROR",
        status_code: int = 502,
    ) -> None:
        self.provider = provider
        self.status = status
        self.body_excerpt = sanitize_error(body[:BODY_EXCERPT_LIMIT]) if body else None
        extra: Dict[str, Any] = {"provider": provider}
        if status is not None:
            extra["status"] = status
        if self.body_excerpt:
            extra["body"] = self.body_excerpt
        super().__init__(code=code, message=sanitize_error(f"{provider}: {message}"), status_code=status_code, extra=extra)


class ProviderTimeoutError(ProviderError):
    def __init__(self, provider: str, timeout_seconds: Optional[float] = None) -> None:
        message = "request timed out"
        if timeout_seconds is not None:
            message = f"request timed out after {timeout_seconds:g}s"
        super().__init__(provider, message, code="PROVIDER_TIMEOUT", status_code=504)


class RateLimitExceededError(AppError):
    def __init__(self, message: str = "Too many requests. Please try again later.") -> None:
        super().__init__(code="RATE_LIMIT_EXCEEDED", message=message, status_code=429)


def _app_error_response(exc: AppError) -> JSONResponse:
    body: Dict[str, Any] = {"error": {"code": exc.code, "message": exc.message}}
    if exc.extra:
        body["error"]["details"] = exc.extra
    return JSONResponse(status_code=exc.status_code, content=body)


def setup_exception_handlers(app: FastAPI) -> None:
    logger = get_logger("exception-handler")

    @app.exception_handler(AppError)
    async def app_error_handler(_: Request, exc: AppError) -> JSONResponse:
        logger.warning("AppError", code=exc.code, message=exc.message, extra=exc.extra)
        return _app_error_response(exc)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(_: Request, exc: HTTPException) -> JSONResponse:
        body: Dict[str, Any] = {
            "error": {
                "code": "HTTP_ERROR",
                "message": exc.detail,
            }
        }
        logger.warning("HTTPException", status_code=exc.status_code, detail=exc.detail)
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
        logger.warning("RequestValidationError", errors=jsonable_errors(exc.errors()))
        body: Dict[str, Any] = {
            "error": {
                "code": "INVALID_BODY",
                "message": "Request body is invalid.",
                "details": jsonable_errors(exc.errors()),
            }
        }
        return JSONResponse(status_code=400, content=body)

    @app.exception_handler(ValidationError)
    async def pydantic_validation_handler(_: Request, exc: ValidationError) -> JSONResponse:
        logger.warning("ValidationError", errors=jsonable_errors(exc.errors()))
        body: Dict[str, Any] = {
            "error": {
                "code": "VALIDATION_ERROR",
                "message": "Request validation failed.",
                "details": jsonable_errors(exc.errors()),
            }
        }
        return JSONResponse(status_code=422, content=body)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(_: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled exception", exc_info=exc)
        body: Dict[str, Any] = {
            "error": {
                "code": "INTERNAL_ERROR",
                "message": "Unexpected error occurred.",
            }
        }
        return JSONResponse(status_code=500, content=body)


def jsonable_errors(errors: Any) -> Any:
    # pydantic may embed the raw exception under "ctx"; keep only serialisable fields.
    cleaned = []
    for err in errors:
        cleaned.append({k: v for k, v in dict(err).items() if k in {"loc", "msg", "type"}})
    return cleaned
