from __future__ import annotations

from typing import Any, Dict, List

from agent_engine.core.config import Settings
from agent_engine.core.logging import get_logger

_PROVIDER_KEYS = ("openai_api_key", "anthropic_api_key", "google_api_key")


def _mask_secret(value: str | None) -> str:
    if not value:
        return "<empty>"
    if len(value) <= 8:
        return "<redacted>"
    return f"{value[:3]}***{value[-3:]}"


def configured_providers(settings: Settings) -> List[str]:
    providers = [key.split("_", 1)[0] for key in _PROVIDER_KEYS if getattr(settings, key)]
    if settings.ollama_base_url:
        providers.append("ollama")
    return providers


def build_settings_debug_snapshot(settings: Settings) -> Dict[str, Any]:
    """Runtime settings with every credential masked."""
    snapshot: Dict[str, Any] = {
        "environment": settings.environment,
        "storage_backend": settings.storage_backend,
        "mongo_db_name": settings.mongo_db_name,
        "redis_url_present": bool(settings.redis_url),
        "execution_backend": settings.execution_backend,
        "worker_pool_size": settings.worker_pool_size,
        "budget_enforcement": settings.budget_enforcement,
        "budget_window_days": settings.budget_window_days,
        "events_enabled": settings.events_enabled,
        "providers": configured_providers(settings),
        "api_keys_count": len(settings.api_keys),
    }
    for key in _PROVIDER_KEYS:
        snapshot[f"{key}_masked"] = _mask_secret(getattr(settings, key))
    return snapshot


def configuration_warnings(settings: Settings) -> List[str]:
    warnings: List[str] = []
    storage = settings.storage_backend.lower()
    execution = settings.execution_backend.lower()
    if storage == "memory" and execution == "celery":
        warnings.append("Celery workers cannot see in-memory storage; runs will never leave pending.")
    if storage == "memory" and settings.environment.lower() not in {"local", "test"}:
        warnings.append("In-memory storage loses agents, runs and costs on restart.")
    if settings.budget_enforcement.lower() not in {"advisory", "strict"}:
        warnings.append(f"Unknown budget enforcement mode {settings.budget_enforcement!r}; advisory applies.")
    if not configured_providers(settings):
        warnings.append("No provider configured at startup; only tenant credentials can execute runs.")
    return warnings


def log_settings_debug(settings: Settings) -> None:
    logger = get_logger("SettingsDebug")
    logger.debug("Runtime settings snapshot", **build_settings_debug_snapshot(settings))
    for warning in configuration_warnings(settings):
        logger.warning("Settings.misconfiguration", detail=warning)
