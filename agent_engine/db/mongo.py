from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pydantic import BaseModel
from pymongo.errors import PyMongoError

from agent_engine.core.config import get_settings
from agent_engine.core.logging import get_logger

_logger = get_logger("Mongo")

_mongo_client: Optional[AsyncIOMotorClient] = None
_mongo_client_loop: Optional[asyncio.AbstractEventLoop] = None
_mongo_db: Optional[AsyncIOMotorDatabase] = None


def _new_client() -> AsyncIOMotorClient:
    settings = get_settings()
    # tz_aware keeps datetimes comparable with utc_now() after a round trip.
    return AsyncIOMotorClient(settings.mongo_uri, tz_aware=True)


def get_client() -> AsyncIOMotorClient:
    """
    Return a process-wide AsyncIOMotorClient that is safe across multiple
    event loops (pytest, Celery worker restarts).

    If the previously associated event loop has been closed we transparently
    re-initialise the client and drop the cached database reference.
    """
    global _mongo_client, _mongo_client_loop, _mongo_db

    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        # Called outside of an active event loop (e.g. at import time).
        current_loop = None

    if _mongo_client is None:
        _logger.debug("Mongo client initialising", has_loop=current_loop is not None)
        _mongo_client = _new_client()
        _mongo_client_loop = current_loop
        return _mongo_client

    if _mongo_client_loop is not None and _mongo_client_loop.is_closed():
        _logger.warning("Mongo client event loop closed; reinitialising client")
        _mongo_client.close()
        _mongo_client = _new_client()
        _mongo_client_loop = current_loop
        _mongo_db = None

    return _mongo_client


def get_database() -> AsyncIOMotorDatabase:
    global _mongo_db

    client = get_client()
    if _mongo_db is None or getattr(_mongo_db, "client", None) is not client:
        settings = get_settings()
        _logger.debug("Mongo database binding (or rebinding)", db_name=settings.mongo_db_name)
        _mongo_db = client[settings.mongo_db_name]

    return _mongo_db


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def to_document(model: BaseModel, **dump_kwargs: Any) -> Dict[str, Any]:
    """model_dump() with enums flattened to their values so BSON can encode them."""
    return _plain(model.model_dump(**dump_kwargs))


async def mongo_available() -> bool:
    try:
        await get_client().admin.command("ping")
    except PyMongoError as exc:
        _logger.warning("Mongo.ping_failed", error=str(exc))
        return False
    return True
