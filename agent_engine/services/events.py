from __future__ import annotations

import json
from typing import Any, Dict, Protocol

from agent_engine.core.logging import get_logger
from agent_engine.core.redis_client import get_redis_client
from agent_engine.core.utils import utc_now


def run_channel(run_id: str) -> str:
    return f"run_events:{run_id}"


def agent_channel(agent_id: str) -> str:
    return f"agent_events:{agent_id}"


class EventSink(Protocol):
    """Receives lifecycle events for audit and notification consumers."""

    async def publish(self, channel: str, payload: Dict[str, Any]) -> None: ...


class RedisEventSink:
    """
    Publish events on Redis pub/sub for SSE and notification consumers.

    Delivery is best effort: a Redis outage is logged and never fails the
    run or lifecycle operation that produced the event.
    """

    def __init__(self) -> None:
        self.logger = get_logger("RedisEventSink")

    async def publish(self, channel: str, payload: Dict[str, Any]) -> None:
        try:
            redis = get_redis_client()
            await redis.publish(channel, json.dumps(payload, default=str))
        except Exception as exc:
            self.logger.warning("EventSink.publish_failed", error=str(exc), channel=channel)


class LogEventSink:
    """Used when EVENTS_ENABLED is false: events go to the debug log and are not retained."""

    def __init__(self) -> None:
        self.logger = get_logger("LogEventSink")

    async def publish(self, channel: str, payload: Dict[str, Any]) -> None:
        self.logger.debug("EventSink.event", channel=channel, payload=payload)


def event_payload(event: str, **fields: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"event": event, "timestamp": utc_now().isoformat()}
    payload.update({k: v for k, v in fields.items() if v is not None})
    return payload
