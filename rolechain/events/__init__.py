"""Event sink factory and exports."""

from __future__ import annotations

import os
from typing import Optional

from ..config import RolechainConfig, load_config
from .base import TERMINAL_EVENTS, EventSink, RunEvent, format_sse
from .inmemory import CollectingEventSink, QueueEventSink


def get_event_sink(
    backend: Optional[str] = None, config: Optional[RolechainConfig] = None
) -> EventSink:
    """Factory function to get the configured event sink."""

    config = config or load_config()
    backend = (
        backend or os.getenv("ROLECHAIN_EVENTS") or config.events.backend
    ).lower()

    if backend == "inmemory":
        return QueueEventSink()
    elif backend == "redis":
        from .redis import RedisEventSink

        redis_conf = config.events.redis
        return RedisEventSink(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
        )
    else:
        raise ValueError(f"Unsupported event backend: {backend}")


__all__ = [
    "CollectingEventSink",
    "EventSink",
    "QueueEventSink",
    "RunEvent",
    "TERMINAL_EVENTS",
    "format_sse",
    "get_event_sink",
]
