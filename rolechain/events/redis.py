"""Redis pub/sub sink for out-of-process observers."""

from __future__ import annotations

import json
from typing import Any, Optional

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from .base import EventSink, RunEvent


class RedisEventSink(EventSink):
    """Publish run events on ``rolechain:run:{run_id}`` channels.

    The run id is learned from the ``run_start`` event; later events of the
    same run go to the same channel.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        channel_prefix: str = "rolechain:run",
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisEventSink")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.channel_prefix = channel_prefix
        self._redis: Optional[Any] = None
        self._run_id: Optional[str] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def close(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    def channel(self, run_id: str) -> str:
        return f"{self.channel_prefix}:{run_id}"

    async def emit(self, event: RunEvent) -> None:
        if not self._redis:
            await self.connect()

        run_id = event.data.get("runId")
        if run_id:
            self._run_id = run_id
        if self._run_id is None:
            return
        await self._redis.publish(
            self.channel(self._run_id),
            json.dumps({"event": event.event, "data": event.data}),
        )
