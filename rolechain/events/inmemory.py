"""In-process event sinks."""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, List, Optional

from .base import EventSink, RunEvent, format_sse


class QueueEventSink(EventSink):
    """Buffer events in an ``asyncio.Queue`` for a single consumer.

    An HTTP layer iterates :meth:`events` (or :meth:`sse`) while the engine
    emits; iteration ends once the sink is closed.
    """

    def __init__(self, maxsize: int = 0) -> None:
        self._queue: asyncio.Queue[Optional[RunEvent]] = asyncio.Queue(maxsize)
        self._closed = False

    async def emit(self, event: RunEvent) -> None:
        if self._closed:
            return
        await self._queue.put(event)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._queue.put(None)

    async def events(self) -> AsyncIterator[RunEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                break
            yield event

    async def sse(self) -> AsyncIterator[str]:
        async for event in self.events():
            yield format_sse(event)


class CollectingEventSink(EventSink):
    """Keep every emitted event in a list."""

    def __init__(self) -> None:
        self.events: List[RunEvent] = []
        self.closed = False

    async def emit(self, event: RunEvent) -> None:
        self.events.append(event)

    async def close(self) -> None:
        self.closed = True

    def names(self) -> List[str]:
        return [e.event for e in self.events]

    def of(self, name: str) -> List[RunEvent]:
        return [e for e in self.events if e.event == name]
