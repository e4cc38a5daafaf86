"""Completion backend contract."""

from __future__ import annotations

from typing import Awaitable, Callable, Protocol, Sequence

from ..contracts import ChatMessage, RolechainError

ChunkCallback = Callable[[str], Awaitable[None]]


class CompletionError(RolechainError):
    """Normalized failure of a completion call."""


class CompletionBackend(Protocol):
    """Streams a completion for a system prompt and message history."""

    async def stream_complete(
        self,
        system_prompt: str,
        messages: Sequence[ChatMessage],
        model: str,
        on_chunk: ChunkCallback,
    ) -> str:
        """Invoke ``on_chunk`` for every text chunk and return the full text.

        Implementations raise :class:`CompletionError` for any provider or
        transport failure.
        """
