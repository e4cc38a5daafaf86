"""Completion backend built on pydantic-ai agents."""

from __future__ import annotations

import logging
from typing import Any, List, Sequence, Union

from pydantic_ai import Agent
from pydantic_ai.messages import (
    BinaryContent,
    ModelRequest,
    ModelResponse,
    TextPart,
    UserPromptPart,
)

from ..contracts import ChatMessage, ImagePart, TextContent
from .base import ChunkCallback, CompletionError

logger = logging.getLogger(__name__)


def to_user_prompt(message: ChatMessage) -> Union[str, List[Union[str, BinaryContent]]]:
    """Translate message content into a pydantic-ai user prompt."""
    content = message.content
    if isinstance(content, TextContent):
        return content.text
    prompt: List[Union[str, BinaryContent]] = []
    for part in content.parts:
        if isinstance(part, ImagePart):
            prompt.append(BinaryContent(data=part.data, media_type=part.media_type))
        else:
            prompt.append(part.text)
    return prompt


def _history(messages: Sequence[ChatMessage]) -> list:
    history = []
    for message in messages:
        if message.role == "assistant":
            text = to_user_prompt(message)
            history.append(
                ModelResponse(parts=[TextPart(content=text if isinstance(text, str) else "")])
            )
        else:
            history.append(ModelRequest(parts=[UserPromptPart(content=to_user_prompt(message))]))
    return history


class PydanticAIBackend:
    """Stream completions through a per-call ``pydantic_ai.Agent``.

    Model names without a provider prefix are qualified with
    ``default_provider`` (``gpt-4o`` becomes ``openai:gpt-4o``).
    """

    def __init__(self, default_provider: str = "openai") -> None:
        self.default_provider = default_provider

    def _qualify(self, model: Any) -> Any:
        if isinstance(model, str) and ":" not in model:
            return f"{self.default_provider}:{model}"
        return model

    async def stream_complete(
        self,
        system_prompt: str,
        messages: Sequence[ChatMessage],
        model: str,
        on_chunk: ChunkCallback,
    ) -> str:
        if not messages:
            raise CompletionError("No messages to complete")

        agent = Agent(self._qualify(model), system_prompt=system_prompt)
        chunks: List[str] = []
        try:
            async with agent.run_stream(
                to_user_prompt(messages[-1]), message_history=_history(messages[:-1]) or None
            ) as result:
                async for delta in result.stream_text(delta=True):
                    if not delta:
                        continue
                    chunks.append(delta)
                    await on_chunk(delta)
        except CompletionError:
            raise
        except Exception as exc:
            logger.error(f"pydantic-ai completion failed for model {model}: {exc}")
            raise CompletionError(str(exc) or exc.__class__.__name__) from exc
        return "".join(chunks)
