"""Completion backend factory."""

from __future__ import annotations

from typing import Optional

from ..config import RolechainConfig, load_config
from .base import ChunkCallback, CompletionBackend, CompletionError
from .openai_compat import OpenAICompatibleBackend


def get_backend(config: Optional[RolechainConfig] = None) -> CompletionBackend:
    """Build the completion backend selected by ``completion.provider``."""

    config = config or load_config()
    provider = config.completion.provider

    if provider == "openai":
        return OpenAICompatibleBackend(
            base_url=config.completion.base_url,
            api_key=config.completion.api_key,
            timeout=config.completion.timeout,
            uploads_dir=config.uploads_dir,
        )
    elif provider == "pydantic_ai":
        from .agent import PydanticAIBackend

        return PydanticAIBackend()
    else:
        raise ValueError(f"Unsupported completion provider: {provider}")


__all__ = [
    "ChunkCallback",
    "CompletionBackend",
    "CompletionError",
    "OpenAICompatibleBackend",
    "get_backend",
]
