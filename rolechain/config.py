from __future__ import annotations

import os
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import DEFAULT_MODEL, DEFAULT_STEP_TIMEOUT, DEFAULT_SYSTEM_PROMPT


class RedisConfig(BaseModel):
    """Configuration for the Redis event sink."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class EventsConfig(BaseModel):
    """Where run events are forwarded."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = Field(default_factory=RedisConfig)


class CompletionConfig(BaseModel):
    """Language model backend settings."""

    provider: Literal["openai", "pydantic_ai"] = "openai"
    base_url: str = "https://api.openai.com/v1"
    api_key: Optional[str] = None
    model: str = DEFAULT_MODEL
    timeout: float = DEFAULT_STEP_TIMEOUT


class EngineConfig(BaseModel):
    """Explicit settings threaded into the workflow engine."""

    default_model: str = DEFAULT_MODEL
    default_system_prompt: str = DEFAULT_SYSTEM_PROMPT
    step_timeout: float = DEFAULT_STEP_TIMEOUT
    uploads_dir: Path = Path("uploads")
    # Upper bound on executed blocks per run; backward jumps can loop.
    max_block_executions: int = 100


class RolechainConfig(BaseModel):
    """Top-level configuration model."""

    completion: CompletionConfig = Field(default_factory=CompletionConfig)
    events: EventsConfig = Field(default_factory=EventsConfig)
    database_url: Optional[str] = None
    uploads_dir: Path = Path("uploads")

    def engine_config(self) -> EngineConfig:
        return EngineConfig(
            default_model=self.completion.model,
            step_timeout=self.completion.timeout,
            uploads_dir=self.uploads_dir,
        )


def load_config(path: Optional[str] = None) -> RolechainConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to ROLECHAIN_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("ROLECHAIN_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = RolechainConfig(**data)
    else:
        config = RolechainConfig()

    env_db_url = os.getenv("ROLECHAIN_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    if os.getenv("ROLECHAIN_API_KEY"):
        config.completion.api_key = os.environ["ROLECHAIN_API_KEY"]
    if os.getenv("ROLECHAIN_BASE_URL"):
        config.completion.base_url = os.environ["ROLECHAIN_BASE_URL"]
    if os.getenv("ROLECHAIN_MODEL"):
        config.completion.model = os.environ["ROLECHAIN_MODEL"]
    return config
