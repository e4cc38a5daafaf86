"""Persistence layer for rolechain workflows and runs."""

from __future__ import annotations

import logging
import os
from typing import Optional

from ..config import RolechainConfig, load_config
from .inmemory import InMemoryRepository
from .repository import (
    RoleStore,
    RunLedger,
    StepStore,
    WorkflowRepository,
    WorkflowStore,
)
from .sqlite import SQLiteRepository

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresRepository
except ImportError:  # pragma: no cover - optional dependency
    PostgresRepository = None  # type: ignore

logger = logging.getLogger(__name__)

_repository_instance: WorkflowRepository | None = None

SQLITE_SCHEME = "sqlite://"
POSTGRES_SCHEMES = ("postgres://", "postgresql://")


def resolve_database_url(
    database_url: Optional[str], config: RolechainConfig
) -> Optional[str]:
    """First configured of: argument, ``ROLECHAIN_DATABASE_URL``, ``DATABASE_URL``, config."""
    return (
        database_url
        or os.getenv("ROLECHAIN_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )


def _open_repository(database_url: Optional[str]) -> WorkflowRepository:
    if not database_url:
        logger.info("No database configured; workflows and runs live in memory only")
        return InMemoryRepository()
    if database_url.startswith(SQLITE_SCHEME):
        return SQLiteRepository(database_url[len(SQLITE_SCHEME):])
    if database_url.startswith(POSTGRES_SCHEMES):
        if PostgresRepository is None:
            raise RuntimeError("Postgres support needs the asyncpg package")
        return PostgresRepository(database_url)
    raise ValueError(f"Unsupported database URL scheme: {database_url.split('://')[0]}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[RolechainConfig] = None
) -> WorkflowRepository:
    """Return the store holding roles, workflows, steps and the run ledger.

    ``sqlite://PATH`` opens a local file, ``postgres://`` or
    ``postgresql://`` a server, and no URL at all an in-memory store. Calls
    without arguments reuse the repository opened last, so one CLI process
    (or a test that installed its own store) sees a single ledger.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    url = resolve_database_url(database_url, config or load_config())
    _repository_instance = _open_repository(url)
    return _repository_instance


__all__ = [
    "InMemoryRepository",
    "PostgresRepository",
    "RoleStore",
    "RunLedger",
    "SQLiteRepository",
    "StepStore",
    "WorkflowRepository",
    "WorkflowStore",
    "get_repository",
    "resolve_database_url",
]
