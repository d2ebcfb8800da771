"""Persistence layer for ratify."""

from __future__ import annotations

import os
from typing import Optional

from ..config import RatifyConfig, load_config
from .models import (
    AuditEvent,
    LedgerAccount,
    LedgerEntry,
    Request,
    ResumeToken,
    StepAttempt,
    WorkflowInstance,
)
from .store import Store

_store_instance: Store | None = None


def get_store(
    database_url: Optional[str] = None, config: Optional[RatifyConfig] = None
) -> Store:
    """Factory function to obtain a store.

    The database is selected from ``database_url`` when given, else the
    ``RATIFY_DATABASE_URL`` or ``DATABASE_URL`` environment variables, else
    the loaded configuration. Without any of these an in-process SQLite
    database is used, which does not survive process restarts.
    """

    global _store_instance
    if _store_instance is not None and database_url is None and config is None:
        return _store_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("RATIFY_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if database_url.startswith("postgres://"):
        database_url = "postgresql+asyncpg://" + database_url[len("postgres://"):]
    elif database_url.startswith("postgresql://"):
        database_url = "postgresql+asyncpg://" + database_url[len("postgresql://"):]
    elif database_url.startswith("sqlite://"):
        database_url = "sqlite+aiosqlite://" + database_url[len("sqlite://"):]
    elif not database_url.startswith(("sqlite+aiosqlite://", "postgresql+asyncpg://")):
        raise ValueError(f"Unsupported database backend: {database_url}")

    _store_instance = Store(database_url)
    return _store_instance


__all__ = [
    "AuditEvent",
    "LedgerAccount",
    "LedgerEntry",
    "Request",
    "ResumeToken",
    "StepAttempt",
    "WorkflowInstance",
    "Store",
    "get_store",
]
