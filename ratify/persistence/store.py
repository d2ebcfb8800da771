from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from . import models  # noqa: F401  registers tables on SQLModel.metadata

logger = logging.getLogger(__name__)


class Store:
    """Async database helper owning the engine and transaction boundaries.

    Every state change in ratify goes through :meth:`transaction`, which
    commits on success and rolls back on any exception, so a state change
    and the audit record describing it land together or not at all.

    SQLite has no row-level locks, so transactions on a SQLite store are
    serialized within the process; this gives the ledger and the resume
    claim serializable semantics. PostgreSQL relies on row locks and
    conditional updates instead.
    """

    def __init__(self, database_url: str, echo: bool = False) -> None:
        self.database_url = database_url
        self.is_sqlite = database_url.startswith("sqlite")
        kwargs: dict = {"echo": echo, "future": True}
        if self.is_sqlite:
            kwargs["connect_args"] = {"check_same_thread": False}
            if self._is_memory(database_url):
                kwargs["poolclass"] = StaticPool
        self.engine = create_async_engine(database_url, **kwargs)
        self._lock: Optional[asyncio.Lock] = None
        self._lock_loop: Optional[asyncio.AbstractEventLoop] = None

    @staticmethod
    def _is_memory(database_url: str) -> bool:
        tail = database_url.split("://", 1)[-1]
        return tail in ("", "/", "/:memory:") or ":memory:" in tail

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    def _serial_lock(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        return self._lock

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Plain session for reads; no transaction is opened up front."""
        if self.is_sqlite:
            async with self._serial_lock():
                async with AsyncSession(self.engine, expire_on_commit=False) as session:
                    yield session
        else:
            async with AsyncSession(self.engine, expire_on_commit=False) as session:
                yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Session bound to one transaction, committed when the block exits."""
        async with self.session() as session:
            async with session.begin():
                yield session
