"""Append-only audit trail of every state change."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .contracts import HistoryEntry
from .persistence import AuditEvent, Store
from .utils.clock import utcnow

logger = logging.getLogger(__name__)

_APPEND_RETRIES = 5


class AuditLog:
    """Records transitions per entity with gapless sequence numbers.

    :meth:`record` writes inside the caller's transaction so the audit
    entry commits (or rolls back) together with the change it describes.
    Events are never updated or deleted.
    """

    def __init__(self, store: Store, clock: Callable = utcnow) -> None:
        self._store = store
        self._clock = clock

    async def record(
        self,
        session: AsyncSession,
        *,
        entity_type: str,
        entity_id: str,
        action: str,
        actor_id: str,
        before: Optional[str] = None,
        after: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> AuditEvent:
        """Append an event using ``session``'s transaction."""
        last = await session.scalar(
            select(func.max(AuditEvent.sequence)).where(
                AuditEvent.entity_type == entity_type,
                AuditEvent.entity_id == entity_id,
            )
        )
        event = AuditEvent(
            entity_type=entity_type,
            entity_id=entity_id,
            sequence=(last or 0) + 1,
            action=action,
            actor_id=actor_id,
            before_state=before,
            after_state=after,
            details=dict(details or {}),
            created_at=self._clock(),
        )
        session.add(event)
        await session.flush()
        return event

    async def append(self, **kwargs: Any) -> AuditEvent:
        """Append an event in a transaction of its own.

        A concurrent writer may take the same sequence number first; the
        unique constraint rejects the loser, which simply tries again.
        """
        for attempt in range(1, _APPEND_RETRIES + 1):
            try:
                async with self._store.transaction() as session:
                    return await self.record(session, **kwargs)
            except IntegrityError:
                if attempt == _APPEND_RETRIES:
                    raise
                logger.warning(
                    f"Audit sequence collision for {kwargs.get('entity_type')}:"
                    f"{kwargs.get('entity_id')}, retrying (attempt {attempt})"
                )
        raise AssertionError("unreachable")

    async def history(self, entity_type: str, entity_id: str) -> list[AuditEvent]:
        async with self._store.session() as session:
            rows = await session.execute(
                select(AuditEvent)
                .where(
                    AuditEvent.entity_type == entity_type,
                    AuditEvent.entity_id == entity_id,
                )
                .order_by(AuditEvent.sequence)
            )
            return list(rows.scalars().all())

    async def last(self, entity_type: str, entity_id: str) -> Optional[AuditEvent]:
        events = await self.history(entity_type, entity_id)
        return events[-1] if events else None


def to_history(event: AuditEvent) -> HistoryEntry:
    return HistoryEntry(
        sequence=event.sequence,
        action=event.action,
        actor_id=event.actor_id,
        before_state=event.before_state,
        after_state=event.after_state,
        details=event.details or {},
        created_at=event.created_at,
    )
