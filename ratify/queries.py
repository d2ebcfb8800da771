"""Read-only views over requests, instances and their audit trails."""

from __future__ import annotations

from typing import List, Optional

from sqlalchemy import select

from .audit import to_history
from .constants import ENTITY_INSTANCE, ENTITY_REQUEST
from .contracts import HistoryEntry, InstanceStatus, PendingDecision, RequestStatus, StatusView
from .persistence import AuditEvent, Request, ResumeToken, Store, WorkflowInstance


async def _events(store: Store, entity_type: str, entity_id: str) -> List[AuditEvent]:
    async with store.session() as session:
        rows = await session.execute(
            select(AuditEvent)
            .where(AuditEvent.entity_type == entity_type, AuditEvent.entity_id == entity_id)
            .order_by(AuditEvent.sequence)
        )
        return list(rows.scalars().all())


def _last_reason(events: List[AuditEvent]) -> Optional[str]:
    for event in reversed(events):
        reason = (event.details or {}).get("reason")
        if reason:
            return str(reason)
    return None


async def get_status(store: Store, request_id: str) -> Optional[StatusView]:
    """Current status of a request and the history that led there."""
    async with store.session() as session:
        request = await session.get(Request, request_id)
        if request is None:
            return None
        instance = None
        if request.workflow_instance_id:
            instance = await session.get(WorkflowInstance, request.workflow_instance_id)

    events = await _events(store, ENTITY_REQUEST, request_id)
    reason = None
    if request.status == RequestStatus.FAILED.value:
        reason = request.failure_reason
    elif request.status in (RequestStatus.REJECTED.value, RequestStatus.REJECTED_FINAL.value):
        reason = request.rejection_reason
    return StatusView(
        request_id=request.id,
        status=RequestStatus(request.status),
        instance_id=instance.id if instance else None,
        instance_status=InstanceStatus(instance.status) if instance else None,
        current_step=instance.current_step if instance else None,
        suspend_point=instance.suspend_point if instance else None,
        reason=reason or _last_reason(events),
        history=[to_history(event) for event in events],
    )


async def pending_decisions(store: Store) -> List[PendingDecision]:
    """Suspended instances and their outstanding tokens; nothing is consumed."""
    async with store.session() as session:
        rows = await session.execute(
            select(ResumeToken, WorkflowInstance, Request)
            .join(WorkflowInstance, WorkflowInstance.id == ResumeToken.instance_id)
            .join(Request, Request.id == WorkflowInstance.request_id)
            .where(
                ResumeToken.consumed_at.is_(None),
                WorkflowInstance.status == InstanceStatus.SUSPENDED.value,
            )
            .order_by(ResumeToken.issued_at)
        )
        return [
            PendingDecision(
                instance_id=instance.id,
                request_id=request.id,
                wait_point=token.wait_point,
                resume_token=token.token,
                issued_at=token.issued_at,
                request_status=RequestStatus(request.status),
                owner_id=request.owner_id,
                category=request.category,
                title=request.title,
            )
            for token, instance, request in rows.all()
        ]


async def instance_history(store: Store, instance_id: str) -> List[HistoryEntry]:
    return [to_history(event) for event in await _events(store, ENTITY_INSTANCE, instance_id)]


async def list_instances(store: Store, status: Optional[str] = None, limit: int = 50) -> List[WorkflowInstance]:
    async with store.session() as session:
        query = select(WorkflowInstance)
        if status:
            query = query.where(WorkflowInstance.status == status)
        rows = await session.execute(query.order_by(WorkflowInstance.started_at.desc()).limit(limit))
        return list(rows.scalars().all())
