"""Exactly-once resumption of suspended instances."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Union

from pydantic import BaseModel, ValidationError
from sqlalchemy import update

from .audit import AuditLog
from .constants import ENTITY_INSTANCE, SYSTEM_ACTOR
from .contracts import AdvanceOutcome, Event, InstanceStatus, ResumeOutcome, ResumeResult
from .errors import InvalidTransitionError, PreconditionFailedError
from .persistence import Request, ResumeToken, Store, WorkflowInstance
from .runtime import WorkflowRuntime
from .utils.clock import utcnow

logger = logging.getLogger(__name__)


class _Conflict(Exception):
    def __init__(self, decided_by: Optional[str], decided_at: Optional[datetime]) -> None:
        self.decided_by = decided_by
        self.decided_at = decided_at
        super().__init__(f"already decided by {decided_by} at {decided_at.isoformat() if decided_at else '?'}")


class ResumeDispatcher:
    """Hands an external decision to its suspended instance, once.

    The single-use ResumeToken is claimed with a conditional update
    (``consumed_at IS NULL``) in the same transaction that wakes the
    instance, so of two racing callers exactly one proceeds and the other
    gets a ``conflict`` naming the winner. Calls that do not fit the
    instance (wrong wait point, unknown token, a decision the request
    cannot accept) get ``precondition_failed`` and leave the token valid.
    """

    def __init__(
        self,
        store: Store,
        audit: AuditLog,
        runtime: WorkflowRuntime,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.audit = audit
        self.runtime = runtime
        self._clock = clock

    async def resume(
        self,
        instance_id: str,
        wait_point: str,
        decision: Union[BaseModel, Dict[str, Any]],
        resume_token: str,
    ) -> ResumeResult:
        step = self.runtime.definition.wait_step(wait_point)
        if step is None:
            return self._precondition(instance_id, f"unknown wait point {wait_point}")
        try:
            payload = self._validate(step.resume_schema, decision)
        except ValidationError as exc:
            return self._precondition(instance_id, f"invalid decision payload: {exc.errors()[0]['msg']}")

        actor = getattr(payload, "reviewer_id", None) or SYSTEM_ACTOR
        now = self._clock()
        try:
            async with self.store.transaction() as session:
                instance = await session.get(WorkflowInstance, instance_id)
                if instance is None:
                    raise PreconditionFailedError(f"Instance {instance_id} not found")
                token = await session.get(ResumeToken, resume_token)
                if token is None or token.instance_id != instance_id or token.wait_point != wait_point:
                    raise PreconditionFailedError("resume token does not match this instance and wait point")
                if token.consumed_at is not None:
                    raise _Conflict(token.consumed_by, token.consumed_at)
                if instance.status != InstanceStatus.SUSPENDED.value or instance.suspend_point != wait_point:
                    raise PreconditionFailedError(
                        f"Instance {instance_id} is {instance.status}, not suspended at {wait_point}"
                    )
                if step.validate_resume is not None:
                    request = await session.get(Request, instance.request_id)
                    try:
                        step.validate_resume(request, payload)
                    except InvalidTransitionError as exc:
                        raise PreconditionFailedError(str(exc)) from exc

                claim = await session.execute(
                    update(ResumeToken)
                    .where(ResumeToken.token == resume_token, ResumeToken.consumed_at.is_(None))
                    .values(consumed_at=now, consumed_by=actor)
                    .execution_options(synchronize_session=False)
                )
                if claim.rowcount != 1:
                    await session.refresh(token)
                    raise _Conflict(token.consumed_by, token.consumed_at)

                instance.status = InstanceStatus.RUNNING.value
                instance.suspend_point = None
                instance.resume_payload = payload.model_dump(mode="json") if isinstance(payload, BaseModel) else dict(payload)
                instance.updated_at = now
                instance.flagged_stale_at = None
                session.add(instance)
                await self.audit.record(
                    session,
                    entity_type=ENTITY_INSTANCE,
                    entity_id=instance_id,
                    action="resumed",
                    actor_id=actor,
                    before=InstanceStatus.SUSPENDED.value,
                    after=InstanceStatus.RUNNING.value,
                    details={"wait_point": wait_point},
                )
        except _Conflict as conflict:
            return await self._conflict(instance_id, wait_point, actor, conflict)
        except PreconditionFailedError as exc:
            return self._precondition(instance_id, str(exc))

        logger.info(f"Instance={instance_id} resumed at {wait_point} by {actor}")
        advance = await self.runtime.advance(instance_id)
        return ResumeResult(
            outcome=ResumeOutcome.RESUMED,
            instance_id=instance_id,
            message=f"decision by {actor} accepted",
            decided_by=actor,
            decided_at=now,
            advance=advance,
        )

    async def start_review(self, instance_id: str, reviewer_id: str) -> ResumeResult:
        """Mark a suspended request as picked up by ``reviewer_id``.

        The instance stays suspended and its token stays valid.
        """
        try:
            advance = await self.runtime.signal(
                instance_id,
                Event.START_REVIEW,
                {"reviewer_id": reviewer_id},
                actor_id=reviewer_id,
            )
        except (InvalidTransitionError, PreconditionFailedError) as exc:
            return self._precondition(instance_id, str(exc))
        if advance.outcome == AdvanceOutcome.BUSY:
            return ResumeResult(
                outcome=ResumeOutcome.BUSY, instance_id=instance_id, message=advance.reason or "already advancing"
            )
        if advance.outcome == AdvanceOutcome.NOT_FOUND:
            return self._precondition(instance_id, advance.reason or "instance not found")
        return ResumeResult(
            outcome=ResumeOutcome.REVIEW_STARTED,
            instance_id=instance_id,
            message=f"review started by {reviewer_id}",
            decided_by=reviewer_id,
            advance=advance,
        )

    # ------------------------------------------------------------------
    @staticmethod
    def _validate(schema, decision):
        if schema is None:
            return decision.model_dump(mode="json") if isinstance(decision, BaseModel) else dict(decision)
        if isinstance(decision, schema):
            return decision
        if isinstance(decision, BaseModel):
            decision = decision.model_dump()
        return schema.model_validate(decision)

    def _precondition(self, instance_id: str, message: str) -> ResumeResult:
        logger.warning(f"Resume of instance={instance_id} rejected: {message}")
        return ResumeResult(outcome=ResumeOutcome.PRECONDITION_FAILED, instance_id=instance_id, message=message)

    async def _conflict(
        self, instance_id: str, wait_point: str, actor: str, conflict: _Conflict
    ) -> ResumeResult:
        logger.warning(f"Resume conflict on instance={instance_id}: {conflict}")
        await self.audit.append(
            entity_type=ENTITY_INSTANCE,
            entity_id=instance_id,
            action="resume_conflict",
            actor_id=actor,
            details={
                "wait_point": wait_point,
                "decided_by": conflict.decided_by,
                "decided_at": conflict.decided_at.isoformat() if conflict.decided_at else None,
            },
        )
        return ResumeResult(
            outcome=ResumeOutcome.CONFLICT,
            instance_id=instance_id,
            message=str(conflict),
            decided_by=conflict.decided_by,
            decided_at=conflict.decided_at,
        )
