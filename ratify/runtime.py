"""Durable workflow runtime.

The runtime owns the *instance* lifecycle. Each call to :meth:`WorkflowRuntime.advance`
takes the instance lease, runs steps through the :class:`~ratify.executor.StepExecutor`,
applies the events they return to the request lifecycle, drains the side
effects those transitions request and stops at the next wait point or at a
terminal state. Nothing is held in memory between calls: the cursor, the
accumulated context and any outstanding side effects live on the
``workflow_instances`` row.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from functools import partial
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .audit import AuditLog
from .config import RuntimeConfig
from .constants import ENTITY_INSTANCE, ENTITY_REQUEST, SYSTEM_ACTOR
from .contracts import (
    AdvanceOutcome,
    AdvanceResult,
    Event,
    EventCall,
    InstanceStatus,
    RequestStatus,
    StartOutcome,
    StartResult,
    StepOutput,
    StepStatus,
)
from .errors import InvalidTransitionError, PreconditionFailedError
from .executor import StepExecutor
from .persistence import Request, ResumeToken, Store, WorkflowInstance
from .utils.clock import utcnow
from .workflow import EffectContext, Step, StepContext, WorkflowDefinition

logger = logging.getLogger(__name__)

_LEASE_POLL_SECONDS = 0.05
_ACTIVE = (InstanceStatus.RUNNING.value, InstanceStatus.SUSPENDED.value)
_AUDITED_KEYS = ("reason", "reviewer_id", "allow_resubmit", "notes")

_OUTCOMES = {
    InstanceStatus.SUSPENDED: AdvanceOutcome.SUSPENDED,
    InstanceStatus.COMPLETED: AdvanceOutcome.COMPLETED,
    InstanceStatus.FAILED: AdvanceOutcome.FAILED,
}


class WorkflowRuntime:
    """Start, advance and resolve workflow instances of one definition."""

    def __init__(
        self,
        store: Store,
        audit: AuditLog,
        executor: StepExecutor,
        definition: WorkflowDefinition,
        *,
        lease_seconds: float = 300.0,
        lease_wait_seconds: float = 2.0,
        stale_after_seconds: float = 3600.0,
        redelivery_limit: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.audit = audit
        self.executor = executor
        self.definition = definition
        self.lease_ttl = timedelta(seconds=lease_seconds)
        self.lease_wait_seconds = lease_wait_seconds
        self.stale_after_seconds = stale_after_seconds
        self.redelivery_limit = redelivery_limit
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        store: Store,
        audit: AuditLog,
        executor: StepExecutor,
        definition: WorkflowDefinition,
        config: RuntimeConfig,
        clock: Callable[[], datetime] = utcnow,
    ) -> "WorkflowRuntime":
        return cls(
            store,
            audit,
            executor,
            definition,
            lease_seconds=config.lease_seconds,
            lease_wait_seconds=config.lease_wait_seconds,
            stale_after_seconds=config.stale_after_seconds,
            redelivery_limit=config.redelivery_limit,
            clock=clock,
        )

    @property
    def machine(self):
        return self.definition.machine

    # ------------------------------------------------------------------
    # Requests and instances
    # ------------------------------------------------------------------
    async def create_request(
        self,
        owner_id: str,
        category: str,
        payload: Optional[Dict[str, Any]] = None,
        title: Optional[str] = None,
    ) -> Request:
        """Create a request in ``draft``."""
        now = self._clock()
        request = Request(
            owner_id=owner_id,
            category=category,
            title=title or f"{category} - {now:%Y-%m-%d}",
            payload=dict(payload or {}),
            created_at=now,
            updated_at=now,
        )
        async with self.store.transaction() as session:
            session.add(request)
            await self.audit.record(
                session,
                entity_type=ENTITY_REQUEST,
                entity_id=request.id,
                action="created",
                actor_id=owner_id,
                after=request.status,
                details={"category": category},
            )
        logger.info(f"Created request={request.id} for owner={owner_id} category={category}")
        return request

    async def start(self, request_id: str, input: Optional[Dict[str, Any]] = None) -> StartResult:
        """Create a running instance for a ``draft`` request.

        A missing request, a request outside ``draft`` or one that already
        has an active instance yields a ``precondition_failed`` result and
        changes nothing.
        """
        now = self._clock()
        try:
            async with self.store.transaction() as session:
                request = await session.get(Request, request_id)
                if request is None:
                    raise PreconditionFailedError(f"Request {request_id} not found")
                if request.status != RequestStatus.DRAFT.value:
                    raise PreconditionFailedError(
                        f"Request {request_id} is {request.status}; only draft requests can start"
                    )
                active = await self._active_instance(session, request_id)
                if active is not None:
                    raise PreconditionFailedError(
                        f"Request {request_id} already has active instance {active.id}"
                    )
                instance = WorkflowInstance(
                    request_id=request_id,
                    workflow=self.definition.name,
                    current_step=self.definition.first_step,
                    input=dict(input or {}),
                    context={"owner_id": request.owner_id},
                    started_at=now,
                    updated_at=now,
                )
                session.add(instance)
                request.workflow_instance_id = instance.id
                request.updated_at = now
                session.add(request)
                await session.flush()
                await self.audit.record(
                    session,
                    entity_type=ENTITY_INSTANCE,
                    entity_id=instance.id,
                    action="started",
                    actor_id=request.owner_id,
                    after=InstanceStatus.RUNNING.value,
                    details={"request_id": request_id, "workflow": self.definition.name},
                )
        except PreconditionFailedError as exc:
            return self._not_started(request_id, str(exc))
        except IntegrityError:
            return self._not_started(request_id, f"Request {request_id} already has an active instance")
        logger.info(f"Started instance={instance.id} for request={request_id}")
        return StartResult(outcome=StartOutcome.STARTED, request_id=request_id, instance_id=instance.id)

    def _not_started(self, request_id: str, reason: str) -> StartResult:
        logger.warning(f"Request={request_id} not started: {reason}")
        return StartResult(outcome=StartOutcome.PRECONDITION_FAILED, request_id=request_id, reason=reason)

    async def status(self, instance_id: str) -> Optional[WorkflowInstance]:
        async with self.store.session() as session:
            return await session.get(WorkflowInstance, instance_id)

    async def resubmit(
        self,
        request_id: str,
        actor_id: str,
        input: Optional[Dict[str, Any]] = None,
    ) -> StartResult:
        """Return a resubmittable ``rejected`` request to ``draft`` and start a new instance."""
        now = self._clock()
        try:
            async with self.store.transaction() as session:
                request = await session.get(Request, request_id)
                if request is None:
                    raise PreconditionFailedError(f"Request {request_id} not found")
                if await self._active_instance(session, request_id) is not None:
                    raise PreconditionFailedError(f"Request {request_id} is still in progress")
                try:
                    change = self.machine.transition(request.status, Event.RESUBMIT, {"actor_id": actor_id})
                except InvalidTransitionError as exc:
                    raise PreconditionFailedError(str(exc)) from exc
                request.status = change.target.value
                request.updated_at = now
                session.add(request)
                await self.audit.record(
                    session,
                    entity_type=ENTITY_REQUEST,
                    entity_id=request_id,
                    action=change.event.value,
                    actor_id=actor_id,
                    before=change.source.value,
                    after=change.target.value,
                )
        except PreconditionFailedError as exc:
            return self._not_started(request_id, str(exc))
        logger.info(f"Request={request_id} resubmitted by {actor_id}")
        return await self.start(request_id, input)

    async def close_rejected(self, request_id: str, actor_id: str) -> AdvanceResult:
        """Close a resubmittable ``rejected`` request for good."""
        now = self._clock()
        try:
            async with self.store.transaction() as session:
                request = await session.get(Request, request_id)
                if request is None:
                    raise PreconditionFailedError(f"Request {request_id} not found")
                try:
                    change = self.machine.transition(request.status, Event.CLOSE, {"actor_id": actor_id})
                except InvalidTransitionError as exc:
                    raise PreconditionFailedError(str(exc)) from exc
                request.status = change.target.value
                request.updated_at = now
                session.add(request)
                await self.audit.record(
                    session,
                    entity_type=ENTITY_REQUEST,
                    entity_id=request_id,
                    action=change.event.value,
                    actor_id=actor_id,
                    before=change.source.value,
                    after=change.target.value,
                )
                instance_id = request.workflow_instance_id
        except PreconditionFailedError as exc:
            logger.warning(f"Request={request_id} not closed: {exc}")
            return AdvanceResult(outcome=AdvanceOutcome.PRECONDITION_FAILED, reason=str(exc))
        logger.info(f"Request={request_id} closed by {actor_id}")
        return AdvanceResult(
            instance_id=instance_id,
            outcome=AdvanceOutcome.COMPLETED,
            instance_status=InstanceStatus.COMPLETED,
            request_status=RequestStatus(change.target),
        )

    # ------------------------------------------------------------------
    # Lease
    # ------------------------------------------------------------------
    @asynccontextmanager
    async def lease(self, instance_id: str) -> AsyncIterator[Optional[str]]:
        """Hold the per-instance lease for the duration of the block.

        Yields the lease token, or ``None`` when another caller kept the
        lease for longer than ``lease_wait_seconds`` or the instance does
        not exist.
        """
        token = await self._acquire(instance_id)
        try:
            yield token
        finally:
            if token is not None:
                await self._release(instance_id, token)

    async def _acquire(self, instance_id: str) -> Optional[str]:
        token = uuid.uuid4().hex
        deadline = time.monotonic() + self.lease_wait_seconds
        while True:
            claimed = await self._claim_lease(instance_id, token)
            if claimed is None:
                return None
            if claimed:
                return token
            if time.monotonic() >= deadline:
                logger.warning(f"Instance={instance_id} is already advancing")
                return None
            await asyncio.sleep(_LEASE_POLL_SECONDS)

    async def _claim_lease(self, instance_id: str, token: str) -> Optional[bool]:
        now = self._clock()
        async with self.store.transaction() as session:
            result = await session.execute(
                update(WorkflowInstance)
                .where(
                    WorkflowInstance.id == instance_id,
                    or_(
                        WorkflowInstance.lease_owner.is_(None),
                        WorkflowInstance.lease_expires_at < now,
                    ),
                )
                .values(lease_owner=token, lease_expires_at=now + self.lease_ttl)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return True
            exists = await session.scalar(
                select(WorkflowInstance.id).where(WorkflowInstance.id == instance_id)
            )
            return False if exists else None

    async def _renew(self, instance_id: str, token: str) -> bool:
        now = self._clock()
        async with self.store.transaction() as session:
            result = await session.execute(
                update(WorkflowInstance)
                .where(WorkflowInstance.id == instance_id, WorkflowInstance.lease_owner == token)
                .values(lease_expires_at=now + self.lease_ttl)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def _release(self, instance_id: str, token: str) -> None:
        async with self.store.transaction() as session:
            await session.execute(
                update(WorkflowInstance)
                .where(WorkflowInstance.id == instance_id, WorkflowInstance.lease_owner == token)
                .values(lease_owner=None, lease_expires_at=None)
                .execution_options(synchronize_session=False)
            )

    async def _unleased(self, instance_id: str) -> AdvanceResult:
        instance = await self.status(instance_id)
        if instance is None:
            return AdvanceResult(
                instance_id=instance_id,
                outcome=AdvanceOutcome.NOT_FOUND,
                reason=f"Instance {instance_id} not found",
            )
        return AdvanceResult(
            instance_id=instance_id,
            outcome=AdvanceOutcome.BUSY,
            instance_status=InstanceStatus(instance.status),
            reason="already advancing",
        )

    # ------------------------------------------------------------------
    # Advancing
    # ------------------------------------------------------------------
    async def advance(self, instance_id: str) -> AdvanceResult:
        """Drive the instance to its next wait point or to a terminal state."""
        async with self.lease(instance_id) as lease:
            if lease is None:
                return await self._unleased(instance_id)
            return await self.drive(instance_id, lease)

    async def drive(self, instance_id: str, lease: str) -> AdvanceResult:
        """Advance loop; the caller must hold ``lease``."""
        while True:
            if not await self._renew(instance_id, lease):
                logger.warning(f"Lost lease on instance={instance_id}")
                return await self._unleased(instance_id)

            instance, request = await self._load(instance_id)
            if instance.status != InstanceStatus.RUNNING.value:
                return self._result(instance, request)

            if instance.pending_effects:
                deferred = await self._drain_effects(instance, request)
                if deferred:
                    return AdvanceResult(
                        instance_id=instance_id,
                        outcome=AdvanceOutcome.DEFERRED,
                        instance_status=InstanceStatus.RUNNING,
                        request_status=RequestStatus(request.status),
                        reason=deferred,
                    )
                continue

            if instance.current_step is None:
                await self._finish(instance_id)
                continue

            step = self.definition.step(instance.current_step)
            if step.wait_point and instance.resume_payload is None:
                await self._suspend(instance_id, step)
                continue

            ctx = StepContext(
                instance=instance,
                request=request,
                now=self._clock(),
                resume=instance.resume_payload if step.wait_point else None,
            )
            result = await self.executor.run(instance_id, step.name, partial(step.handler, ctx), step.policy)
            if result.status == StepStatus.CIRCUIT_OPEN:
                return AdvanceResult(
                    instance_id=instance_id,
                    outcome=AdvanceOutcome.DEFERRED,
                    instance_status=InstanceStatus.RUNNING,
                    request_status=RequestStatus(request.status),
                    reason=result.error,
                )
            if result.ok:
                await self._apply(instance_id, step, StepOutput.model_validate(result.output or {}))
            else:
                failure = StepOutput(
                    events=[EventCall(event=Event.FAIL, context={"reason": f"{step.name} failed: {result.error}"})]
                )
                await self._apply(instance_id, step, failure, error=result.error)

    async def _load(self, instance_id: str) -> Tuple[WorkflowInstance, Request]:
        async with self.store.session() as session:
            instance = await session.get(WorkflowInstance, instance_id)
            if instance is None:
                raise PreconditionFailedError(f"Instance {instance_id} not found")
            request = await session.get(Request, instance.request_id)
            return instance, request

    def _result(self, instance: WorkflowInstance, request: Request) -> AdvanceResult:
        status = InstanceStatus(instance.status)
        reason = None
        if status == InstanceStatus.FAILED:
            reason = request.failure_reason or instance.last_error
        elif request.status == RequestStatus.REJECTED.value:
            reason = request.rejection_reason
        return AdvanceResult(
            instance_id=instance.id,
            outcome=_OUTCOMES.get(status, AdvanceOutcome.DEFERRED),
            instance_status=status,
            request_status=RequestStatus(request.status),
            reason=reason,
        )

    async def _apply(
        self,
        instance_id: str,
        step: Step,
        output: StepOutput,
        error: Optional[str] = None,
    ) -> None:
        """Commit a step's events, context and side effects, and move the cursor."""
        now = self._clock()
        async with self.store.transaction() as session:
            instance = await session.get(WorkflowInstance, instance_id)
            request = await session.get(Request, instance.request_id)
            if instance.status != InstanceStatus.RUNNING.value or instance.current_step != step.name:
                logger.info(f"Step {step.name} on instance={instance_id} already applied")
                return
            context = {**(instance.context or {}), **output.context}
            state = await self._apply_events(session, instance, request, step.name, output.events, context)
            instance.context = context
            if self.machine.is_terminal(state):
                instance.current_step = None
            else:
                instance.current_step = self.definition.next_step(step.name)
            if step.wait_point:
                instance.resume_payload = None
            if error:
                instance.last_error = f"{step.name}: {error}"
            instance.updated_at = now
            instance.flagged_stale_at = None
            session.add(instance)
        logger.info(
            f"Step {step.name} applied on instance={instance_id}: request is {state.value}, "
            f"next step {instance.current_step}"
        )

    async def _apply_events(
        self,
        session: AsyncSession,
        instance: WorkflowInstance,
        request: Request,
        origin: str,
        events: Sequence[EventCall],
        context: Dict[str, Any],
        strict: bool = False,
    ) -> RequestStatus:
        """Run ``events`` through the state machine inside ``session``.

        Each transition updates the request, writes its audit event and
        queues its side effects on the instance. An event the machine
        refuses is audited and replaced by ``fail`` unless ``strict`` is
        set, in which case the error propagates and the transaction rolls
        back.
        """
        now = self._clock()
        state = RequestStatus(request.status)
        pending: List[dict] = list(instance.pending_effects or [])
        for call in events:
            ctx = {**context, **call.context}
            audited = call.context
            forced = False
            try:
                change = self.machine.transition(state, call.event, ctx)
            except InvalidTransitionError as exc:
                if strict:
                    raise
                logger.warning(f"Invalid transition on request={request.id} from {origin}: {exc}")
                await self.audit.record(
                    session,
                    entity_type=ENTITY_REQUEST,
                    entity_id=request.id,
                    action="invalid_transition",
                    actor_id=SYSTEM_ACTOR,
                    before=state.value,
                    after=state.value,
                    details={"event": call.event.value, "reason": exc.reason, "instance_id": instance.id},
                )
                if self.machine.is_terminal(state):
                    break
                ctx = {**context, "reason": str(exc)}
                audited = ctx
                change = self.machine.transition(state, Event.FAIL, ctx)
                forced = True

            request.status = change.target.value
            request.updated_at = now
            if change.target == RequestStatus.FAILED:
                request.failure_reason = ctx.get("reason")
            session.add(request)

            details: Dict[str, Any] = {"instance_id": instance.id, "step": origin}
            details.update({key: audited[key] for key in _AUDITED_KEYS if audited.get(key) is not None})
            await self.audit.record(
                session,
                entity_type=ENTITY_REQUEST,
                entity_id=request.id,
                action=change.event.value,
                actor_id=call.context.get("actor_id") or SYSTEM_ACTOR,
                before=change.source.value,
                after=change.target.value,
                details=details,
            )
            for effect in change.side_effects:
                pending.append(
                    {
                        "name": f"{origin}.{change.event.value}.{effect.kind.value}",
                        "kind": effect.kind.value,
                        "params": dict(effect.params),
                    }
                )
            state = change.target
            if forced:
                break

        instance.pending_effects = pending
        return state

    async def _suspend(self, instance_id: str, step: Step) -> None:
        now = self._clock()
        token = secrets.token_urlsafe(24)
        async with self.store.transaction() as session:
            instance = await session.get(WorkflowInstance, instance_id)
            if instance.status != InstanceStatus.RUNNING.value or instance.current_step != step.name:
                return
            instance.status = InstanceStatus.SUSPENDED.value
            instance.suspend_point = step.wait_point
            instance.resume_schema = step.schema_tag
            instance.updated_at = now
            instance.flagged_stale_at = None
            session.add(instance)
            session.add(
                ResumeToken(token=token, instance_id=instance_id, wait_point=step.wait_point, issued_at=now)
            )
            await self.audit.record(
                session,
                entity_type=ENTITY_INSTANCE,
                entity_id=instance_id,
                action="suspended",
                actor_id=SYSTEM_ACTOR,
                before=InstanceStatus.RUNNING.value,
                after=InstanceStatus.SUSPENDED.value,
                details={"wait_point": step.wait_point, "schema": step.schema_tag},
            )
        logger.info(f"Instance={instance_id} suspended at {step.wait_point}")

    async def _finish(self, instance_id: str) -> None:
        now = self._clock()
        async with self.store.transaction() as session:
            instance = await session.get(WorkflowInstance, instance_id)
            request = await session.get(Request, instance.request_id)
            failed = request.status == RequestStatus.FAILED.value
            final = InstanceStatus.FAILED if failed else InstanceStatus.COMPLETED
            instance.status = final.value
            instance.current_step = None
            instance.completed_at = now
            instance.updated_at = now
            instance.flagged_stale_at = None
            if failed and not instance.last_error:
                instance.last_error = request.failure_reason
            session.add(instance)
            await self.audit.record(
                session,
                entity_type=ENTITY_INSTANCE,
                entity_id=instance_id,
                action=final.value,
                actor_id=SYSTEM_ACTOR,
                before=InstanceStatus.RUNNING.value,
                after=final.value,
                details={"request_status": request.status, "reason": instance.last_error},
            )
        logger.info(f"Instance={instance_id} {final.value}; request={request.id} is {request.status}")

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------
    async def _drain_effects(self, instance: WorkflowInstance, request: Request) -> Optional[str]:
        """Run queued side effects in order.

        A non-blocking effect that cannot be delivered moves to the
        instance's ``deferred_effects`` for :meth:`recover` to retry.
        Returns a reason when a blocking effect has to wait for its circuit
        breaker, ``None`` otherwise.
        """
        deferred: List[dict] = []
        for effect in instance.pending_effects:
            spec = self.definition.effect(effect["kind"])
            ectx = EffectContext(
                instance=instance,
                request=request,
                name=effect["name"],
                params=dict(effect.get("params") or {}),
            )
            result = await self.executor.run(
                instance.id,
                effect["name"],
                partial(spec.handler, ectx),
                spec.policy,
                breaker_key=f"effect:{effect['kind']}",
            )
            if result.ok:
                continue
            if not spec.blocking:
                logger.error(f"Side effect {effect['name']} failed on instance={instance.id}: {result.error}")
                await self.audit.append(
                    entity_type=ENTITY_INSTANCE,
                    entity_id=instance.id,
                    action="side_effect_failed",
                    actor_id=SYSTEM_ACTOR,
                    details={"effect": effect["name"], "error": result.error, "blocking": False, "deferred": True},
                )
                deferred.append({**effect, "redeliveries": 0})
                continue
            if result.status == StepStatus.CIRCUIT_OPEN:
                logger.warning(f"Side effect {effect['name']} deferred on instance={instance.id}")
                return result.error
            await self._effect_failed(instance.id, effect, result.error, deferred)
            return None

        async with self.store.transaction() as session:
            row = await session.get(WorkflowInstance, instance.id)
            row.pending_effects = []
            if deferred:
                row.deferred_effects = [*(row.deferred_effects or []), *deferred]
            row.updated_at = self._clock()
            session.add(row)
        return None

    async def _redeliver(self, instance: WorkflowInstance, request: Request) -> int:
        """Retry deferred side effects and return how many went through.

        Each round runs under its own attempt name, so a delivered round is
        replayed rather than repeated after a crash. An effect still failing
        after ``redelivery_limit`` rounds is audited and dropped.
        """
        remaining: List[dict] = []
        delivered = 0
        for effect in instance.deferred_effects or []:
            spec = self.definition.effect(effect["kind"])
            round_no = effect.get("redeliveries", 0) + 1
            name = f"{effect['name']}.redelivery-{round_no}"
            ectx = EffectContext(
                instance=instance,
                request=request,
                name=name,
                params=dict(effect.get("params") or {}),
            )
            result = await self.executor.run(
                instance.id,
                name,
                partial(spec.handler, ectx),
                spec.policy,
                breaker_key=f"effect:{effect['kind']}",
            )
            if result.ok:
                delivered += 1
                logger.info(f"Redelivered {effect['name']} on instance={instance.id}")
                continue
            if result.status == StepStatus.CIRCUIT_OPEN:
                remaining.append(effect)
                continue
            dropped = round_no >= self.redelivery_limit
            await self.audit.append(
                entity_type=ENTITY_INSTANCE,
                entity_id=instance.id,
                action="side_effect_dropped" if dropped else "side_effect_failed",
                actor_id=SYSTEM_ACTOR,
                details={"effect": effect["name"], "error": result.error, "blocking": False, "redelivery": round_no},
            )
            if dropped:
                logger.error(f"Giving up on {effect['name']} for instance={instance.id} after {round_no} redeliveries")
            else:
                remaining.append({**effect, "redeliveries": round_no})

        async with self.store.transaction() as session:
            row = await session.get(WorkflowInstance, instance.id)
            row.deferred_effects = remaining or None
            session.add(row)
        return delivered

    async def _effect_failed(
        self, instance_id: str, effect: dict, error: Optional[str], deferred: Sequence[dict] = ()
    ) -> None:
        """A blocking side effect gave up: fail the request if it is not terminal yet."""
        now = self._clock()
        reason = f"{effect['name']} failed: {error}"
        logger.error(f"Blocking side effect failed on instance={instance_id}: {reason}")
        async with self.store.transaction() as session:
            instance = await session.get(WorkflowInstance, instance_id)
            request = await session.get(Request, instance.request_id)
            instance.pending_effects = []
            if deferred:
                instance.deferred_effects = [*(instance.deferred_effects or []), *deferred]
            instance.last_error = reason
            await self.audit.record(
                session,
                entity_type=ENTITY_INSTANCE,
                entity_id=instance_id,
                action="side_effect_failed",
                actor_id=SYSTEM_ACTOR,
                before=instance.status,
                after=instance.status,
                details={"effect": effect["name"], "error": error, "blocking": True},
            )
            if not self.machine.is_terminal(request.status):
                fail = EventCall(event=Event.FAIL, context={"reason": reason})
                await self._apply_events(
                    session, instance, request, effect["name"], [fail], dict(instance.context or {})
                )
                instance.current_step = None
                if instance.status == InstanceStatus.SUSPENDED.value:
                    await self._revoke_tokens(session, instance_id, SYSTEM_ACTOR, now)
                    instance.status = InstanceStatus.RUNNING.value
                    instance.suspend_point = None
            instance.updated_at = now
            session.add(instance)

    async def _revoke_tokens(self, session: AsyncSession, instance_id: str, actor_id: str, now: datetime) -> int:
        result = await session.execute(
            update(ResumeToken)
            .where(ResumeToken.instance_id == instance_id, ResumeToken.consumed_at.is_(None))
            .values(consumed_at=now, consumed_by=f"revoked:{actor_id}")
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    # ------------------------------------------------------------------
    # Signals on suspended instances
    # ------------------------------------------------------------------
    async def signal(
        self,
        instance_id: str,
        event: Event,
        context: Optional[Dict[str, Any]] = None,
        actor_id: str = SYSTEM_ACTOR,
    ) -> AdvanceResult:
        """Apply ``event`` to the request of a suspended instance.

        The instance stays suspended and its ResumeToken stays valid.

        Raises:
            PreconditionFailedError: the instance is not suspended.
            InvalidTransitionError: the request does not accept ``event``.
        """
        async with self.lease(instance_id) as lease:
            if lease is None:
                return await self._unleased(instance_id)
            now = self._clock()
            async with self.store.transaction() as session:
                instance = await session.get(WorkflowInstance, instance_id)
                request = await session.get(Request, instance.request_id)
                if instance.status != InstanceStatus.SUSPENDED.value:
                    raise PreconditionFailedError(
                        f"Instance {instance_id} is {instance.status}, not suspended"
                    )
                call = EventCall(event=event, context={**(context or {}), "actor_id": actor_id})
                await self._apply_events(
                    session,
                    instance,
                    request,
                    f"signal-{uuid.uuid4().hex[:8]}",
                    [call],
                    dict(instance.context or {}),
                    strict=True,
                )
                instance.updated_at = now
                session.add(instance)
            logger.info(f"Applied {event.value} to suspended instance={instance_id} by {actor_id}")

            instance, request = await self._load(instance_id)
            if instance.pending_effects:
                await self._drain_effects(instance, request)
            instance, request = await self._load(instance_id)
            if instance.status == InstanceStatus.RUNNING.value:
                return await self.drive(instance_id, lease)
            return self._result(instance, request)

    # ------------------------------------------------------------------
    # Operator surface
    # ------------------------------------------------------------------
    async def recover(self) -> List[AdvanceResult]:
        """Re-advance running instances whose lease is free or expired.

        Instances of any status holding deferred side effects are picked up
        too, and those effects are redelivered under the instance lease.
        """
        now = self._clock()
        async with self.store.session() as session:
            rows = await session.execute(
                select(WorkflowInstance.id)
                .where(
                    or_(
                        WorkflowInstance.status == InstanceStatus.RUNNING.value,
                        WorkflowInstance.deferred_effects.is_not(None),
                    ),
                    or_(
                        WorkflowInstance.lease_owner.is_(None),
                        WorkflowInstance.lease_expires_at < now,
                    ),
                )
                .order_by(WorkflowInstance.started_at)
            )
            instance_ids = list(rows.scalars().all())

        results = []
        for instance_id in instance_ids:
            logger.info(f"Recovering instance={instance_id}")
            results.append(await self._recover_one(instance_id))
        return results

    async def _recover_one(self, instance_id: str) -> AdvanceResult:
        async with self.lease(instance_id) as lease:
            if lease is None:
                return await self._unleased(instance_id)
            instance, request = await self._load(instance_id)
            if instance.deferred_effects:
                await self._redeliver(instance, request)
            if instance.status == InstanceStatus.RUNNING.value:
                return await self.drive(instance_id, lease)
            instance, request = await self._load(instance_id)
            return self._result(instance, request)

    async def find_stale(self, threshold_seconds: Optional[float] = None) -> List[WorkflowInstance]:
        """Flag running instances that made no progress within the threshold.

        Each stall is audited once; the flag clears when the instance moves
        on. Flagged instances are left untouched otherwise.
        """
        now = self._clock()
        seconds = self.stale_after_seconds if threshold_seconds is None else threshold_seconds
        cutoff = now - timedelta(seconds=seconds)
        async with self.store.transaction() as session:
            rows = await session.execute(
                select(WorkflowInstance)
                .where(
                    WorkflowInstance.status == InstanceStatus.RUNNING.value,
                    WorkflowInstance.updated_at < cutoff,
                )
                .order_by(WorkflowInstance.updated_at)
            )
            stale = list(rows.scalars().all())
            for instance in stale:
                if instance.flagged_stale_at is not None:
                    continue
                instance.flagged_stale_at = now
                session.add(instance)
                await self.audit.record(
                    session,
                    entity_type=ENTITY_INSTANCE,
                    entity_id=instance.id,
                    action="flagged_stale",
                    actor_id=SYSTEM_ACTOR,
                    before=instance.status,
                    after=instance.status,
                    details={"current_step": instance.current_step, "idle_since": instance.updated_at.isoformat()},
                )
                logger.warning(
                    f"Instance={instance.id} stale at step {instance.current_step} "
                    f"since {instance.updated_at.isoformat()}"
                )
        return stale

    async def abandon(self, instance_id: str, actor_id: str, reason: str) -> AdvanceResult:
        """Resolve an instance by hand: fail the request, refund and revoke tokens."""
        async with self.lease(instance_id) as lease:
            if lease is None:
                return await self._unleased(instance_id)
            now = self._clock()
            async with self.store.transaction() as session:
                instance = await session.get(WorkflowInstance, instance_id)
                request = await session.get(Request, instance.request_id)
                if instance.status not in _ACTIVE:
                    return AdvanceResult(
                        instance_id=instance_id,
                        outcome=_OUTCOMES[InstanceStatus(instance.status)],
                        instance_status=InstanceStatus(instance.status),
                        request_status=RequestStatus(request.status),
                        reason=f"Instance {instance_id} is already {instance.status}",
                    )
                revoked = await self._revoke_tokens(session, instance_id, actor_id, now)
                before = instance.status
                if not self.machine.is_terminal(request.status):
                    fail = EventCall(
                        event=Event.FAIL,
                        context={"reason": f"abandoned: {reason}", "actor_id": actor_id},
                    )
                    await self._apply_events(
                        session, instance, request, "abandon", [fail], dict(instance.context or {})
                    )
                instance.status = InstanceStatus.RUNNING.value
                instance.suspend_point = None
                instance.current_step = None
                instance.last_error = f"abandoned by {actor_id}: {reason}"
                instance.updated_at = now
                session.add(instance)
                await self.audit.record(
                    session,
                    entity_type=ENTITY_INSTANCE,
                    entity_id=instance_id,
                    action="abandoned",
                    actor_id=actor_id,
                    before=before,
                    after=InstanceStatus.RUNNING.value,
                    details={"reason": reason, "revoked_tokens": revoked},
                )
            logger.warning(f"Instance={instance_id} abandoned by {actor_id}: {reason}")
            return await self.drive(instance_id, lease)

    # ------------------------------------------------------------------
    async def _active_instance(self, session: AsyncSession, request_id: str) -> Optional[WorkflowInstance]:
        rows = await session.execute(
            select(WorkflowInstance).where(
                WorkflowInstance.request_id == request_id,
                WorkflowInstance.status.in_(_ACTIVE),
            )
        )
        return rows.scalars().first()
