"""The request approval workflow: reserve a credit, generate, review, finalize."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .audit import AuditLog
from .collaborators import BaseGenerator, BaseNotifier, GenerationInput, ReviewerDirectory
from .config import RatifyConfig
from .constants import ACCOUNT_NOT_FOUND, DECISION_SCHEMA, ENTITY_REQUEST, REVIEW_WAIT_POINT, SYSTEM_ACTOR
from .contracts import (
    CreditHold,
    Decision,
    Event,
    EventCall,
    RequestStatus,
    SideEffectKind,
    StepOutput,
)
from .errors import FatalStepError, PreconditionFailedError, RetryableStepError
from .executor import StepPolicy
from .ledger import Ledger
from .lifecycle import REQUEST_LIFECYCLE, StateMachine
from .persistence import Request, Store
from .utils.clock import utcnow
from .workflow import EffectContext, EffectSpec, Step, StepContext, WorkflowDefinition

logger = logging.getLogger(__name__)

WORKFLOW_NAME = "request-approval"


def decision_events(status: RequestStatus | str, decision: Decision) -> List[EventCall]:
    """Events a reviewer decision applies to a request in ``status``.

    A decision on a request nobody has picked up yet starts the review
    implicitly first.
    """
    events = []
    actor = {"actor_id": decision.reviewer_id, "reviewer_id": decision.reviewer_id}
    if RequestStatus(status) == RequestStatus.AWAITING_REVIEW:
        events.append(EventCall(event=Event.START_REVIEW, context=dict(actor)))
    if decision.approved:
        events.append(
            EventCall(
                event=Event.APPROVE,
                context={**actor, "final_content": decision.final_content, "notes": decision.notes},
            )
        )
    else:
        events.append(
            EventCall(
                event=Event.REJECT,
                context={
                    **actor,
                    "reason": decision.reason,
                    "notes": decision.notes,
                    "allow_resubmit": decision.allow_resubmit,
                },
            )
        )
    return events


def check_decision(request: Request, decision: Decision, machine: StateMachine = REQUEST_LIFECYCLE) -> None:
    """Dry-run ``decision`` against the request without touching it.

    Raises:
        InvalidTransitionError: the decision would be refused.
    """
    state = RequestStatus(request.status)
    for call in decision_events(state, decision):
        state = machine.transition(state, call.event, call.context).target


class RequestWorkflow:
    """Steps and side-effect handlers of the approval workflow."""

    def __init__(
        self,
        store: Store,
        audit: AuditLog,
        ledger: Ledger,
        generator: BaseGenerator,
        notifier: BaseNotifier,
        reviewers: Optional[ReviewerDirectory] = None,
        site_url: str = "http://localhost:3000",
        clock=utcnow,
    ) -> None:
        self.store = store
        self.audit = audit
        self.ledger = ledger
        self.generator = generator
        self.notifier = notifier
        self.reviewers = reviewers or ReviewerDirectory()
        self.site_url = site_url.rstrip("/")
        self._clock = clock

    # -- steps ------------------------------------------------------------
    async def reserve_credit(self, ctx: StepContext) -> StepOutput:
        owner_id = ctx.request.owner_id
        result = await self.ledger.check_and_deduct(
            owner_id, 1, reference=f"instance:{ctx.instance.id}:debit"
        )
        if not result.granted:
            return StepOutput(events=[EventCall(event=Event.FAIL, context={"reason": result.reason})])
        hold = CreditHold(owner_id=owner_id, amount=1, reference=result.reference, source=result.source)
        return StepOutput(
            events=[EventCall(event=Event.SUBMIT)],
            context={"credit": hold.model_dump(mode="json")},
        )

    async def generate_draft(self, ctx: StepContext) -> StepOutput:
        request = ctx.request
        content = await self.generator.generate(
            GenerationInput(
                category=request.category,
                title=request.title,
                payload={**(request.payload or {}), **(ctx.instance.input or {})},
            )
        )
        if not content or not content.strip():
            raise RetryableStepError("generator returned empty content")
        return StepOutput(events=[EventCall(event=Event.GENERATED, context={"draft": content})])

    async def await_decision(self, ctx: StepContext) -> StepOutput:
        decision = Decision.model_validate(ctx.resume or {})
        return StepOutput(
            events=decision_events(ctx.request.status, decision),
            context={"decision": decision.model_dump(mode="json")},
        )

    async def finalize(self, ctx: StepContext) -> StepOutput:
        decision = Decision.model_validate(ctx.instance.context["decision"])
        status = RequestStatus(ctx.request.status)
        if status == RequestStatus.APPROVED:
            return StepOutput(events=[EventCall(event=Event.FINALIZE, context={"actor_id": decision.reviewer_id})])
        if status == RequestStatus.REJECTED and not decision.allow_resubmit:
            return StepOutput(events=[EventCall(event=Event.CLOSE, context={"actor_id": decision.reviewer_id})])
        # A resubmittable rejection ends this instance; resubmit starts the next one.
        return StepOutput()

    # -- side effects -----------------------------------------------------
    async def persist_draft(self, ctx: EffectContext) -> Dict[str, Any]:
        content = ctx.params["content"]
        await self._update_request(
            ctx.request.id, "draft_saved", {"length": len(content)}, draft_content=content
        )
        return {"length": len(content)}

    async def persist_decision(self, ctx: EffectContext) -> Dict[str, Any]:
        params = ctx.params
        fields: Dict[str, Any] = {"reviewer_id": params.get("reviewer_id"), "review_notes": params.get("notes")}
        if params.get("approved"):
            fields["final_content"] = params.get("final_content")
        else:
            fields["rejection_reason"] = params.get("reason")
        await self._update_request(
            ctx.request.id,
            "decision_saved",
            {"approved": bool(params.get("approved")), "reviewer_id": params.get("reviewer_id")},
            **fields,
        )
        return {"approved": bool(params.get("approved"))}

    async def notify_reviewers(self, ctx: EffectContext) -> Dict[str, Any]:
        recipients = await self.reviewers.reviewers()
        if not recipients:
            logger.warning(f"No reviewers configured; request={ctx.request.id} awaits review unannounced")
            return {"sent": 0}
        request = ctx.request
        await self.notifier.notify(
            recipients,
            "reviewer-alert",
            {
                "request_id": request.id,
                "title": request.title,
                "alert_message": f'New request "{request.title}" requires review. Category: {request.category}',
                "action_url": f"{self.site_url}/review/{request.id}",
                "pending_reviews": 1,
            },
        )
        logger.info(f"Notified {len(recipients)} reviewers about request={request.id}")
        return {"sent": len(recipients)}

    async def notify_owner(self, ctx: EffectContext) -> Dict[str, Any]:
        request = ctx.request
        params = dict(ctx.params)
        template = params.pop("template")
        data = {
            "request_id": request.id,
            "title": request.title,
            "link": f"{self.site_url}/dashboard/requests/{request.id}",
            **params,
        }
        await self.notifier.notify([request.owner_id], template, data)
        logger.info(f"Notified owner={request.owner_id} with {template} for request={request.id}")
        return {"template": template}

    async def refund_credit(self, ctx: EffectContext) -> Dict[str, Any]:
        hold = CreditHold.model_validate(ctx.params)
        ack = await self.ledger.refund(
            hold.owner_id, hold.amount, reference=f"{hold.reference}:refund", source=hold.source
        )
        if ack.reason == ACCOUNT_NOT_FOUND:
            raise FatalStepError(f"cannot refund {hold.reference}: no ledger account for owner {hold.owner_id}")
        return ack.model_dump(mode="json")

    async def _update_request(self, request_id: str, action: str, details: Dict[str, Any], **fields: Any) -> None:
        async with self.store.transaction() as session:
            request = await session.get(Request, request_id)
            if request is None:
                raise PreconditionFailedError(f"Request {request_id} not found")
            for name, value in fields.items():
                setattr(request, name, value)
            request.updated_at = self._clock()
            session.add(request)
            await self.audit.record(
                session,
                entity_type=ENTITY_REQUEST,
                entity_id=request_id,
                action=action,
                actor_id=fields.get("reviewer_id") or SYSTEM_ACTOR,
                before=request.status,
                after=request.status,
                details=details,
            )

    # -- definition -------------------------------------------------------
    def definition(self, config: Optional[RatifyConfig] = None) -> WorkflowDefinition:
        config = config or RatifyConfig()

        def policy(name: str) -> StepPolicy:
            return StepPolicy.from_config(config.retry_for(name), config.breaker)

        return WorkflowDefinition(
            name=WORKFLOW_NAME,
            steps=[
                Step("reserve_credit", self.reserve_credit, policy("reserve_credit")),
                Step("generate_draft", self.generate_draft, policy("generate_draft")),
                Step(
                    "await_decision",
                    self.await_decision,
                    policy("await_decision"),
                    wait_point=REVIEW_WAIT_POINT,
                    resume_schema=Decision,
                    schema_tag=DECISION_SCHEMA,
                    validate_resume=check_decision,
                ),
                Step("finalize", self.finalize, policy("finalize")),
            ],
            effects={
                SideEffectKind.PERSIST_DRAFT: EffectSpec(self.persist_draft, policy("persist_draft")),
                SideEffectKind.NOTIFY_REVIEWERS: EffectSpec(
                    self.notify_reviewers, policy("notify_reviewers"), blocking=False
                ),
                SideEffectKind.NOTIFY_OWNER: EffectSpec(self.notify_owner, policy("notify_owner"), blocking=False),
                SideEffectKind.PERSIST_DECISION: EffectSpec(self.persist_decision, policy("persist_decision")),
                SideEffectKind.REFUND_CREDIT: EffectSpec(self.refund_credit, policy("refund_credit")),
            },
            machine=REQUEST_LIFECYCLE,
        )
