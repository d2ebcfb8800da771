"""Request lifecycle state machine.

Pure and deterministic: :meth:`StateMachine.transition` maps a state, an
event and a guard context to the next state plus the side effects the
runtime must carry out. Nothing here performs I/O.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .contracts import Event, RequestStatus, SideEffect, SideEffectKind, Transition
from .errors import InvalidTransitionError

S = RequestStatus
Guard = Callable[[Mapping[str, Any]], Optional[str]]
Effects = Callable[[Mapping[str, Any]], List[SideEffect]]

TERMINAL_STATES = frozenset({S.COMPLETED, S.REJECTED_FINAL, S.FAILED})


def _no_guard(ctx: Mapping[str, Any]) -> Optional[str]:
    return None


def _no_effects(ctx: Mapping[str, Any]) -> List[SideEffect]:
    return []


def _blank(value: Any) -> bool:
    return value is None or not str(value).strip()


@dataclass(frozen=True)
class Rule:
    target: RequestStatus
    guard: Guard = _no_guard
    effects: Effects = _no_effects


@dataclass
class StateMachine:
    """Transition table with guards, plus the set of absorbing states."""

    rules: Dict[Tuple[RequestStatus, Event], Rule]
    terminal: frozenset = field(default=TERMINAL_STATES)

    def is_terminal(self, state: RequestStatus | str) -> bool:
        return RequestStatus(state) in self.terminal

    def accepts(self, state: RequestStatus | str, event: Event | str) -> bool:
        return (RequestStatus(state), Event(event)) in self.rules

    def events_from(self, state: RequestStatus | str) -> List[Event]:
        state = RequestStatus(state)
        return [event for (source, event) in self.rules if source == state]

    def transition(
        self,
        state: RequestStatus | str,
        event: Event | str,
        context: Optional[Mapping[str, Any]] = None,
    ) -> Transition:
        """Return the transition for ``event`` in ``state``.

        Raises:
            InvalidTransitionError: the pair is not declared, the state is
                absorbing, or a guard rejects the context.
        """
        state = RequestStatus(state)
        event = Event(event)
        ctx = context or {}
        if state in self.terminal:
            raise InvalidTransitionError(state.value, event.value, "state is terminal")
        rule = self.rules.get((state, event))
        if rule is None:
            raise InvalidTransitionError(state.value, event.value)
        failure = rule.guard(ctx)
        if failure:
            raise InvalidTransitionError(state.value, event.value, failure)
        return Transition(
            source=state,
            event=event,
            target=rule.target,
            side_effects=rule.effects(ctx),
        )


# -- guards -------------------------------------------------------------------


def _has_draft(ctx: Mapping[str, Any]) -> Optional[str]:
    if _blank(ctx.get("draft")):
        return "generation output is empty"
    return None


def _has_reviewer(ctx: Mapping[str, Any]) -> Optional[str]:
    if _blank(ctx.get("reviewer_id")):
        return "reviewer id is required"
    return None


def _approvable(ctx: Mapping[str, Any]) -> Optional[str]:
    if _blank(ctx.get("reviewer_id")):
        return "reviewer id is required"
    if _blank(ctx.get("final_content")):
        return "final content is required for approval"
    return None


def _has_reason(ctx: Mapping[str, Any]) -> Optional[str]:
    if _blank(ctx.get("reason")):
        return "a reason is required"
    return None


# -- side effects -------------------------------------------------------------


def _owner_notice(template: str, **extra: Any) -> SideEffect:
    return SideEffect(
        kind=SideEffectKind.NOTIFY_OWNER,
        params={"template": template, **{k: v for k, v in extra.items() if v is not None}},
    )


def _generated_effects(ctx: Mapping[str, Any]) -> List[SideEffect]:
    return [
        SideEffect(kind=SideEffectKind.PERSIST_DRAFT, params={"content": ctx["draft"]}),
        SideEffect(kind=SideEffectKind.NOTIFY_REVIEWERS),
    ]


def _review_started_effects(ctx: Mapping[str, Any]) -> List[SideEffect]:
    return [_owner_notice("request-under-review", reviewer_id=ctx.get("reviewer_id"))]


def _approve_effects(ctx: Mapping[str, Any]) -> List[SideEffect]:
    return [
        SideEffect(
            kind=SideEffectKind.PERSIST_DECISION,
            params={
                "approved": True,
                "reviewer_id": ctx["reviewer_id"],
                "final_content": ctx["final_content"],
                "notes": ctx.get("notes"),
            },
        )
    ]


def _reject_effects(ctx: Mapping[str, Any]) -> List[SideEffect]:
    return [
        SideEffect(
            kind=SideEffectKind.PERSIST_DECISION,
            params={
                "approved": False,
                "reviewer_id": ctx.get("reviewer_id"),
                "reason": ctx["reason"],
                "notes": ctx.get("notes"),
            },
        ),
        _owner_notice(
            "request-rejected",
            reason=ctx["reason"],
            allow_resubmit=bool(ctx.get("allow_resubmit")),
        ),
    ]


def _finalize_effects(ctx: Mapping[str, Any]) -> List[SideEffect]:
    return [_owner_notice("request-approved")]


def _fail_effects(ctx: Mapping[str, Any]) -> List[SideEffect]:
    effects: List[SideEffect] = []
    credit = ctx.get("credit")
    if credit and credit.get("source") != "unlimited":
        effects.append(SideEffect(kind=SideEffectKind.REFUND_CREDIT, params=dict(credit)))
    effects.append(_owner_notice("request-failed", reason=ctx.get("reason")))
    return effects


def _request_rules() -> Dict[Tuple[RequestStatus, Event], Rule]:
    rules: Dict[Tuple[RequestStatus, Event], Rule] = {
        (S.DRAFT, Event.SUBMIT): Rule(S.GENERATING),
        (S.GENERATING, Event.GENERATED): Rule(S.AWAITING_REVIEW, _has_draft, _generated_effects),
        (S.AWAITING_REVIEW, Event.START_REVIEW): Rule(
            S.UNDER_REVIEW, _has_reviewer, _review_started_effects
        ),
        (S.UNDER_REVIEW, Event.APPROVE): Rule(S.APPROVED, _approvable, _approve_effects),
        (S.UNDER_REVIEW, Event.REJECT): Rule(S.REJECTED, _has_reason, _reject_effects),
        (S.APPROVED, Event.FINALIZE): Rule(S.COMPLETED, effects=_finalize_effects),
        (S.REJECTED, Event.CLOSE): Rule(S.REJECTED_FINAL),
        (S.REJECTED, Event.RESUBMIT): Rule(S.DRAFT),
    }
    for state in RequestStatus:
        if state not in TERMINAL_STATES:
            rules[(state, Event.FAIL)] = Rule(S.FAILED, _has_reason, _fail_effects)
    return rules


REQUEST_LIFECYCLE = StateMachine(rules=_request_rules())


def transition(
    state: RequestStatus | str,
    event: Event | str,
    context: Optional[Mapping[str, Any]] = None,
) -> Transition:
    """Apply ``event`` to ``state`` using the request lifecycle."""
    return REQUEST_LIFECYCLE.transition(state, event, context)
