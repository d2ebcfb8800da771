"""Typed contracts exchanged between ratify components and their callers."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class RequestStatus(str, Enum):
    """Lifecycle states of a request."""

    DRAFT = "draft"
    GENERATING = "generating"
    AWAITING_REVIEW = "awaiting_review"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"
    REJECTED_FINAL = "rejected_final"
    FAILED = "failed"


class Event(str, Enum):
    """Events accepted by the request lifecycle."""

    SUBMIT = "submit"
    GENERATED = "generated"
    START_REVIEW = "start_review"
    APPROVE = "approve"
    REJECT = "reject"
    FINALIZE = "finalize"
    CLOSE = "close"
    RESUBMIT = "resubmit"
    FAIL = "fail"


class InstanceStatus(str, Enum):
    RUNNING = "running"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable-failure"
    FATAL_FAILURE = "fatal-failure"


class StepStatus(str, Enum):
    """Overall result of running one step through the executor."""

    SUCCESS = "success"
    FAILED = "failed"
    CIRCUIT_OPEN = "circuit-open"


class SideEffectKind(str, Enum):
    PERSIST_DRAFT = "persist_draft"
    NOTIFY_REVIEWERS = "notify_reviewers"
    NOTIFY_OWNER = "notify_owner"
    PERSIST_DECISION = "persist_decision"
    REFUND_CREDIT = "refund_credit"


class CreditSource(str, Enum):
    BALANCE = "balance"
    TRIAL = "trial"
    UNLIMITED = "unlimited"


class AdvanceOutcome(str, Enum):
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"
    BUSY = "busy"
    DEFERRED = "deferred"
    NOT_FOUND = "not_found"
    PRECONDITION_FAILED = "precondition_failed"


class StartOutcome(str, Enum):
    STARTED = "started"
    PRECONDITION_FAILED = "precondition_failed"


class ResumeOutcome(str, Enum):
    RESUMED = "resumed"
    CONFLICT = "conflict"
    PRECONDITION_FAILED = "precondition_failed"
    REVIEW_STARTED = "review_started"
    BUSY = "busy"


class SideEffect(BaseModel):
    """Action requested by a transition, executed later as its own step."""

    kind: SideEffectKind
    params: Dict[str, Any] = Field(default_factory=dict)


class Transition(BaseModel):
    """Outcome of applying an event to a lifecycle state."""

    source: RequestStatus
    event: Event
    target: RequestStatus
    side_effects: List[SideEffect] = Field(default_factory=list)


class EventCall(BaseModel):
    """An event a step asks the runtime to apply, with its guard context."""

    event: Event
    context: Dict[str, Any] = Field(default_factory=dict)


class StepOutput(BaseModel):
    """What a step handler hands back to the runtime."""

    events: List[EventCall] = Field(default_factory=list)
    context: Dict[str, Any] = Field(default_factory=dict)


class StepResult(BaseModel):
    step_name: str
    status: StepStatus
    output: Optional[Dict[str, Any]] = None
    attempts: int = 0
    error: Optional[str] = None
    replayed: bool = False

    @property
    def ok(self) -> bool:
        return self.status == StepStatus.SUCCESS


class CreditHold(BaseModel):
    """Record of a credit consumed on behalf of a workflow instance."""

    owner_id: str
    amount: int = 1
    reference: str
    source: CreditSource


class DeductResult(BaseModel):
    granted: bool
    remaining: int = 0
    reason: str
    source: Optional[CreditSource] = None
    reference: Optional[str] = None


class RefundAck(BaseModel):
    applied: bool
    balance: int
    reference: str
    reason: Optional[str] = None


class GrantAck(BaseModel):
    applied: bool
    balance: int
    reference: str


class Decision(BaseModel):
    """Reviewer decision carried by a resume call."""

    approved: bool
    reviewer_id: str
    final_content: Optional[str] = None
    reason: Optional[str] = None
    notes: Optional[str] = None
    allow_resubmit: bool = False


class StartResult(BaseModel):
    """Outcome of starting an instance for a request."""

    outcome: StartOutcome
    request_id: str
    instance_id: Optional[str] = None
    reason: Optional[str] = None

    @property
    def started(self) -> bool:
        return self.outcome == StartOutcome.STARTED


class AdvanceResult(BaseModel):
    instance_id: Optional[str] = None
    outcome: AdvanceOutcome
    instance_status: Optional[InstanceStatus] = None
    request_status: Optional[RequestStatus] = None
    reason: Optional[str] = None


class ResumeResult(BaseModel):
    outcome: ResumeOutcome
    instance_id: str
    message: str
    decided_by: Optional[str] = None
    decided_at: Optional[datetime] = None
    advance: Optional[AdvanceResult] = None


class HistoryEntry(BaseModel):
    sequence: int
    action: str
    actor_id: str
    before_state: Optional[str] = None
    after_state: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class StatusView(BaseModel):
    """Read model answering "where is my request and how did it get there"."""

    request_id: str
    status: RequestStatus
    instance_id: Optional[str] = None
    instance_status: Optional[InstanceStatus] = None
    current_step: Optional[str] = None
    suspend_point: Optional[str] = None
    reason: Optional[str] = None
    history: List[HistoryEntry] = Field(default_factory=list)


class PendingDecision(BaseModel):
    instance_id: str
    request_id: str
    wait_point: str
    resume_token: str
    issued_at: datetime
    request_status: RequestStatus
    owner_id: str
    category: str
    title: Optional[str] = None
