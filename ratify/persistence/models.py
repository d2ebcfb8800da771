"""Table models for persisted workflow, ledger and audit state."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import JSON, CheckConstraint, Column, DateTime, Index, UniqueConstraint, text
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, SQLModel

from ..contracts import InstanceStatus, RequestStatus
from ..utils.clock import as_utc, utcnow

_ACTIVE_INSTANCE = text("status IN ('running', 'suspended')")


def _new_id() -> str:
    return str(uuid4())


class UTCDateTime(TypeDecorator):
    """Timestamp stored as UTC and always loaded timezone-aware.

    SQLite keeps no offset, so values read back from it are naive and get
    UTC attached here.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"naive datetime {value!r} cannot be stored, use ratify.utils.clock.utcnow")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        return as_utc(value) if value is not None else None


class Request(SQLModel, table=True):
    """The long-lived business entity driven through review."""

    __tablename__ = "requests"

    id: str = Field(default_factory=_new_id, primary_key=True)
    owner_id: str = Field(index=True)
    category: str
    title: Optional[str] = None
    status: str = Field(default=RequestStatus.DRAFT.value, index=True)
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON))
    draft_content: Optional[str] = None
    final_content: Optional[str] = None
    reviewer_id: Optional[str] = None
    review_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    failure_reason: Optional[str] = None
    workflow_instance_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class WorkflowInstance(SQLModel, table=True):
    """One durable execution of a workflow definition for one request."""

    __tablename__ = "workflow_instances"
    __table_args__ = (
        Index(
            "uq_workflow_instances_active_request",
            "request_id",
            unique=True,
            sqlite_where=_ACTIVE_INSTANCE,
            postgresql_where=_ACTIVE_INSTANCE,
        ),
    )

    id: str = Field(default_factory=_new_id, primary_key=True)
    request_id: str = Field(index=True)
    workflow: str
    status: str = Field(default=InstanceStatus.RUNNING.value, index=True)
    current_step: Optional[str] = None
    suspend_point: Optional[str] = None
    resume_schema: Optional[str] = None
    resume_payload: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    input: dict = Field(default_factory=dict, sa_column=Column(JSON))
    context: dict = Field(default_factory=dict, sa_column=Column(JSON))
    pending_effects: list = Field(default_factory=list, sa_column=Column(JSON))
    deferred_effects: Optional[list] = Field(default=None, sa_column=Column(JSON(none_as_null=True)))
    last_error: Optional[str] = None
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    flagged_stale_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    started_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    completed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)


class StepAttempt(SQLModel, table=True):
    """A single execution attempt of one step within one instance."""

    __tablename__ = "step_attempts"
    __table_args__ = (UniqueConstraint("instance_id", "step_name", "attempt"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    instance_id: str = Field(index=True)
    step_name: str
    attempt: int
    outcome: Optional[str] = None
    error: Optional[str] = None
    output: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    started_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    ended_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)


class LedgerAccount(SQLModel, table=True):
    """Per-owner balance of usage credits."""

    __tablename__ = "ledger_accounts"
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_ledger_balance"),)

    owner_id: str = Field(primary_key=True)
    balance: int = 0
    unlimited: bool = False
    trial_available: bool = True
    trial_used_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    total_consumed: int = 0
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class LedgerEntry(SQLModel, table=True):
    """Journal line for every debit, refund and grant, unique per reference."""

    __tablename__ = "ledger_entries"
    __table_args__ = (UniqueConstraint("owner_id", "reference"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    owner_id: str = Field(index=True)
    reference: str
    kind: str
    amount: int
    source: Optional[str] = None
    balance_after: int
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class AuditEvent(SQLModel, table=True):
    """Immutable record of one state change of one entity."""

    __tablename__ = "audit_events"
    __table_args__ = (UniqueConstraint("entity_type", "entity_id", "sequence"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    entity_type: str
    entity_id: str = Field(index=True)
    sequence: int
    action: str
    actor_id: str
    before_state: Optional[str] = None
    after_state: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class ResumeToken(SQLModel, table=True):
    """Single-use credential for continuing a suspended instance."""

    __tablename__ = "resume_tokens"

    token: str = Field(primary_key=True)
    instance_id: str = Field(index=True)
    wait_point: str
    issued_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    consumed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    consumed_by: Optional[str] = None
