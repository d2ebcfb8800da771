"""ratify: durable approval workflows with an atomic credit ledger."""

from .approval import RequestWorkflow
from .audit import AuditLog
from .contracts import (
    AdvanceOutcome,
    AdvanceResult,
    Decision,
    Event,
    InstanceStatus,
    RequestStatus,
    ResumeOutcome,
    ResumeResult,
    StartOutcome,
    StartResult,
    StatusView,
)
from .dispatch import ResumeDispatcher
from .executor import StepExecutor, StepPolicy
from .ledger import Ledger
from .lifecycle import REQUEST_LIFECYCLE, transition
from .persistence import get_store
from .runtime import WorkflowRuntime
from .service import Services, build_services

__version__ = "0.1.0"
__all__ = [
    "AdvanceOutcome",
    "AdvanceResult",
    "AuditLog",
    "Decision",
    "Event",
    "InstanceStatus",
    "Ledger",
    "REQUEST_LIFECYCLE",
    "RequestStatus",
    "RequestWorkflow",
    "ResumeDispatcher",
    "ResumeOutcome",
    "ResumeResult",
    "Services",
    "StartOutcome",
    "StartResult",
    "StatusView",
    "StepExecutor",
    "StepPolicy",
    "WorkflowRuntime",
    "build_services",
    "get_store",
    "transition",
]
