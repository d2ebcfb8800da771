"""Declarative workflow definitions executed by :class:`~ratify.runtime.WorkflowRuntime`."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type

from pydantic import BaseModel

from .contracts import SideEffectKind, StepOutput
from .executor import StepPolicy
from .lifecycle import REQUEST_LIFECYCLE, StateMachine
from .persistence import Request, WorkflowInstance


@dataclass
class StepContext:
    """Snapshot handed to a step handler.

    ``resume`` carries the validated payload of the resume call when the
    step is a wait point, ``None`` otherwise.
    """

    instance: WorkflowInstance
    request: Request
    now: datetime
    resume: Optional[Dict[str, Any]] = None


@dataclass
class EffectContext:
    instance: WorkflowInstance
    request: Request
    name: str
    params: Dict[str, Any] = field(default_factory=dict)


StepHandler = Callable[[StepContext], Awaitable[StepOutput]]
EffectHandler = Callable[[EffectContext], Awaitable[Any]]
ResumeValidator = Callable[[Request, BaseModel], None]


@dataclass
class Step:
    """One named unit of work in a workflow.

    A step with a ``wait_point`` suspends the instance until a resume call
    supplies a payload matching ``resume_schema``; ``validate_resume`` may
    reject a payload up front by raising
    :class:`~ratify.errors.InvalidTransitionError`.
    """

    name: str
    handler: StepHandler
    policy: StepPolicy = field(default_factory=StepPolicy)
    wait_point: Optional[str] = None
    resume_schema: Optional[Type[BaseModel]] = None
    schema_tag: Optional[str] = None
    validate_resume: Optional[ResumeValidator] = None


@dataclass
class EffectSpec:
    """Handler for one side-effect kind.

    Failures of a non-blocking effect are audited and skipped; failures
    of a blocking one fail the request.
    """

    handler: EffectHandler
    policy: StepPolicy = field(default_factory=StepPolicy)
    blocking: bool = True


@dataclass
class WorkflowDefinition:
    name: str
    steps: List[Step]
    effects: Dict[SideEffectKind, EffectSpec]
    machine: StateMachine = field(default_factory=lambda: REQUEST_LIFECYCLE)

    def __post_init__(self) -> None:
        names = [step.name for step in self.steps]
        if not names:
            raise ValueError(f"Workflow {self.name} has no steps")
        if len(set(names)) != len(names):
            raise ValueError(f"Workflow {self.name} has duplicate step names")

    @property
    def first_step(self) -> str:
        return self.steps[0].name

    def step(self, name: str) -> Step:
        for step in self.steps:
            if step.name == name:
                return step
        raise KeyError(f"Workflow {self.name} has no step {name}")

    def next_step(self, name: str) -> Optional[str]:
        names = [step.name for step in self.steps]
        index = names.index(name)
        return names[index + 1] if index + 1 < len(names) else None

    def wait_step(self, wait_point: str) -> Optional[Step]:
        for step in self.steps:
            if step.wait_point == wait_point:
                return step
        return None

    def effect(self, kind: SideEffectKind | str) -> EffectSpec:
        spec = self.effects.get(SideEffectKind(kind))
        if spec is None:
            raise KeyError(f"Workflow {self.name} has no handler for effect {kind}")
        return spec
