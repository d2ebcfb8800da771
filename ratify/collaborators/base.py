"""Interfaces for the collaborators the workflow calls out to."""

from __future__ import annotations

import abc
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from ..utils.clock import utcnow


class GenerationInput(BaseModel):
    category: str
    title: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class Notification(BaseModel):
    recipients: List[str]
    template: str
    data: Dict[str, Any] = Field(default_factory=dict)
    sent_at: datetime = Field(default_factory=utcnow)


class BaseGenerator(metaclass=abc.ABCMeta):
    """Produces draft content for a request.

    Implementations are treated as unreliable: raise
    :class:`~ratify.errors.RetryableStepError` for transient trouble and
    :class:`~ratify.errors.FatalStepError` for a permanent refusal.
    """

    @abc.abstractmethod
    async def generate(self, request: GenerationInput) -> str:
        raise NotImplementedError

    async def close(self) -> None:
        """Release held resources (no-op by default)."""
        pass


class BaseNotifier(metaclass=abc.ABCMeta):
    """Delivers templated notifications; delivery is at-least-once."""

    @abc.abstractmethod
    async def notify(self, recipients: Sequence[str], template: str, data: Dict[str, Any]) -> None:
        raise NotImplementedError


class ReviewerDirectory:
    """Fixed list of reviewer recipients."""

    def __init__(self, reviewers: Sequence[str] = ()) -> None:
        self._reviewers = list(reviewers)

    async def reviewers(self) -> List[str]:
        return list(self._reviewers)
