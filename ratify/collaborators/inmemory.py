"""In-process collaborators for tests and local runs."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

from .base import BaseGenerator, BaseNotifier, GenerationInput, Notification
from .http import build_prompt

logger = logging.getLogger(__name__)


class InMemoryNotifier(BaseNotifier):
    """Keeps every notification in an outbox list."""

    def __init__(self) -> None:
        self.outbox: List[Notification] = []
        self._lock = asyncio.Lock()

    async def notify(self, recipients: Sequence[str], template: str, data: Dict[str, Any]) -> None:
        async with self._lock:
            self.outbox.append(Notification(recipients=list(recipients), template=template, data=dict(data)))

    def sent(self, template: Optional[str] = None) -> List[Notification]:
        if template is None:
            return list(self.outbox)
        return [n for n in self.outbox if n.template == template]


class LoggingNotifier(BaseNotifier):
    """Writes notifications to the log instead of delivering them."""

    async def notify(self, recipients: Sequence[str], template: str, data: Dict[str, Any]) -> None:
        logger.info(f"Notification {template} to {', '.join(recipients)}: {data}")


class TemplateGenerator(BaseGenerator):
    """Deterministic generator that renders the prompt into a letter body."""

    def __init__(self, closing: str = "Sincerely,") -> None:
        self.closing = closing
        self.calls: List[GenerationInput] = []

    async def generate(self, request: GenerationInput) -> str:
        self.calls.append(request)
        body = build_prompt(request.category, request.payload).split("\n\nRequirements:")[0]
        heading = request.title or request.category
        return f"{heading}\n\n{body}\n\n{self.closing}"
