"""Wiring of the ratify components from configuration."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from .approval import RequestWorkflow
from .audit import AuditLog
from .collaborators import (
    BaseGenerator,
    BaseNotifier,
    HttpGenerator,
    LoggingNotifier,
    ReviewerDirectory,
    TemplateGenerator,
)
from .config import RatifyConfig, load_config
from .contracts import AdvanceOutcome, AdvanceResult
from .dispatch import ResumeDispatcher
from .executor import BreakerRegistry, StepExecutor
from .ledger import Ledger
from .persistence import Store, get_store
from .runtime import WorkflowRuntime
from .utils.clock import utcnow

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: RatifyConfig
    store: Store
    audit: AuditLog
    ledger: Ledger
    executor: StepExecutor
    runtime: WorkflowRuntime
    dispatcher: ResumeDispatcher
    workflow: RequestWorkflow
    generator: BaseGenerator
    notifier: BaseNotifier

    async def submit(
        self,
        owner_id: str,
        category: str,
        payload: Optional[Dict[str, Any]] = None,
        title: Optional[str] = None,
    ) -> AdvanceResult:
        """Create a request, start its instance and advance to the first stop."""
        request = await self.runtime.create_request(owner_id, category, payload, title)
        started = await self.runtime.start(request.id)
        if not started.started:
            return AdvanceResult(outcome=AdvanceOutcome.PRECONDITION_FAILED, reason=started.reason)
        return await self.runtime.advance(started.instance_id)

    async def close(self) -> None:
        await self.generator.close()
        await self.store.dispose()


async def build_services(
    config: Optional[RatifyConfig] = None,
    *,
    store: Optional[Store] = None,
    generator: Optional[BaseGenerator] = None,
    notifier: Optional[BaseNotifier] = None,
    reviewers: Optional[ReviewerDirectory] = None,
    breakers: Optional[BreakerRegistry] = None,
    clock: Callable[[], datetime] = utcnow,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    init_db: bool = True,
) -> Services:
    """Assemble store, ledger, runtime and dispatcher.

    Without an explicit generator the HTTP provider is used when
    ``generation.endpoint`` is configured, a local template generator
    otherwise. Notifications go to the log unless a notifier is given.
    """
    config = config or load_config()
    store = store or get_store(config=config)
    if init_db:
        await store.init_db()

    audit = AuditLog(store, clock)
    ledger = Ledger.from_config(store, audit, config.ledger, clock)
    executor = StepExecutor(store, breakers or BreakerRegistry(), clock, sleep)
    if generator is None:
        if config.generation.endpoint:
            generator = HttpGenerator.from_config(config.generation)
        else:
            logger.info("No generation endpoint configured; using the template generator")
            generator = TemplateGenerator()
    notifier = notifier or LoggingNotifier()
    reviewers = reviewers or ReviewerDirectory(config.notifications.reviewers)

    workflow = RequestWorkflow(
        store,
        audit,
        ledger,
        generator,
        notifier,
        reviewers,
        site_url=config.notifications.site_url,
        clock=clock,
    )
    runtime = WorkflowRuntime.from_config(
        store, audit, executor, workflow.definition(config), config.runtime, clock
    )
    dispatcher = ResumeDispatcher(store, audit, runtime, clock)
    return Services(
        config=config,
        store=store,
        audit=audit,
        ledger=ledger,
        executor=executor,
        runtime=runtime,
        dispatcher=dispatcher,
        workflow=workflow,
        generator=generator,
        notifier=notifier,
    )
