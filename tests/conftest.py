"""Shared fixtures: in-memory store, injected clock and scripted collaborators."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest
import pytest_asyncio

from ratify import queries
from ratify.collaborators import BaseGenerator, GenerationInput, InMemoryNotifier
from ratify.config import NotificationConfig, RatifyConfig, RuntimeConfig
from ratify.constants import REVIEW_WAIT_POINT
from ratify.persistence import Store
from ratify.service import build_services

DRAFT = "Dear Landlord,\n\nPlease return the deposit.\n\nSincerely,"


class FakeClock:
    """UTC clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2026, 1, 5, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class ScriptedGenerator(BaseGenerator):
    """Plays back a script: strings are returned, exceptions are raised."""

    def __init__(self, *script, default: str = DRAFT) -> None:
        self.script: List = list(script)
        self.default = default
        self.calls: List[GenerationInput] = []

    async def generate(self, request: GenerationInput) -> str:
        self.calls.append(request)
        if self.script:
            item = self.script.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item
        return self.default


async def no_sleep(delay: float) -> None:
    return None


def make_config(**overrides) -> RatifyConfig:
    values = {
        "runtime": RuntimeConfig(lease_wait_seconds=0.5),
        "notifications": NotificationConfig(reviewers=["reviewer-1", "reviewer-2"]),
    }
    values.update(overrides)
    return RatifyConfig(**values)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def generator() -> ScriptedGenerator:
    return ScriptedGenerator()


@pytest.fixture
def notifier() -> InMemoryNotifier:
    return InMemoryNotifier()


@pytest.fixture
def config() -> RatifyConfig:
    return make_config()


@pytest_asyncio.fixture
async def store():
    store = Store("sqlite+aiosqlite://")
    await store.init_db()
    yield store
    await store.dispose()


@pytest_asyncio.fixture
async def services(store, config, clock, generator, notifier):
    services = await build_services(
        config,
        store=store,
        generator=generator,
        notifier=notifier,
        clock=clock,
        sleep=no_sleep,
    )
    yield services
    await services.generator.close()


@pytest.fixture
def spawn(config, clock):
    """Build a fresh set of services on ``database_url``, as a new process would."""

    async def build(database_url: str, generator: Optional[BaseGenerator] = None, notifier=None):
        return await build_services(
            config,
            store=Store(database_url),
            generator=generator or ScriptedGenerator(),
            notifier=notifier or InMemoryNotifier(),
            clock=clock,
            sleep=no_sleep,
        )

    return build


@pytest.fixture
def to_review(services):
    """Open an account, submit a request and run it to the reviewer stop.

    Returns ``(request_id, instance_id, resume_token)``.
    """

    async def run(owner_id: str = "owner-1", balance: int = 1, payload: Optional[dict] = None):
        await services.ledger.open_account(owner_id, balance=balance, trial=False)
        request = await services.runtime.create_request(
            owner_id, "demand_letter", payload or {"recipientName": "ACME Rentals"}
        )
        instance_id = (await services.runtime.start(request.id)).instance_id
        await services.runtime.advance(instance_id)
        pending = await queries.pending_decisions(services.store)
        token = next(p.resume_token for p in pending if p.instance_id == instance_id)
        return request.id, instance_id, token

    return run


@pytest.fixture
def wait_point() -> str:
    return REVIEW_WAIT_POINT
