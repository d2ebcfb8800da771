"""Step execution with bounded retries, backoff, timeouts and circuit breaking."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from pydantic import BaseModel, ValidationError
from sqlalchemy import func, select

from .config import BreakerConfig, RetryConfig
from .contracts import AttemptOutcome, StepResult, StepStatus
from .errors import FatalStepError, PreconditionFailedError, RetryableStepError
from .persistence import StepAttempt, Store
from .utils.clock import utcnow
from .utils.retry import compute_backoff

logger = logging.getLogger(__name__)

StepFn = Callable[[], Awaitable[Any]]
Classifier = Callable[[BaseException], AttemptOutcome]

_RETRYABLE_STATUS = (429, 500, 502, 503, 504)


def default_classifier(error: BaseException) -> AttemptOutcome:
    """Decide whether a failed attempt is worth repeating."""
    if isinstance(error, RetryableStepError):
        return AttemptOutcome.RETRYABLE_FAILURE
    if isinstance(error, (FatalStepError, PreconditionFailedError, ValidationError, ValueError, TypeError)):
        return AttemptOutcome.FATAL_FAILURE
    if isinstance(error, httpx.HTTPStatusError):
        if error.response.status_code in _RETRYABLE_STATUS or error.response.status_code >= 500:
            return AttemptOutcome.RETRYABLE_FAILURE
        return AttemptOutcome.FATAL_FAILURE
    return AttemptOutcome.RETRYABLE_FAILURE


@dataclass
class StepPolicy:
    """Retry, timeout and breaker settings for one step."""

    max_attempts: int = 3
    base_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.25
    timeout: Optional[float] = 60.0
    breaker_threshold: int = 5
    breaker_cooldown: float = 60.0
    classify: Classifier = default_classifier

    @classmethod
    def from_config(
        cls, retry: RetryConfig, breaker: Optional[BreakerConfig] = None
    ) -> "StepPolicy":
        breaker = breaker or BreakerConfig()
        return cls(
            max_attempts=retry.max_attempts,
            base_delay=retry.base_delay,
            factor=retry.factor,
            max_delay=retry.max_delay,
            jitter=retry.jitter,
            timeout=retry.timeout,
            breaker_threshold=breaker.threshold,
            breaker_cooldown=breaker.cooldown_seconds,
        )

    def backoff(self, attempt: int) -> float:
        return compute_backoff(attempt, self.base_delay, self.factor, self.max_delay, self.jitter)


class CircuitBreaker:
    """Per-step circuit breaker over consecutive fatal failures.

    States:
      closed    - normal operation, fatal failures increment the counter
      open      - new attempts are short-circuited until the cool-down ends
      half_open - a single caller may try; success closes, failure re-opens
    """

    def __init__(
        self,
        threshold: int = 5,
        cooldown: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.threshold = threshold
        self.cooldown = cooldown
        self._clock = clock
        self._failures = 0
        self._opened_at = 0.0
        self._state = "closed"
        self._trial_started_at: Optional[float] = None
        self._lock = threading.Lock()

    def _refresh(self) -> None:
        if self._state == "open" and self._clock() - self._opened_at >= self.cooldown:
            self._state = "half_open"
            self._trial_started_at = None

    @property
    def state(self) -> str:
        with self._lock:
            self._refresh()
            return self._state

    def allow(self) -> bool:
        """Claim the right to run one attempt now.

        While half-open only the first caller is let through. Everyone else
        is refused until that caller records an outcome, or until another
        cool-down passes without one.
        """
        with self._lock:
            self._refresh()
            if self._state == "closed":
                return True
            if self._state == "open":
                return False
            now = self._clock()
            if self._trial_started_at is not None and now - self._trial_started_at < self.cooldown:
                return False
            self._trial_started_at = now
            return True

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._state = "closed"
            self._trial_started_at = None

    def record_fatal(self) -> None:
        with self._lock:
            self._failures += 1
            if self._state == "half_open" or self._failures >= self.threshold:
                self._state = "open"
                self._opened_at = self._clock()
                self._trial_started_at = None

    def reset(self) -> None:
        with self._lock:
            self._failures = 0
            self._state = "closed"
            self._opened_at = 0.0
            self._trial_started_at = None


class BreakerRegistry:
    """Circuit breakers shared by every instance, keyed by step."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, key: str, policy: StepPolicy) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(key)
            if breaker is None:
                breaker = CircuitBreaker(policy.breaker_threshold, policy.breaker_cooldown, self._clock)
                self._breakers[key] = breaker
            return breaker

    def reset_all(self) -> None:
        with self._lock:
            for breaker in self._breakers.values():
                breaker.reset()
            self._breakers.clear()


@dataclass
class StepExecutor:
    """Runs one idempotent unit of work and records every attempt.

    An attempt row is written before ``fn`` is invoked and finalized right
    after, so a crash mid-attempt leaves a row with no outcome. Such rows
    count as failed attempts that need a retry; they are never rewritten.
    A step that already has a successful attempt is not run again: its
    recorded output is returned instead.
    """

    store: Store
    breakers: BreakerRegistry = field(default_factory=BreakerRegistry)
    clock: Callable[[], datetime] = utcnow
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep

    async def run(
        self,
        instance_id: str,
        step_name: str,
        fn: StepFn,
        policy: StepPolicy,
        breaker_key: Optional[str] = None,
    ) -> StepResult:
        done = await self._successful_attempt(instance_id, step_name)
        if done is not None:
            return StepResult(
                step_name=step_name,
                status=StepStatus.SUCCESS,
                output=done.output,
                attempts=done.attempt,
                replayed=True,
            )

        breaker = self.breakers.get(breaker_key or step_name, policy)
        if not breaker.allow():
            logger.warning(
                f"Circuit open for {breaker_key or step_name}; not attempting "
                f"{step_name} on instance={instance_id}"
            )
            return StepResult(
                step_name=step_name,
                status=StepStatus.CIRCUIT_OPEN,
                error=f"circuit open for {breaker_key or step_name}",
            )

        last_error: Optional[str] = None
        attempt_no = 0
        for tries in range(1, policy.max_attempts + 1):
            attempt_no = await self._begin_attempt(instance_id, step_name)
            try:
                if policy.timeout:
                    value = await asyncio.wait_for(fn(), timeout=policy.timeout)
                else:
                    value = await fn()
            except Exception as exc:
                if isinstance(exc, asyncio.TimeoutError):
                    last_error = f"attempt timed out after {policy.timeout}s"
                    outcome = AttemptOutcome.RETRYABLE_FAILURE
                else:
                    last_error = f"{type(exc).__name__}: {exc}"
                    outcome = policy.classify(exc)
                await self._finish_attempt(instance_id, step_name, attempt_no, outcome, error=last_error)
                if outcome == AttemptOutcome.FATAL_FAILURE:
                    breaker.record_fatal()
                    logger.error(
                        f"Step {step_name} failed fatally on instance={instance_id} "
                        f"attempt={attempt_no}: {last_error}"
                    )
                    return StepResult(
                        step_name=step_name,
                        status=StepStatus.FAILED,
                        attempts=attempt_no,
                        error=last_error,
                    )
                if tries < policy.max_attempts:
                    delay = policy.backoff(tries)
                    logger.warning(
                        f"Step {step_name} attempt={attempt_no} on instance={instance_id} "
                        f"failed ({last_error}); retrying in {delay:.2f}s"
                    )
                    await self.sleep(delay)
                continue

            output = _as_output(value)
            await self._finish_attempt(
                instance_id, step_name, attempt_no, AttemptOutcome.SUCCESS, output=output
            )
            breaker.record_success()
            return StepResult(
                step_name=step_name,
                status=StepStatus.SUCCESS,
                output=output,
                attempts=attempt_no,
            )

        breaker.record_fatal()
        logger.error(
            f"Step {step_name} exhausted {policy.max_attempts} attempts on "
            f"instance={instance_id}: {last_error}"
        )
        return StepResult(
            step_name=step_name,
            status=StepStatus.FAILED,
            attempts=attempt_no,
            error=f"retries exhausted: {last_error}",
        )

    # ------------------------------------------------------------------
    async def _successful_attempt(self, instance_id: str, step_name: str) -> Optional[StepAttempt]:
        async with self.store.session() as session:
            result = await session.execute(
                select(StepAttempt).where(
                    StepAttempt.instance_id == instance_id,
                    StepAttempt.step_name == step_name,
                    StepAttempt.outcome == AttemptOutcome.SUCCESS.value,
                )
            )
            return result.scalars().first()

    async def _begin_attempt(self, instance_id: str, step_name: str) -> int:
        async with self.store.transaction() as session:
            last = await session.scalar(
                select(func.max(StepAttempt.attempt)).where(
                    StepAttempt.instance_id == instance_id,
                    StepAttempt.step_name == step_name,
                )
            )
            attempt_no = (last or 0) + 1
            session.add(
                StepAttempt(
                    instance_id=instance_id,
                    step_name=step_name,
                    attempt=attempt_no,
                    started_at=self.clock(),
                )
            )
        return attempt_no

    async def _finish_attempt(
        self,
        instance_id: str,
        step_name: str,
        attempt_no: int,
        outcome: AttemptOutcome,
        error: Optional[str] = None,
        output: Optional[dict] = None,
    ) -> None:
        async with self.store.transaction() as session:
            result = await session.execute(
                select(StepAttempt).where(
                    StepAttempt.instance_id == instance_id,
                    StepAttempt.step_name == step_name,
                    StepAttempt.attempt == attempt_no,
                )
            )
            row = result.scalars().one()
            row.outcome = outcome.value
            row.error = error
            row.output = output
            row.ended_at = self.clock()
            session.add(row)

    async def attempts(self, instance_id: str, step_name: Optional[str] = None) -> list[StepAttempt]:
        async with self.store.session() as session:
            query = select(StepAttempt).where(StepAttempt.instance_id == instance_id)
            if step_name is not None:
                query = query.where(StepAttempt.step_name == step_name)
            result = await session.execute(query.order_by(StepAttempt.id))
            return list(result.scalars().all())


def _as_output(value: Any) -> Optional[dict]:
    if value is None:
        return None
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, dict):
        return value
    return {"result": value}
