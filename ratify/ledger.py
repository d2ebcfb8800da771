"""Atomic credit ledger: check-and-deduct, refund and grant."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from .audit import AuditLog
from .config import LedgerConfig
from .constants import ACCOUNT_NOT_FOUND, DEFAULT_PLANS, ENTITY_ACCOUNT, INSUFFICIENT_BALANCE, SYSTEM_ACTOR
from .contracts import CreditSource, DeductResult, GrantAck, RefundAck
from .errors import LedgerBusyError, PreconditionFailedError
from .persistence import LedgerAccount, LedgerEntry, Store
from .utils.clock import as_utc, utcnow

logger = logging.getLogger(__name__)

_GRANT_REASONS = {
    CreditSource.BALANCE: "granted",
    CreditSource.TRIAL: "trial",
    CreditSource.UNLIMITED: "unlimited",
}


@dataclass(frozen=True)
class Eligibility:
    granted: bool
    reason: str
    source: Optional[CreditSource] = None


class EligibilityPolicy(Protocol):
    """Decides whether an account may consume ``amount`` credits now."""

    def evaluate(self, account: LedgerAccount, amount: int, now: datetime) -> Eligibility:
        ...


class StandardEligibility:
    """Unlimited accounts first, then the paid balance, then a one-off trial.

    The trial covers a single credit for an account that has never consumed
    or been granted credits and, when ``trial_days`` is set, only within
    that many days of the account being opened.
    """

    def __init__(self, trial_enabled: bool = True, trial_days: Optional[int] = None) -> None:
        self.trial_enabled = trial_enabled
        self.trial_days = trial_days

    def evaluate(self, account: LedgerAccount, amount: int, now: datetime) -> Eligibility:
        if account.unlimited:
            return Eligibility(True, _GRANT_REASONS[CreditSource.UNLIMITED], CreditSource.UNLIMITED)
        if account.balance >= amount:
            return Eligibility(True, _GRANT_REASONS[CreditSource.BALANCE], CreditSource.BALANCE)
        if self.trial_enabled and amount == 1 and self._trial_open(account) and self._in_window(account, now):
            return Eligibility(True, _GRANT_REASONS[CreditSource.TRIAL], CreditSource.TRIAL)
        return Eligibility(False, INSUFFICIENT_BALANCE)

    def _trial_open(self, account: LedgerAccount) -> bool:
        return account.trial_available and account.total_consumed == 0

    def _in_window(self, account: LedgerAccount, now: datetime) -> bool:
        if self.trial_days is None:
            return True
        return now < as_utc(account.created_at) + timedelta(days=self.trial_days)


class Ledger:
    """Per-owner credit accounting with serializable check-and-deduct.

    Each mutation locks the owner's account row for the duration of one
    transaction and journals a :class:`LedgerEntry` whose
    ``(owner_id, reference)`` pair is unique, which makes debits, refunds
    and grants idempotent per reference. The ledger never retries; lock
    contention surfaces as :class:`LedgerBusyError` for the caller to retry.
    """

    def __init__(
        self,
        store: Store,
        audit: AuditLog,
        policy: Optional[EligibilityPolicy] = None,
        plans: Optional[Dict[str, int]] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._audit = audit
        self._policy = policy or StandardEligibility()
        self._plans = dict(plans or DEFAULT_PLANS)
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        store: Store,
        audit: AuditLog,
        config: LedgerConfig,
        clock: Callable[[], datetime] = utcnow,
    ) -> "Ledger":
        policy = StandardEligibility(config.trial_enabled, config.trial_days)
        return cls(store, audit, policy=policy, plans=config.plans, clock=clock)

    # ------------------------------------------------------------------
    async def _lock_account(self, session: AsyncSession, owner_id: str) -> Optional[LedgerAccount]:
        try:
            result = await session.execute(
                select(LedgerAccount).where(LedgerAccount.owner_id == owner_id).with_for_update()
            )
        except OperationalError as exc:
            raise LedgerBusyError(f"ledger row for {owner_id} is locked: {exc}") from exc
        return result.scalars().first()

    async def _entry(self, session: AsyncSession, owner_id: str, reference: str) -> Optional[LedgerEntry]:
        result = await session.execute(
            select(LedgerEntry).where(
                LedgerEntry.owner_id == owner_id, LedgerEntry.reference == reference
            )
        )
        return result.scalars().first()

    async def _has_grant(self, session: AsyncSession, owner_id: str) -> bool:
        result = await session.execute(
            select(LedgerEntry.id).where(LedgerEntry.owner_id == owner_id, LedgerEntry.kind == "grant").limit(1)
        )
        return result.first() is not None

    def _journal(
        self,
        session: AsyncSession,
        account: LedgerAccount,
        kind: str,
        amount: int,
        reference: str,
        source: Optional[CreditSource] = None,
    ) -> None:
        now = self._clock()
        account.updated_at = now
        session.add(account)
        session.add(
            LedgerEntry(
                owner_id=account.owner_id,
                reference=reference,
                kind=kind,
                amount=amount,
                source=source.value if source else None,
                balance_after=account.balance,
                created_at=now,
            )
        )

    # ------------------------------------------------------------------
    async def open_account(
        self,
        owner_id: str,
        *,
        balance: int = 0,
        unlimited: bool = False,
        trial: bool = True,
        actor_id: str = SYSTEM_ACTOR,
    ) -> LedgerAccount:
        """Create the owner's account, or return it unchanged if it exists."""
        if balance < 0:
            raise ValueError("opening balance cannot be negative")
        async with self._store.transaction() as session:
            account = await self._lock_account(session, owner_id)
            if account is not None:
                return account
            now = self._clock()
            account = LedgerAccount(
                owner_id=owner_id,
                balance=balance,
                unlimited=unlimited,
                trial_available=trial,
                created_at=now,
                updated_at=now,
            )
            session.add(account)
            await self._audit.record(
                session,
                entity_type=ENTITY_ACCOUNT,
                entity_id=owner_id,
                action="opened",
                actor_id=actor_id,
                after=str(balance),
                details={"unlimited": unlimited, "trial": trial},
            )
        logger.info(f"Opened ledger account for owner={owner_id} balance={balance}")
        return account

    async def check_and_deduct(
        self, owner_id: str, amount: int = 1, reference: Optional[str] = None
    ) -> DeductResult:
        """Atomically verify eligibility and consume ``amount`` credits.

        Replaying a ``reference`` that already has a debit returns the
        original grant without consuming again.
        """
        if amount <= 0:
            raise ValueError("amount must be positive")
        reference = reference or f"debit:{uuid.uuid4()}"
        async with self._store.transaction() as session:
            account = await self._lock_account(session, owner_id)
            if account is None:
                logger.warning(f"Debit refused for owner={owner_id}: account not found")
                return DeductResult(granted=False, remaining=0, reason=ACCOUNT_NOT_FOUND, reference=reference)

            existing = await self._entry(session, owner_id, reference)
            if existing is not None:
                source = CreditSource(existing.source) if existing.source else CreditSource.BALANCE
                return DeductResult(
                    granted=True,
                    remaining=account.balance,
                    reason=_GRANT_REASONS[source],
                    source=source,
                    reference=reference,
                )

            now = self._clock()
            verdict = self._policy.evaluate(account, amount, now)
            before = account.balance
            if not verdict.granted:
                await self._audit.record(
                    session,
                    entity_type=ENTITY_ACCOUNT,
                    entity_id=owner_id,
                    action="debit_denied",
                    actor_id=SYSTEM_ACTOR,
                    before=str(before),
                    after=str(before),
                    details={"reference": reference, "amount": amount, "reason": verdict.reason},
                )
                logger.info(f"Debit denied for owner={owner_id}: {verdict.reason}")
                return DeductResult(
                    granted=False, remaining=before, reason=verdict.reason, reference=reference
                )

            if verdict.source == CreditSource.BALANCE:
                account.balance -= amount
            elif verdict.source == CreditSource.TRIAL:
                account.trial_available = False
                account.trial_used_at = now
            account.total_consumed += amount
            self._journal(session, account, "debit", amount, reference, verdict.source)
            await self._audit.record(
                session,
                entity_type=ENTITY_ACCOUNT,
                entity_id=owner_id,
                action="debit",
                actor_id=SYSTEM_ACTOR,
                before=str(before),
                after=str(account.balance),
                details={"reference": reference, "amount": amount, "source": verdict.source.value},
            )
            remaining = account.balance

        logger.info(
            f"Debited {amount} from owner={owner_id} via {verdict.source.value}, remaining={remaining}"
        )
        return DeductResult(
            granted=True,
            remaining=remaining,
            reason=verdict.reason,
            source=verdict.source,
            reference=reference,
        )

    async def refund(
        self,
        owner_id: str,
        amount: int,
        reference: str,
        source: CreditSource | str = CreditSource.BALANCE,
    ) -> RefundAck:
        """Return consumed credits; applied at most once per ``reference``."""
        source = CreditSource(source)
        async with self._store.transaction() as session:
            account = await self._lock_account(session, owner_id)
            if account is None:
                logger.warning(f"Refund {reference} refused for owner={owner_id}: account not found")
                return RefundAck(applied=False, balance=0, reference=reference, reason=ACCOUNT_NOT_FOUND)
            if await self._entry(session, owner_id, reference) is not None:
                return RefundAck(applied=False, balance=account.balance, reference=reference)

            before = account.balance
            if source == CreditSource.BALANCE:
                account.balance += amount
            elif source == CreditSource.TRIAL and not await self._has_grant(session, owner_id):
                account.trial_available = True
                account.trial_used_at = None
            account.total_consumed = max(0, account.total_consumed - amount)
            self._journal(session, account, "refund", amount, reference, source)
            await self._audit.record(
                session,
                entity_type=ENTITY_ACCOUNT,
                entity_id=owner_id,
                action="refund",
                actor_id=SYSTEM_ACTOR,
                before=str(before),
                after=str(account.balance),
                details={"reference": reference, "amount": amount, "source": source.value},
            )
            balance = account.balance

        logger.info(f"Refunded {amount} to owner={owner_id} ({reference}), balance={balance}")
        return RefundAck(applied=True, balance=balance, reference=reference)

    async def grant(self, owner_id: str, amount: int, event_id: str) -> GrantAck:
        """Apply a billing provider grant, idempotent by provider event id."""
        if amount <= 0:
            raise ValueError("grant amount must be positive")
        async with self._store.transaction() as session:
            account = await self._lock_account(session, owner_id)
            if account is None:
                now = self._clock()
                account = LedgerAccount(owner_id=owner_id, created_at=now, updated_at=now)
                session.add(account)
                await session.flush()
            elif await self._entry(session, owner_id, event_id) is not None:
                return GrantAck(applied=False, balance=account.balance, reference=event_id)

            before = account.balance
            account.balance += amount
            account.trial_available = False
            self._journal(session, account, "grant", amount, event_id, CreditSource.BALANCE)
            await self._audit.record(
                session,
                entity_type=ENTITY_ACCOUNT,
                entity_id=owner_id,
                action="grant",
                actor_id="billing",
                before=str(before),
                after=str(account.balance),
                details={"reference": event_id, "amount": amount},
            )
            balance = account.balance

        logger.info(f"Granted {amount} to owner={owner_id} ({event_id}), balance={balance}")
        return GrantAck(applied=True, balance=balance, reference=event_id)

    async def grant_plan(self, owner_id: str, plan: str, event_id: str) -> GrantAck:
        """Grant the units a billing plan carries."""
        units = self._plans.get(plan)
        if units is None:
            raise ValueError(f"Invalid plan type: {plan}")
        return await self.grant(owner_id, units, event_id)

    async def set_unlimited(
        self, owner_id: str, unlimited: bool = True, actor_id: str = SYSTEM_ACTOR
    ) -> LedgerAccount:
        async with self._store.transaction() as session:
            account = await self._lock_account(session, owner_id)
            if account is None:
                raise PreconditionFailedError(f"no ledger account for owner {owner_id}")
            before = account.unlimited
            account.unlimited = unlimited
            account.updated_at = self._clock()
            session.add(account)
            await self._audit.record(
                session,
                entity_type=ENTITY_ACCOUNT,
                entity_id=owner_id,
                action="unlimited_changed",
                actor_id=actor_id,
                before=str(account.balance),
                after=str(account.balance),
                details={"was": before, "now": unlimited},
            )
        return account

    async def get_account(self, owner_id: str) -> Optional[LedgerAccount]:
        async with self._store.session() as session:
            return await session.get(LedgerAccount, owner_id)

    async def entries(self, owner_id: str) -> list[LedgerEntry]:
        async with self._store.session() as session:
            result = await session.execute(
                select(LedgerEntry).where(LedgerEntry.owner_id == owner_id).order_by(LedgerEntry.id)
            )
            return list(result.scalars().all())
