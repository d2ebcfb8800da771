import asyncio

import pytest
import pytest_asyncio

from ratify.audit import AuditLog
from ratify.constants import ACCOUNT_NOT_FOUND, ENTITY_ACCOUNT, INSUFFICIENT_BALANCE
from ratify.contracts import CreditSource
from ratify.ledger import Ledger, StandardEligibility


@pytest_asyncio.fixture
async def ledger(store, clock):
    audit = AuditLog(store, clock)
    return Ledger(store, audit, clock=clock)


@pytest.mark.asyncio
async def test_deduct_until_exhausted(ledger):
    await ledger.open_account("owner", balance=2, trial=False)

    first = await ledger.check_and_deduct("owner")
    second = await ledger.check_and_deduct("owner")
    third = await ledger.check_and_deduct("owner")

    assert first.granted and first.source == CreditSource.BALANCE and first.remaining == 1
    assert second.granted and second.remaining == 0
    assert not third.granted
    assert third.reason == INSUFFICIENT_BALANCE
    account = await ledger.get_account("owner")
    assert account.balance == 0
    assert account.total_consumed == 2


@pytest.mark.asyncio
async def test_missing_account(ledger):
    result = await ledger.check_and_deduct("ghost")
    assert not result.granted
    assert result.reason == ACCOUNT_NOT_FOUND

    refund = await ledger.refund("ghost", 1, "ref-1")
    assert not refund.applied
    assert refund.reason == ACCOUNT_NOT_FOUND
    assert await ledger.get_account("ghost") is None
    assert await ledger.entries("ghost") == []


@pytest.mark.asyncio
async def test_concurrent_deducts_never_overdraw(ledger):
    await ledger.open_account("owner", balance=3, trial=False)

    results = await asyncio.gather(*(ledger.check_and_deduct("owner") for _ in range(25)))

    assert sum(1 for r in results if r.granted) == 3
    assert all(r.reason == INSUFFICIENT_BALANCE for r in results if not r.granted)
    assert (await ledger.get_account("owner")).balance == 0


@pytest.mark.asyncio
async def test_deduct_is_idempotent_per_reference(ledger):
    await ledger.open_account("owner", balance=5, trial=False)

    first = await ledger.check_and_deduct("owner", reference="instance:abc:debit")
    replay = await ledger.check_and_deduct("owner", reference="instance:abc:debit")

    assert first.granted and replay.granted
    assert (await ledger.get_account("owner")).balance == 4
    debits = [e for e in await ledger.entries("owner") if e.kind == "debit"]
    assert len(debits) == 1


@pytest.mark.asyncio
async def test_refund_is_idempotent(ledger):
    await ledger.open_account("owner", balance=1, trial=False)
    await ledger.check_and_deduct("owner", reference="d-1")

    first = await ledger.refund("owner", 1, "d-1:refund")
    second = await ledger.refund("owner", 1, "d-1:refund")

    assert first.applied and first.balance == 1
    assert not second.applied and second.balance == 1
    account = await ledger.get_account("owner")
    assert account.balance == 1
    assert account.total_consumed == 0


@pytest.mark.asyncio
async def test_trial_is_used_once_and_restored_by_refund(ledger):
    await ledger.open_account("owner", balance=0)

    trial = await ledger.check_and_deduct("owner", reference="t-1")
    assert trial.granted and trial.source == CreditSource.TRIAL
    assert not (await ledger.check_and_deduct("owner")).granted

    await ledger.refund("owner", 1, "t-1:refund", source=CreditSource.TRIAL)
    account = await ledger.get_account("owner")
    assert account.trial_available
    assert (await ledger.check_and_deduct("owner")).source == CreditSource.TRIAL


@pytest.mark.asyncio
async def test_trial_window_is_time_boxed(store, clock):
    audit = AuditLog(store, clock)
    ledger = Ledger(store, audit, policy=StandardEligibility(trial_days=7), clock=clock)
    await ledger.open_account("late", balance=0)
    clock.advance(days=8)

    result = await ledger.check_and_deduct("late")
    assert not result.granted
    assert result.reason == INSUFFICIENT_BALANCE


@pytest.mark.asyncio
async def test_unlimited_accounts_are_never_charged(ledger):
    await ledger.open_account("vip", balance=0, unlimited=True)
    for _ in range(3):
        result = await ledger.check_and_deduct("vip")
        assert result.granted and result.source == CreditSource.UNLIMITED
    account = await ledger.get_account("vip")
    assert account.balance == 0
    assert account.trial_available


@pytest.mark.asyncio
async def test_grants_are_idempotent_by_event_id(ledger):
    first = await ledger.grant("buyer", 4, "evt_1")
    again = await ledger.grant("buyer", 4, "evt_1")
    plan = await ledger.grant_plan("buyer", "premium_8_month", "evt_2")

    assert first.applied and first.balance == 4
    assert not again.applied and again.balance == 4
    assert plan.balance == 12
    with pytest.raises(ValueError, match="Invalid plan type"):
        await ledger.grant_plan("buyer", "lifetime", "evt_3")


@pytest.mark.asyncio
async def test_every_mutation_is_audited(ledger, store, clock):
    await ledger.open_account("owner", balance=1, trial=False)
    await ledger.check_and_deduct("owner", reference="d-1")
    await ledger.check_and_deduct("owner", reference="d-2")
    await ledger.refund("owner", 1, "d-1:refund")

    history = await AuditLog(store, clock).history(ENTITY_ACCOUNT, "owner")
    assert [e.action for e in history] == ["opened", "debit", "debit_denied", "refund"]
    assert [e.sequence for e in history] == [1, 2, 3, 4]
    assert (history[1].before_state, history[1].after_state) == ("1", "0")


@pytest.mark.asyncio
async def test_trial_never_extends_a_paid_balance(ledger):
    await ledger.open_account("owner", balance=3)

    results = await asyncio.gather(*(ledger.check_and_deduct("owner") for _ in range(20)))

    granted = [r.source for r in results if r.granted]
    assert granted == [CreditSource.BALANCE] * 3
    account = await ledger.get_account("owner")
    assert account.balance == 0
    assert account.trial_used_at is None


@pytest.mark.asyncio
async def test_a_grant_ends_the_trial(ledger):
    await ledger.grant("buyer", 1, "evt_1")

    assert not (await ledger.get_account("buyer")).trial_available
    first = await ledger.check_and_deduct("buyer")
    second = await ledger.check_and_deduct("buyer")
    assert first.granted and first.source == CreditSource.BALANCE
    assert not second.granted
    assert second.reason == INSUFFICIENT_BALANCE


@pytest.mark.asyncio
async def test_refunded_trial_stays_closed_after_a_grant(ledger):
    await ledger.open_account("owner", balance=0)
    trial = await ledger.check_and_deduct("owner", reference="t-1")
    assert trial.source == CreditSource.TRIAL
    await ledger.grant("owner", 1, "evt_1")

    await ledger.refund("owner", 1, "t-1:refund", source=CreditSource.TRIAL)

    account = await ledger.get_account("owner")
    assert not account.trial_available
    assert (await ledger.check_and_deduct("owner")).source == CreditSource.BALANCE
    assert not (await ledger.check_and_deduct("owner")).granted
