"""End-to-end approval scenarios against an in-memory database."""

import asyncio

import pytest

from ratify import queries
from ratify.config import BreakerConfig
from ratify.constants import ENTITY_ACCOUNT, ENTITY_INSTANCE, ENTITY_REQUEST, INSUFFICIENT_BALANCE
from ratify.contracts import AdvanceOutcome, Decision, RequestStatus, ResumeOutcome, StartOutcome
from ratify.errors import FatalStepError, RetryableStepError
from ratify.persistence import Request

APPROVAL = Decision(approved=True, reviewer_id="reviewer-1", final_content="Final letter")


async def _actions(services, entity_type, entity_id):
    return [event.action for event in await services.audit.history(entity_type, entity_id)]


@pytest.mark.asyncio
async def test_happy_path_to_completed(services, to_review, notifier, wait_point):
    request_id, instance_id, token = await to_review(balance=1)

    view = await queries.get_status(services.store, request_id)
    assert view.status == RequestStatus.AWAITING_REVIEW
    assert view.suspend_point == wait_point
    assert len(notifier.sent("reviewer-alert")) == 1
    assert notifier.sent("reviewer-alert")[0].recipients == ["reviewer-1", "reviewer-2"]

    result = await services.dispatcher.resume(instance_id, wait_point, APPROVAL, token)

    assert result.outcome == ResumeOutcome.RESUMED
    assert result.advance.outcome == AdvanceOutcome.COMPLETED
    view = await queries.get_status(services.store, request_id)
    assert view.status == RequestStatus.COMPLETED
    assert [h.after_state for h in view.history if h.action in ("submit", "generated", "start_review",
                                                                "approve", "finalize")] == [
        "generating", "awaiting_review", "under_review", "approved", "completed",
    ]
    assert len(notifier.sent("request-approved")) == 1

    async with services.store.session() as session:
        request = await session.get(Request, request_id)
    assert request.draft_content
    assert request.final_content == "Final letter"
    assert request.reviewer_id == "reviewer-1"
    assert (await services.ledger.get_account("owner-1")).balance == 0
    assert await _actions(services, ENTITY_INSTANCE, instance_id) == [
        "started", "suspended", "resumed", "completed",
    ]


@pytest.mark.asyncio
async def test_final_rejection(services, to_review, notifier, wait_point):
    request_id, instance_id, token = await to_review()
    decision = Decision(approved=False, reviewer_id="reviewer-2", reason="Facts do not support a claim")

    result = await services.dispatcher.resume(instance_id, wait_point, decision, token)

    assert result.advance.request_status == RequestStatus.REJECTED_FINAL
    assert result.advance.outcome == AdvanceOutcome.COMPLETED
    view = await queries.get_status(services.store, request_id)
    assert view.reason == "Facts do not support a claim"
    rejected = notifier.sent("request-rejected")
    assert rejected[0].data["reason"] == "Facts do not support a claim"
    assert rejected[0].data["allow_resubmit"] is False
    # the credit was consumed by a completed review, nothing is refunded
    assert (await services.ledger.get_account("owner-1")).balance == 0


@pytest.mark.asyncio
async def test_resubmittable_rejection_starts_a_new_instance(services, to_review, wait_point):
    request_id, instance_id, token = await to_review(balance=2)
    decision = Decision(approved=False, reviewer_id="reviewer-1", reason="Add dates", allow_resubmit=True)

    result = await services.dispatcher.resume(instance_id, wait_point, decision, token)
    assert result.advance.request_status == RequestStatus.REJECTED
    # the rejected request waits on its owner with no active instance
    assert result.advance.outcome == AdvanceOutcome.COMPLETED
    assert await queries.list_instances(services.store, "running") == []
    assert await queries.list_instances(services.store, "suspended") == []

    second = await services.runtime.resubmit(request_id, "owner-1", input={"incidentDate": "2025-10-01"})
    assert second.outcome == StartOutcome.STARTED
    assert second.instance_id != instance_id
    advanced = await services.runtime.advance(second.instance_id)

    assert advanced.outcome == AdvanceOutcome.SUSPENDED
    assert advanced.request_status == RequestStatus.AWAITING_REVIEW
    assert (await services.ledger.get_account("owner-1")).balance == 0
    actions = await _actions(services, ENTITY_REQUEST, request_id)
    assert actions.count("submit") == 2
    assert "resubmit" in actions

    again = await services.runtime.resubmit(request_id, "owner-1")
    assert again.outcome == StartOutcome.PRECONDITION_FAILED
    assert "still in progress" in again.reason


@pytest.mark.asyncio
async def test_rejected_request_can_be_closed_by_its_owner(services, to_review, wait_point):
    request_id, instance_id, token = await to_review()
    decision = Decision(approved=False, reviewer_id="reviewer-1", reason="Add dates", allow_resubmit=True)
    await services.dispatcher.resume(instance_id, wait_point, decision, token)

    closed = await services.runtime.close_rejected(request_id, "owner-1")

    assert closed.request_status == RequestStatus.REJECTED_FINAL
    refused = await services.runtime.resubmit(request_id, "owner-1")
    assert refused.outcome == StartOutcome.PRECONDITION_FAILED


@pytest.mark.asyncio
async def test_two_concurrent_requests_with_balance_one(services):
    await services.ledger.open_account("owner-1", balance=1, trial=False)
    first = await services.runtime.create_request("owner-1", "demand_letter", {"a": 1})
    second = await services.runtime.create_request("owner-1", "demand_letter", {"a": 2})
    ids = [(await services.runtime.start(r.id)).instance_id for r in (first, second)]

    results = await asyncio.gather(*(services.runtime.advance(i) for i in ids))

    statuses = sorted(r.request_status.value for r in results)
    assert statuses == ["awaiting_review", "failed"]
    failed = next(r for r in results if r.request_status == RequestStatus.FAILED)
    assert failed.reason == INSUFFICIENT_BALANCE
    winner = next(r for r in results if r.request_status == RequestStatus.AWAITING_REVIEW)
    winner_request = first.id if winner.instance_id == ids[0] else second.id
    history = await services.audit.history(ENTITY_REQUEST, winner_request)
    assert "generating" in [event.after_state for event in history]
    assert (await services.ledger.get_account("owner-1")).balance == 0


@pytest.mark.asyncio
async def test_purchased_credit_with_default_trial_policy_admits_one_request(services):
    await services.ledger.grant("owner-x", 1, "evt_1")

    results = await asyncio.gather(
        services.submit("owner-x", "demand_letter", {"a": 1}),
        services.submit("owner-x", "demand_letter", {"a": 2}),
    )

    assert sorted(r.request_status.value for r in results) == ["awaiting_review", "failed"]
    assert [e.kind for e in await services.ledger.entries("owner-x")] == ["grant", "debit"]


@pytest.mark.asyncio
async def test_fresh_account_with_default_trial_policy_gets_one_request(services):
    await services.ledger.open_account("newcomer")

    results = await asyncio.gather(*(services.submit("newcomer", "demand_letter") for _ in range(3)))

    assert sorted(r.request_status.value for r in results) == ["awaiting_review", "failed", "failed"]
    account = await services.ledger.get_account("newcomer")
    assert not account.trial_available
    assert account.total_consumed == 1


@pytest.mark.asyncio
async def test_fatal_generation_refunds_the_credit(services, generator, notifier):
    generator.script = [FatalStepError("content policy violation")]
    await services.ledger.open_account("owner-1", balance=1, trial=False)

    result = await services.submit("owner-1", "demand_letter", {"recipientName": "ACME"})

    assert result.outcome == AdvanceOutcome.FAILED
    assert result.request_status == RequestStatus.FAILED
    assert "content policy violation" in result.reason
    assert (await services.ledger.get_account("owner-1")).balance == 1
    assert await _actions(services, ENTITY_ACCOUNT, "owner-1") == ["opened", "debit", "refund"]
    assert len(notifier.sent("request-failed")) == 1


@pytest.mark.asyncio
async def test_transient_generation_errors_are_retried(services, generator):
    generator.script = [RetryableStepError("503"), ""]
    await services.ledger.open_account("owner-1", balance=1, trial=False)

    result = await services.submit("owner-1", "demand_letter", {"recipientName": "ACME"})

    assert result.outcome == AdvanceOutcome.SUSPENDED
    attempts = await services.executor.attempts(result.instance_id, "generate_draft")
    assert [a.outcome for a in attempts] == ["retryable-failure", "retryable-failure", "success"]


@pytest.mark.asyncio
async def test_exhausted_generation_retries_fail_and_refund(services, generator):
    generator.script = [RetryableStepError("503")] * 3
    await services.ledger.open_account("owner-1", balance=1, trial=False)

    result = await services.submit("owner-1", "demand_letter")

    assert result.request_status == RequestStatus.FAILED
    assert "retries exhausted" in result.reason
    assert (await services.ledger.get_account("owner-1")).balance == 1


@pytest.mark.asyncio
async def test_trial_debit_is_restored_on_failure(services, generator):
    generator.script = [FatalStepError("refused")]
    await services.ledger.open_account("owner-1", balance=0, trial=True)

    result = await services.submit("owner-1", "demand_letter")

    assert result.request_status == RequestStatus.FAILED
    assert (await services.ledger.get_account("owner-1")).trial_available


@pytest.mark.asyncio
async def test_unknown_account_fails_without_refund(services, notifier):
    result = await services.submit("stranger", "demand_letter")

    assert result.request_status == RequestStatus.FAILED
    assert result.reason == "account-not-found"
    assert notifier.sent("request-failed")[0].recipients == ["stranger"]


@pytest.mark.asyncio
async def test_thirty_day_suspension_changes_nothing(services, to_review, clock, wait_point):
    request_id, instance_id, token = await to_review()
    clock.advance(days=30)

    result = await services.dispatcher.resume(instance_id, wait_point, APPROVAL, token)

    assert result.outcome == ResumeOutcome.RESUMED
    assert result.advance.request_status == RequestStatus.COMPLETED
    assert (await services.ledger.get_account("owner-1")).balance == 0


@pytest.mark.asyncio
async def test_failed_notifications_do_not_block_completion(services, to_review, notifier, wait_point):
    request_id, instance_id, token = await to_review()

    async def broken(recipients, template, data):
        raise ConnectionError("smtp down")

    notifier.notify = broken
    result = await services.dispatcher.resume(instance_id, wait_point, APPROVAL, token)

    assert result.advance.outcome == AdvanceOutcome.COMPLETED
    assert result.advance.request_status == RequestStatus.COMPLETED
    actions = await _actions(services, ENTITY_INSTANCE, instance_id)
    assert "side_effect_failed" in actions
    assert actions[-1] == "completed"


@pytest.mark.asyncio
async def test_unlimited_owner_is_not_charged_or_refunded(services, generator):
    generator.script = [FatalStepError("refused")]
    await services.ledger.open_account("vip", unlimited=True)

    result = await services.submit("vip", "demand_letter")

    assert result.request_status == RequestStatus.FAILED
    entries = await services.ledger.entries("vip")
    assert [e.kind for e in entries] == ["debit"]


@pytest.mark.asyncio
async def test_stale_instances_are_flagged_not_cancelled(services, clock):
    await services.ledger.open_account("owner-1", balance=1, trial=False)
    request = await services.runtime.create_request("owner-1", "demand_letter")
    instance_id = (await services.runtime.start(request.id)).instance_id
    clock.advance(hours=2)

    stale = await services.runtime.find_stale()
    again = await services.runtime.find_stale()

    assert [i.id for i in stale] == [instance_id]
    assert [i.id for i in again] == [instance_id]
    assert (await _actions(services, ENTITY_INSTANCE, instance_id)).count("flagged_stale") == 1
    instance = await services.runtime.status(instance_id)
    assert instance.status == "running"


class Interrupted(BaseException):
    """Stops a step the way a killed worker would."""


@pytest.mark.asyncio
async def test_stale_flag_clears_on_progress_and_returns_on_the_next_stall(services, generator, clock):
    await services.ledger.open_account("owner-1", balance=1, trial=False)
    request = await services.runtime.create_request("owner-1", "demand_letter")
    instance_id = (await services.runtime.start(request.id)).instance_id
    clock.advance(hours=2)
    assert [i.id for i in await services.runtime.find_stale()] == [instance_id]

    generator.script = [Interrupted()]
    with pytest.raises(Interrupted):
        await services.runtime.advance(instance_id)

    instance = await services.runtime.status(instance_id)
    assert instance.current_step == "generate_draft"
    assert instance.flagged_stale_at is None
    assert await services.runtime.find_stale() == []

    clock.advance(hours=2)
    assert [i.id for i in await services.runtime.find_stale()] == [instance_id]
    assert (await _actions(services, ENTITY_INSTANCE, instance_id)).count("flagged_stale") == 2


@pytest.mark.asyncio
async def test_abandon_refunds_and_revokes_the_token(services, to_review, wait_point):
    request_id, instance_id, token = await to_review()

    result = await services.runtime.abandon(instance_id, "operator", "owner asked to cancel")

    assert result.outcome == AdvanceOutcome.FAILED
    assert result.request_status == RequestStatus.FAILED
    assert (await services.ledger.get_account("owner-1")).balance == 1
    late = await services.dispatcher.resume(instance_id, wait_point, APPROVAL, token)
    assert late.outcome == ResumeOutcome.CONFLICT
    assert late.decided_by == "revoked:operator"


@pytest.mark.asyncio
async def test_start_rejects_misuse(services, to_review):
    request_id, instance_id, token = await to_review()

    twice = await services.runtime.start(request_id)
    assert twice.outcome == StartOutcome.PRECONDITION_FAILED
    assert twice.instance_id is None
    assert "only draft requests can start" in twice.reason

    unknown = await services.runtime.start("missing")
    assert unknown.outcome == StartOutcome.PRECONDITION_FAILED
    assert unknown.reason == "Request missing not found"

    closed = await services.runtime.close_rejected(request_id, "owner-1")
    assert closed.outcome == AdvanceOutcome.PRECONDITION_FAILED
    missing = await services.runtime.advance("missing")
    assert missing.outcome == AdvanceOutcome.NOT_FOUND
    assert (await services.runtime.status(instance_id)).status == "suspended"


@pytest.mark.asyncio
async def test_open_circuit_defers_instead_of_failing(spawn, config, generator):
    config.breaker = BreakerConfig(threshold=1, cooldown_seconds=600)
    generator.script = [FatalStepError("provider rejected the request")]
    services = await spawn("sqlite+aiosqlite://", generator)
    try:
        await services.ledger.open_account("owner-1", balance=2, trial=False)
        first = await services.submit("owner-1", "demand_letter")
        assert first.request_status == RequestStatus.FAILED

        second = await services.submit("owner-1", "demand_letter")
        assert second.outcome == AdvanceOutcome.DEFERRED
        assert second.request_status == RequestStatus.GENERATING
        assert "circuit open" in second.reason
        assert (await services.runtime.status(second.instance_id)).status == "running"

        services.executor.breakers.reset_all()
        resumed = await services.runtime.advance(second.instance_id)
        assert resumed.outcome == AdvanceOutcome.SUSPENDED
        assert resumed.request_status == RequestStatus.AWAITING_REVIEW
    finally:
        await services.close()
