import asyncio

import pytest

from ratify import queries
from ratify.constants import ENTITY_INSTANCE
from ratify.contracts import AdvanceOutcome, Decision, InstanceStatus, RequestStatus, ResumeOutcome

APPROVE = Decision(approved=True, reviewer_id="reviewer-1", final_content="Approved text")
REJECT = Decision(approved=False, reviewer_id="reviewer-2", reason="Not enough detail")


async def _pending_tokens(services, instance_id):
    return [p.resume_token for p in await queries.pending_decisions(services.store) if p.instance_id == instance_id]


@pytest.mark.asyncio
async def test_racing_decisions_resume_exactly_once(services, to_review, wait_point):
    request_id, instance_id, token = await to_review()

    results = await asyncio.gather(
        services.dispatcher.resume(instance_id, wait_point, APPROVE, token),
        services.dispatcher.resume(instance_id, wait_point, REJECT, token),
    )

    outcomes = sorted(r.outcome.value for r in results)
    assert outcomes == ["conflict", "resumed"]
    winner = next(r for r in results if r.outcome == ResumeOutcome.RESUMED)
    loser = next(r for r in results if r.outcome == ResumeOutcome.CONFLICT)
    assert loser.decided_by == winner.decided_by
    assert loser.message.startswith(f"already decided by {winner.decided_by}")

    view = await queries.get_status(services.store, request_id)
    expected = RequestStatus.COMPLETED if winner.decided_by == "reviewer-1" else RequestStatus.REJECTED_FINAL
    assert view.status == expected
    actions = [e.action for e in await services.audit.history(ENTITY_INSTANCE, instance_id)]
    assert actions.count("resumed") == 1
    assert actions.count("resume_conflict") == 1


@pytest.mark.asyncio
async def test_replayed_token_after_completion_conflicts(services, to_review, wait_point):
    _, instance_id, token = await to_review()
    await services.dispatcher.resume(instance_id, wait_point, APPROVE, token)

    again = await services.dispatcher.resume(instance_id, wait_point, REJECT, token)

    assert again.outcome == ResumeOutcome.CONFLICT
    assert again.decided_by == "reviewer-1"
    assert again.advance is None


@pytest.mark.asyncio
async def test_unknown_wait_point_is_a_precondition_failure(services, to_review):
    _, instance_id, token = await to_review()

    result = await services.dispatcher.resume(instance_id, "payment_received", APPROVE, token)

    assert result.outcome == ResumeOutcome.PRECONDITION_FAILED
    assert await _pending_tokens(services, instance_id) == [token]


@pytest.mark.asyncio
async def test_foreign_or_unknown_token_is_refused(services, to_review, wait_point):
    _, first, first_token = await to_review(owner_id="owner-1")
    _, second, _ = await to_review(owner_id="owner-2")

    wrong = await services.dispatcher.resume(second, wait_point, APPROVE, first_token)
    bogus = await services.dispatcher.resume(first, wait_point, APPROVE, "not-a-token")
    missing = await services.dispatcher.resume("nope", wait_point, APPROVE, first_token)

    assert {wrong.outcome, bogus.outcome, missing.outcome} == {ResumeOutcome.PRECONDITION_FAILED}
    assert await _pending_tokens(services, first) == [first_token]
    assert (await services.runtime.status(second)).status == InstanceStatus.SUSPENDED.value


@pytest.mark.asyncio
async def test_unacceptable_decision_leaves_the_token_valid(services, to_review, wait_point):
    request_id, instance_id, token = await to_review()
    no_content = Decision(approved=True, reviewer_id="reviewer-1")

    refused = await services.dispatcher.resume(instance_id, wait_point, no_content, token)

    assert refused.outcome == ResumeOutcome.PRECONDITION_FAILED
    assert "final content is required" in refused.message
    assert (await queries.get_status(services.store, request_id)).status == RequestStatus.AWAITING_REVIEW
    assert await _pending_tokens(services, instance_id) == [token]

    accepted = await services.dispatcher.resume(instance_id, wait_point, APPROVE, token)
    assert accepted.outcome == ResumeOutcome.RESUMED
    assert accepted.advance.request_status == RequestStatus.COMPLETED


@pytest.mark.asyncio
async def test_malformed_payload_is_rejected(services, to_review, wait_point):
    _, instance_id, token = await to_review()

    result = await services.dispatcher.resume(instance_id, wait_point, {"approved": "maybe"}, token)

    assert result.outcome == ResumeOutcome.PRECONDITION_FAILED
    assert result.message.startswith("invalid decision payload")
    assert await _pending_tokens(services, instance_id) == [token]


@pytest.mark.asyncio
async def test_rejection_without_reason_is_refused(services, to_review, wait_point):
    _, instance_id, token = await to_review()

    result = await services.dispatcher.resume(
        instance_id, wait_point, {"approved": False, "reviewer_id": "reviewer-2"}, token
    )

    assert result.outcome == ResumeOutcome.PRECONDITION_FAILED
    assert "reason is required" in result.message


@pytest.mark.asyncio
async def test_start_review_keeps_instance_suspended(services, to_review, notifier, wait_point):
    request_id, instance_id, token = await to_review()

    started = await services.dispatcher.start_review(instance_id, "reviewer-2")

    assert started.outcome == ResumeOutcome.REVIEW_STARTED
    assert started.advance.outcome == AdvanceOutcome.SUSPENDED
    view = await queries.get_status(services.store, request_id)
    assert view.status == RequestStatus.UNDER_REVIEW
    assert view.instance_status == InstanceStatus.SUSPENDED
    assert notifier.sent("request-under-review")[0].data["reviewer_id"] == "reviewer-2"
    assert await _pending_tokens(services, instance_id) == [token]

    twice = await services.dispatcher.start_review(instance_id, "reviewer-1")
    assert twice.outcome == ResumeOutcome.PRECONDITION_FAILED
    assert (await queries.get_status(services.store, request_id)).status == RequestStatus.UNDER_REVIEW

    decided = await services.dispatcher.resume(instance_id, wait_point, REJECT, token)
    assert decided.advance.request_status == RequestStatus.REJECTED_FINAL
    history = [h.action for h in (await queries.get_status(services.store, request_id)).history]
    assert history.count("start_review") == 1


@pytest.mark.asyncio
async def test_start_review_on_finished_instance(services, to_review, wait_point):
    _, instance_id, token = await to_review()
    await services.dispatcher.resume(instance_id, wait_point, APPROVE, token)

    result = await services.dispatcher.start_review(instance_id, "reviewer-1")
    missing = await services.dispatcher.start_review("nope", "reviewer-1")

    assert result.outcome == ResumeOutcome.PRECONDITION_FAILED
    assert missing.outcome == ResumeOutcome.PRECONDITION_FAILED


@pytest.mark.asyncio
async def test_decision_during_a_held_lease_is_kept(services, to_review, wait_point):
    request_id, instance_id, token = await to_review()

    async with services.runtime.lease(instance_id) as held:
        assert held is not None
        busy = await services.runtime.advance(instance_id)
        assert busy.outcome == AdvanceOutcome.BUSY

        result = await services.dispatcher.resume(instance_id, wait_point, APPROVE, token)
        assert result.outcome == ResumeOutcome.RESUMED
        assert result.advance.outcome == AdvanceOutcome.BUSY

    finished = await services.runtime.advance(instance_id)
    assert finished.outcome == AdvanceOutcome.COMPLETED
    assert (await queries.get_status(services.store, request_id)).status == RequestStatus.COMPLETED


@pytest.mark.asyncio
async def test_advancing_a_suspended_instance_is_a_no_op(services, to_review):
    request_id, instance_id, token = await to_review()

    result = await services.runtime.advance(instance_id)

    assert result.outcome == AdvanceOutcome.SUSPENDED
    assert await _pending_tokens(services, instance_id) == [token]
    tokens = await queries.pending_decisions(services.store)
    assert len(tokens) == 1
