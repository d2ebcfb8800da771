"""Command line interface for operating ratify."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Awaitable, Callable, Optional, TypeVar

import typer

from . import queries
from .config import load_config
from .contracts import AdvanceOutcome, Decision, ResumeOutcome, StartResult
from .service import Services, build_services

T = TypeVar("T")

app = typer.Typer(help="CLI for ratify approval workflows")

db_app = typer.Typer(help="Database commands")
ledger_app = typer.Typer(help="Commands for credit accounts")
request_app = typer.Typer(help="Commands for requests")
workflow_app = typer.Typer(help="Commands for workflow instances")
review_app = typer.Typer(help="Commands for reviewers")

app.add_typer(db_app, name="db")
app.add_typer(ledger_app, name="ledger")
app.add_typer(request_app, name="request")
app.add_typer(workflow_app, name="workflow")
app.add_typer(review_app, name="review")


@app.callback()
def main() -> None:
    """ratify CLI entry point."""
    config = load_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _run(fn: Callable[[Services], Awaitable[T]]) -> T:
    async def runner() -> T:
        services = await build_services(load_config())
        try:
            return await fn(services)
        finally:
            await services.close()

    return asyncio.run(runner())


def _parse_payload(raw: Optional[str]) -> dict:
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        typer.secho(f"Payload is not valid JSON: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(payload, dict):
        typer.secho("Payload must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return payload


def _fail(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED)
    raise typer.Exit(code=1)


# -- db ---------------------------------------------------------------------


@db_app.command("init")
def db_init() -> None:
    """Create the database schema."""

    async def run(services: Services) -> str:
        return services.store.database_url

    url = _run(run)
    typer.echo(f"Schema ready at {url}")


# -- ledger -----------------------------------------------------------------


@ledger_app.command("open")
def ledger_open(
    owner_id: str,
    balance: int = typer.Option(0, help="Opening balance"),
    unlimited: bool = typer.Option(False, help="Never charge this account"),
    trial: bool = typer.Option(True, help="Grant the one-off trial credit"),
) -> None:
    """Open a credit account for an owner."""
    account = _run(
        lambda s: s.ledger.open_account(owner_id, balance=balance, unlimited=unlimited, trial=trial)
    )
    typer.echo(f"{account.owner_id}\tbalance={account.balance}\tunlimited={account.unlimited}")


@ledger_app.command("grant")
def ledger_grant(owner_id: str, amount: int, event_id: str) -> None:
    """Apply a billing grant, idempotent by EVENT_ID."""
    ack = _run(lambda s: s.ledger.grant(owner_id, amount, event_id))
    state = "applied" if ack.applied else "already applied"
    typer.echo(f"Grant {event_id} {state}; balance={ack.balance}")


@ledger_app.command("plan")
def ledger_plan(owner_id: str, plan: str, event_id: str) -> None:
    """Grant the units of a billing plan (one_time, standard_4_month, premium_8_month)."""
    try:
        ack = _run(lambda s: s.ledger.grant_plan(owner_id, plan, event_id))
    except ValueError as exc:
        _fail(str(exc))
    state = "applied" if ack.applied else "already applied"
    typer.echo(f"Plan {plan} ({event_id}) {state}; balance={ack.balance}")


@ledger_app.command("balance")
def ledger_balance(owner_id: str) -> None:
    """Show an owner's account."""
    account = _run(lambda s: s.ledger.get_account(owner_id))
    if account is None:
        _fail("Account not found")
    typer.echo(
        f"{account.owner_id}\tbalance={account.balance}\tunlimited={account.unlimited}\t"
        f"trial_available={account.trial_available}\tconsumed={account.total_consumed}"
    )


# -- requests ---------------------------------------------------------------


@request_app.command("create")
def request_create(
    owner_id: str,
    category: str,
    payload: Optional[str] = typer.Option(None, help="Intake data as a JSON object"),
    title: Optional[str] = typer.Option(None, help="Request title"),
    start: bool = typer.Option(True, help="Start and advance the workflow right away"),
) -> None:
    """Create a request and, by default, run it to the review stop."""
    data = _parse_payload(payload)

    async def run(services: Services):
        request = await services.runtime.create_request(owner_id, category, data, title)
        if not start:
            return request, None
        started = await services.runtime.start(request.id)
        if not started.started:
            return request, started
        return request, await services.runtime.advance(started.instance_id)

    request, result = _run(run)
    typer.echo(f"Request {request.id} created")
    if isinstance(result, StartResult):
        _fail(result.reason)
    if result is not None:
        status = result.request_status.value if result.request_status else "unknown"
        typer.echo(f"Instance {result.instance_id}: {result.outcome.value} (request {status})")
        if result.reason:
            typer.echo(f"Reason: {result.reason}")


@request_app.command("start")
def request_start(request_id: str) -> None:
    """Start a draft request and run it to the review stop."""

    async def run(services: Services):
        started = await services.runtime.start(request_id)
        if not started.started:
            return started
        return await services.runtime.advance(started.instance_id)

    result = _run(run)
    if isinstance(result, StartResult):
        _fail(result.reason)
    typer.echo(f"Instance {result.instance_id}: {result.outcome.value}")


@request_app.command("status")
def request_status(request_id: str) -> None:
    """Show a request's status and history."""
    view = _run(lambda s: queries.get_status(s.store, request_id))
    if view is None:
        _fail("Request not found")
    typer.echo(f"Request {view.request_id}: {view.status.value}")
    if view.instance_id:
        typer.echo(f"Instance {view.instance_id}: {view.instance_status.value} at {view.current_step or '-'}")
    if view.reason:
        typer.echo(f"Reason: {view.reason}")
    for entry in view.history:
        transition = f"{entry.before_state or '-'} -> {entry.after_state or '-'}"
        typer.echo(f"{entry.sequence}. {entry.action} by {entry.actor_id}: {transition} ({entry.created_at})")


@request_app.command("resubmit")
def request_resubmit(request_id: str, actor_id: str) -> None:
    """Send a resubmittable rejected request through a new instance."""

    async def run(services: Services):
        started = await services.runtime.resubmit(request_id, actor_id)
        if not started.started:
            return started
        return await services.runtime.advance(started.instance_id)

    result = _run(run)
    if isinstance(result, StartResult):
        _fail(result.reason)
    typer.echo(f"Instance {result.instance_id}: {result.outcome.value}")


@request_app.command("close")
def request_close(request_id: str, actor_id: str) -> None:
    """Close a rejected request instead of resubmitting it."""
    result = _run(lambda s: s.runtime.close_rejected(request_id, actor_id))
    if result.outcome == AdvanceOutcome.PRECONDITION_FAILED:
        _fail(result.reason)
    typer.echo(f"Request {request_id}: {result.request_status.value}")


# -- workflow instances -----------------------------------------------------


@workflow_app.command("list")
def workflow_list(status: Optional[str] = typer.Option(None, help="Filter by instance status")) -> None:
    """List workflow instances, newest first."""
    instances = _run(lambda s: queries.list_instances(s.store, status))
    if not instances:
        typer.echo("No workflows found")
        return
    for instance in instances:
        typer.echo(f"{instance.id}\t{instance.status}\t{instance.current_step or '-'}\t{instance.request_id}")


@workflow_app.command("show")
def workflow_show(instance_id: str) -> None:
    """Show an instance, its attempts and its history."""

    async def run(services: Services):
        instance = await services.runtime.status(instance_id)
        if instance is None:
            return None, [], []
        attempts = await services.executor.attempts(instance_id)
        history = await queries.instance_history(services.store, instance_id)
        return instance, attempts, history

    instance, attempts, history = _run(run)
    if instance is None:
        _fail("Workflow not found")
    typer.echo(f"Workflow {instance.id}: {instance.status}")
    typer.echo(f"Request: {instance.request_id}")
    if instance.suspend_point:
        typer.echo(f"Suspended at: {instance.suspend_point}")
    if instance.last_error:
        typer.echo(f"Last error: {instance.last_error}")
    if instance.deferred_effects:
        typer.echo(f"Deferred effects: {', '.join(e['name'] for e in instance.deferred_effects)}")
    for attempt in attempts:
        typer.echo(
            f"- {attempt.step_name}#{attempt.attempt}: {attempt.outcome or 'in flight'}"
            + (f" ({attempt.error})" if attempt.error else "")
        )
    for entry in history:
        typer.echo(f"{entry.sequence}. {entry.action} by {entry.actor_id}")


@workflow_app.command("stale")
def workflow_stale(
    threshold: Optional[float] = typer.Option(None, help="Seconds without progress"),
) -> None:
    """Flag running instances that stopped making progress."""
    stale = _run(lambda s: s.runtime.find_stale(threshold))
    if not stale:
        typer.echo("No stale workflows")
        return
    for instance in stale:
        typer.echo(f"{instance.id}\t{instance.current_step}\tidle since {instance.updated_at}")


@workflow_app.command("recover")
def workflow_recover() -> None:
    """Re-advance instances left behind by a crashed process and redeliver deferred effects."""
    results = _run(lambda s: s.runtime.recover())
    if not results:
        typer.echo("Nothing to recover")
        return
    for result in results:
        typer.echo(f"{result.instance_id}\t{result.outcome.value}")


@workflow_app.command("abandon")
def workflow_abandon(instance_id: str, actor_id: str, reason: str) -> None:
    """Fail an instance by hand, refunding its credit."""
    result = _run(lambda s: s.runtime.abandon(instance_id, actor_id, reason))
    typer.echo(f"{result.instance_id}\t{result.outcome.value}")
    if result.reason:
        typer.echo(f"Reason: {result.reason}")


# -- review -----------------------------------------------------------------


@review_app.command("pending")
def review_pending() -> None:
    """List decisions waiting for a reviewer, with their resume tokens."""
    pending = _run(lambda s: queries.pending_decisions(s.store))
    if not pending:
        typer.echo("No pending decisions")
        return
    for item in pending:
        typer.echo(
            f"{item.instance_id}\t{item.request_status.value}\t{item.title}\t{item.wait_point}\t{item.resume_token}"
        )


@review_app.command("start")
def review_start(instance_id: str, reviewer_id: str) -> None:
    """Pick up a request for review."""
    result = _run(lambda s: s.dispatcher.start_review(instance_id, reviewer_id))
    _echo_resume(result.outcome, result.message)


@review_app.command("decide")
def review_decide(
    instance_id: str,
    resume_token: str,
    reviewer_id: str,
    approve: bool = typer.Option(..., "--approve/--reject", help="Approve or reject"),
    content: Optional[str] = typer.Option(None, help="Final content for an approval"),
    reason: Optional[str] = typer.Option(None, help="Reason for a rejection"),
    notes: Optional[str] = typer.Option(None, help="Reviewer notes"),
    allow_resubmit: bool = typer.Option(False, help="Let the owner resubmit after rejection"),
    wait_point: str = typer.Option("reviewer_decision", help="Wait point to resume"),
) -> None:
    """Approve or reject a suspended request."""
    decision = Decision(
        approved=approve,
        reviewer_id=reviewer_id,
        final_content=content,
        reason=reason,
        notes=notes,
        allow_resubmit=allow_resubmit,
    )
    result = _run(lambda s: s.dispatcher.resume(instance_id, wait_point, decision, resume_token))
    _echo_resume(result.outcome, result.message)
    if result.advance is not None and result.advance.request_status is not None:
        typer.echo(f"Request is {result.advance.request_status.value}")


def _echo_resume(outcome: ResumeOutcome, message: str) -> None:
    if outcome in (ResumeOutcome.RESUMED, ResumeOutcome.REVIEW_STARTED):
        typer.echo(f"{outcome.value}: {message}")
        return
    color = typer.colors.YELLOW if outcome == ResumeOutcome.CONFLICT else typer.colors.RED
    typer.secho(f"{outcome.value}: {message}", fg=color)
    raise typer.Exit(code=1)
