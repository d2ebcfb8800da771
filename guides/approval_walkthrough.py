"""Walk one request from intake through reviewer approval."""

import asyncio

from ratify import Decision, build_services, queries
from ratify.collaborators import InMemoryNotifier
from ratify.config import NotificationConfig, RatifyConfig


async def main():
    """Submit a demand letter, suspend for review, approve it."""
    config = RatifyConfig(notifications=NotificationConfig(reviewers=["reviewer-1"]))
    notifier = InMemoryNotifier()
    services = await build_services(config, notifier=notifier)

    # One credit for the owner
    await services.ledger.open_account("owner-1", balance=1, trial=False)

    result = await services.submit(
        "owner-1",
        "demand letter",
        {"recipientName": "ACME Rentals", "issueDescription": "Deposit withheld", "amountDemanded": 1500},
        title="Deposit return",
    )
    print(f"📋 Instance {result.instance_id}: {result.outcome.value} ({result.request_status.value})")

    # The reviewer picks the request up from the pending list
    pending = await queries.pending_decisions(services.store)
    item = pending[0]
    print(f"🔔 Waiting at {item.wait_point} with token {item.resume_token[:8]}...")

    await services.dispatcher.start_review(item.instance_id, "reviewer-1")
    decision = Decision(approved=True, reviewer_id="reviewer-1", final_content="Dear ACME Rentals, ...")
    resumed = await services.dispatcher.resume(item.instance_id, item.wait_point, decision, item.resume_token)
    print(f"✅ {resumed.outcome.value}: request is {resumed.advance.request_status.value}")

    # A second click with the same token is refused
    again = await services.dispatcher.resume(item.instance_id, item.wait_point, decision, item.resume_token)
    print(f"🔁 {again.outcome.value}: {again.message}")

    view = await queries.get_status(services.store, item.request_id)
    for entry in view.history:
        print(f"  {entry.sequence}. {entry.action}: {entry.before_state} -> {entry.after_state}")
    print(f"✉️  Notifications sent: {[n.template for n in notifier.sent()]}")

    await services.close()


if __name__ == "__main__":
    asyncio.run(main())
