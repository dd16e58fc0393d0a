import asyncio
from typing import Any, Dict, Optional

import pytest
from sqlalchemy.future import select

from conftest import load_account, seed_account
from models.account import PLAN_FREE, PLAN_PAID, STATUS_ACTIVE, STATUS_CANCELLED, STATUS_NONE, STATUS_PAST_DUE
from models.billing_event import BillingEvent
from models.billing_reconciliation import BillingReconciliation
from models.billing_subscription import BillingSubscription
from models.credit_grant import CreditGrant
from services.billing_state import apply_billing_event
from services.ledger import try_consume_credit

ACCOUNT_ID = "acct-billing"
CUSTOMER_ID = "cus_billing"
SUBSCRIPTION_ID = "sub_billing"
PERIOD_1 = 1_760_000_000
PERIOD_2 = PERIOD_1 + 30 * 24 * 3600


def _event(event_id: str, event_type: str, created: int, obj: Dict[str, Any]) -> Dict[str, Any]:
    return {"id": event_id, "type": event_type, "created": created, "data": {"object": obj}}


def checkout_completed(
    event_id: str = "evt_checkout",
    created: int = PERIOD_1,
    plan_id: str = "pro",
    subscription_id: str = SUBSCRIPTION_ID,
    customer_id: Optional[str] = CUSTOMER_ID,
    account_id: str = ACCOUNT_ID,
) -> Dict[str, Any]:
    return _event(
        event_id,
        "checkout.session.completed",
        created,
        {
            "id": f"cs_{event_id}",
            "object": "checkout.session",
            "mode": "subscription",
            "customer": customer_id,
            "subscription": subscription_id,
            "metadata": {"account_id": account_id, "plan_id": plan_id},
        },
    )


def subscription_event(
    event_id: str,
    created: int,
    status: str,
    *,
    event_type: str = "customer.subscription.updated",
    period_start: int = PERIOD_1,
    subscription_id: str = SUBSCRIPTION_ID,
    plan_id: str = "pro",
) -> Dict[str, Any]:
    return _event(
        event_id,
        event_type,
        created,
        {
            "id": subscription_id,
            "object": "subscription",
            "customer": CUSTOMER_ID,
            "status": status,
            "current_period_start": period_start,
            "metadata": {"account_id": ACCOUNT_ID, "plan_id": plan_id},
        },
    )


def subscription_deleted(event_id: str, created: int, subscription_id: str = SUBSCRIPTION_ID) -> Dict[str, Any]:
    return _event(
        event_id,
        "customer.subscription.deleted",
        created,
        {"id": subscription_id, "object": "subscription", "customer": CUSTOMER_ID, "status": "canceled"},
    )


def invoice_event(event_id: str, created: int, event_type: str) -> Dict[str, Any]:
    return _event(
        event_id,
        event_type,
        created,
        {"id": f"in_{event_id}", "object": "invoice", "customer": CUSTOMER_ID, "subscription": SUBSCRIPTION_ID},
    )


async def _apply(session_maker, event):
    async with session_maker() as session:
        return await apply_billing_event(event, session)


@pytest.mark.asyncio
async def test_lifecycle_checkout_past_due_then_deleted(session_maker):
    await seed_account(session_maker, ACCOUNT_ID, credits=10, customer_id=CUSTOMER_ID)

    outcome = await _apply(session_maker, checkout_completed(created=PERIOD_1))
    assert outcome.outcome == "applied"
    assert outcome.account_id == ACCOUNT_ID
    account = await load_account(session_maker, ACCOUNT_ID)
    assert (account.plan, account.subscription_status, account.credits) == (PLAN_PAID, STATUS_ACTIVE, 200)
    assert account.plan_id == "pro"
    assert account.external_subscription_id == SUBSCRIPTION_ID

    await _apply(session_maker, invoice_event("evt_failed", PERIOD_1 + 10, "invoice.payment_failed"))
    account = await load_account(session_maker, ACCOUNT_ID)
    assert account.subscription_status == STATUS_PAST_DUE
    assert account.credits == 200

    await _apply(session_maker, subscription_deleted("evt_deleted", PERIOD_1 + 20))
    account = await load_account(session_maker, ACCOUNT_ID)
    assert (account.plan, account.subscription_status, account.credits) == (PLAN_FREE, STATUS_CANCELLED, 10)
    assert account.external_subscription_id is None
    assert account.plan_id is None


@pytest.mark.asyncio
async def test_duplicate_checkout_delivery_grants_once(session_maker):
    await seed_account(session_maker, ACCOUNT_ID, credits=10, customer_id=CUSTOMER_ID)
    event = checkout_completed()

    first = await _apply(session_maker, event)
    async with session_maker() as session:
        await try_consume_credit(ACCOUNT_ID, "spend-between", session)
    second = await _apply(session_maker, event)

    assert first.outcome == "applied"
    assert second.outcome == "duplicate"
    async with session_maker() as session:
        grants = (await session.execute(select(CreditGrant))).scalars().all()
        events = (await session.execute(select(BillingEvent))).scalars().all()
    assert len(grants) == 1
    assert len(events) == 1


@pytest.mark.asyncio
async def test_concurrent_duplicate_deliveries_apply_once(session_maker):
    await seed_account(session_maker, ACCOUNT_ID, credits=10, customer_id=CUSTOMER_ID)
    event = checkout_completed()

    outcomes = await asyncio.gather(*(_apply(session_maker, event) for _ in range(3)))

    assert sorted(outcome.outcome for outcome in outcomes) == ["applied", "duplicate", "duplicate"]
    account = await load_account(session_maker, ACCOUNT_ID)
    assert account.credits == 200


@pytest.mark.asyncio
async def test_checkout_and_first_subscription_update_share_one_refill(session_maker):
    await seed_account(session_maker, ACCOUNT_ID, credits=10, customer_id=CUSTOMER_ID)

    await _apply(session_maker, checkout_completed(created=PERIOD_1))
    async with session_maker() as session:
        await try_consume_credit(ACCOUNT_ID, "spend-early", session)
    await _apply(session_maker, subscription_event("evt_update_1", PERIOD_1 + 1, "active"))

    async with session_maker() as session:
        grants = (await session.execute(select(CreditGrant))).scalars().all()
    assert [grant.period_key for grant in grants] == [f"{SUBSCRIPTION_ID}:initial"]
    account = await load_account(session_maker, ACCOUNT_ID)
    assert account.credits == 200


@pytest.mark.asyncio
async def test_new_billing_period_refills_allotment(session_maker):
    await seed_account(session_maker, ACCOUNT_ID, credits=10, customer_id=CUSTOMER_ID)
    await _apply(session_maker, subscription_event("evt_active", PERIOD_1, "active", plan_id="basic"))
    await _apply(session_maker, subscription_event("evt_same_period", PERIOD_1 + 5, "active", plan_id="basic"))

    async with session_maker() as session:
        cursor = await session.get(BillingSubscription, SUBSCRIPTION_ID)
        assert cursor.current_period_start == PERIOD_1
        grants = (await session.execute(select(CreditGrant))).scalars().all()
        assert len(grants) == 1

    await _apply(
        session_maker,
        subscription_event("evt_renewal", PERIOD_2, "active", plan_id="basic", period_start=PERIOD_2),
    )
    async with session_maker() as session:
        keys = sorted(grant.period_key for grant in (await session.execute(select(CreditGrant))).scalars().all())
    assert keys == [f"{SUBSCRIPTION_ID}:{PERIOD_2}", f"{SUBSCRIPTION_ID}:initial"]
    account = await load_account(session_maker, ACCOUNT_ID)
    assert account.credits == 50
    assert account.plan_id == "basic"


@pytest.mark.asyncio
async def test_out_of_order_delivery_converges_to_in_order_state(session_maker):
    await seed_account(session_maker, ACCOUNT_ID, credits=3, customer_id=CUSTOMER_ID)

    # Delete arrives first, then the older activation and checkout.
    deleted = await _apply(session_maker, subscription_deleted("evt_del", PERIOD_1 + 100))
    account = await load_account(session_maker, ACCOUNT_ID)
    assert (account.plan, account.subscription_status, account.credits) == (PLAN_FREE, STATUS_NONE, 3)

    update = await _apply(session_maker, subscription_event("evt_upd", PERIOD_1 + 50, "active"))
    checkout = await _apply(session_maker, checkout_completed(created=PERIOD_1))

    assert deleted.outcome == "applied"
    assert update.outcome == "applied"
    assert checkout.outcome == "stale"
    account = await load_account(session_maker, ACCOUNT_ID)
    assert (account.plan, account.subscription_status, account.credits) == (PLAN_FREE, STATUS_CANCELLED, 10)
    assert account.external_subscription_id is None


async def _final_state(session_maker, account_id, events):
    for event in events:
        await _apply(session_maker, event)
    account = await load_account(session_maker, account_id)
    return account.plan, account.subscription_status, account.credits, account.external_subscription_id


def _events_for(account_id: str, customer_id: str, subscription_id: str, kinds):
    built = []
    for kind, created in kinds:
        event_id = f"evt_{account_id}_{kind}"
        if kind == "checkout":
            built.append(
                checkout_completed(
                    event_id,
                    created,
                    subscription_id=subscription_id,
                    customer_id=customer_id,
                    account_id=account_id,
                )
            )
        elif kind == "incomplete":
            built.append(
                _event(
                    event_id,
                    "customer.subscription.created",
                    created,
                    {
                        "id": subscription_id,
                        "object": "subscription",
                        "customer": customer_id,
                        "status": "incomplete",
                        "current_period_start": PERIOD_1,
                        "metadata": {"account_id": account_id, "plan_id": "pro"},
                    },
                )
            )
        else:
            built.append(
                _event(
                    event_id,
                    kind,
                    created,
                    {"id": f"in_{event_id}", "object": "invoice", "customer": customer_id, "subscription": subscription_id},
                )
            )
    return built


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "kinds",
    [
        [("checkout", PERIOD_1), ("invoice.paid", PERIOD_1 + 1)],
        [("checkout", PERIOD_1), ("invoice.payment_succeeded", PERIOD_1 + 1)],
        [("checkout", PERIOD_1), ("invoice.payment_failed", PERIOD_1 + 1)],
        [("incomplete", PERIOD_1 - 1), ("checkout", PERIOD_1)],
    ],
)
async def test_invoice_or_status_before_checkout_matches_in_order_result(session_maker, kinds):
    await seed_account(session_maker, "acct-in-order", credits=10, customer_id="cus_in_order")
    await seed_account(session_maker, "acct-reversed", credits=10, customer_id="cus_reversed")

    in_order = await _final_state(
        session_maker,
        "acct-in-order",
        _events_for("acct-in-order", "cus_in_order", "sub_in_order", kinds),
    )
    reversed_order = await _final_state(
        session_maker,
        "acct-reversed",
        list(reversed(_events_for("acct-reversed", "cus_reversed", "sub_reversed", kinds))),
    )

    assert in_order[:3] == reversed_order[:3]
    assert in_order[0] == PLAN_PAID
    assert in_order[2] == 200


@pytest.mark.asyncio
async def test_paid_invoice_before_checkout_does_not_lose_the_upgrade(session_maker):
    await seed_account(session_maker, ACCOUNT_ID, credits=10, customer_id=CUSTOMER_ID)

    invoice = await _apply(session_maker, invoice_event("evt_early_paid", PERIOD_1 + 1, "invoice.payment_succeeded"))
    checkout = await _apply(session_maker, checkout_completed(created=PERIOD_1))

    assert invoice.outcome == "ignored"
    assert checkout.outcome == "applied"
    account = await load_account(session_maker, ACCOUNT_ID)
    assert (account.plan, account.subscription_status, account.credits) == (PLAN_PAID, STATUS_ACTIVE, 200)


@pytest.mark.asyncio
async def test_failed_invoice_before_checkout_lands_as_past_due(session_maker):
    await seed_account(session_maker, ACCOUNT_ID, credits=10, customer_id=CUSTOMER_ID)

    await _apply(session_maker, invoice_event("evt_early_failed", PERIOD_1 + 1, "invoice.payment_failed"))
    await _apply(session_maker, checkout_completed(created=PERIOD_1))

    account = await load_account(session_maker, ACCOUNT_ID)
    assert (account.plan, account.subscription_status, account.credits) == (PLAN_PAID, STATUS_PAST_DUE, 200)


@pytest.mark.asyncio
async def test_delete_of_never_activated_subscription_leaves_free_account_alone(session_maker):
    await seed_account(session_maker, ACCOUNT_ID, credits=1, customer_id=CUSTOMER_ID)

    outcome = await _apply(session_maker, subscription_deleted("evt_never_deleted", PERIOD_1, subscription_id="sub_never"))

    assert outcome.outcome == "applied"
    account = await load_account(session_maker, ACCOUNT_ID)
    assert (account.plan, account.subscription_status, account.credits) == (PLAN_FREE, STATUS_NONE, 1)
    async with session_maker() as session:
        grants = (await session.execute(select(CreditGrant))).scalars().all()
        cursor = await session.get(BillingSubscription, "sub_never")
    assert grants == []
    assert cursor.ended is True
    assert cursor.activated is False

    # Repeated cleanup deletes never refill either.
    await _apply(session_maker, subscription_deleted("evt_never_deleted_again", PERIOD_1 + 5, subscription_id="sub_never"))
    account = await load_account(session_maker, ACCOUNT_ID)
    assert account.credits == 1


@pytest.mark.asyncio
async def test_stale_past_due_after_recovery_is_discarded(session_maker):
    await seed_account(session_maker, ACCOUNT_ID, credits=10, customer_id=CUSTOMER_ID)
    await _apply(session_maker, checkout_completed(created=PERIOD_1))
    await _apply(session_maker, subscription_event("evt_recovered", PERIOD_1 + 200, "active"))

    late = await _apply(session_maker, subscription_event("evt_old_past_due", PERIOD_1 + 100, "past_due"))

    assert late.outcome == "stale"
    account = await load_account(session_maker, ACCOUNT_ID)
    assert account.subscription_status == STATUS_ACTIVE


@pytest.mark.asyncio
async def test_non_active_update_sets_past_due_and_payment_recovers(session_maker):
    await seed_account(session_maker, ACCOUNT_ID, credits=10, customer_id=CUSTOMER_ID)
    await _apply(session_maker, checkout_completed(created=PERIOD_1))

    await _apply(session_maker, subscription_event("evt_unpaid", PERIOD_1 + 10, "unpaid"))
    account = await load_account(session_maker, ACCOUNT_ID)
    assert account.subscription_status == STATUS_PAST_DUE

    await _apply(session_maker, invoice_event("evt_paid", PERIOD_1 + 20, "invoice.payment_succeeded"))
    account = await load_account(session_maker, ACCOUNT_ID)
    assert account.subscription_status == STATUS_ACTIVE
    assert account.credits == 200


@pytest.mark.asyncio
async def test_delete_of_replaced_subscription_keeps_account_on_new_one(session_maker):
    await seed_account(session_maker, ACCOUNT_ID, credits=10, customer_id=CUSTOMER_ID)
    await _apply(session_maker, checkout_completed("evt_old", PERIOD_1, subscription_id="sub_old"))
    await _apply(session_maker, checkout_completed("evt_new", PERIOD_1 + 10, subscription_id="sub_new", plan_id="basic"))

    await _apply(session_maker, subscription_deleted("evt_old_deleted", PERIOD_1 + 20, subscription_id="sub_old"))

    account = await load_account(session_maker, ACCOUNT_ID)
    assert account.plan == PLAN_PAID
    assert account.subscription_status == STATUS_ACTIVE
    assert account.external_subscription_id == "sub_new"
    assert account.plan_id == "basic"


@pytest.mark.asyncio
async def test_resubscribe_after_cancellation(session_maker):
    await seed_account(session_maker, ACCOUNT_ID, credits=10, customer_id=CUSTOMER_ID)
    await _apply(session_maker, checkout_completed("evt_first", PERIOD_1, subscription_id="sub_first"))
    await _apply(session_maker, subscription_deleted("evt_first_deleted", PERIOD_1 + 10, subscription_id="sub_first"))

    outcome = await _apply(
        session_maker,
        checkout_completed("evt_second", PERIOD_1 + 20, subscription_id="sub_second", plan_id="basic"),
    )

    assert outcome.outcome == "applied"
    account = await load_account(session_maker, ACCOUNT_ID)
    assert (account.plan, account.subscription_status, account.credits) == (PLAN_PAID, STATUS_ACTIVE, 50)


@pytest.mark.asyncio
async def test_unlimited_plan_leaves_credits_untouched(session_maker):
    await seed_account(session_maker, ACCOUNT_ID, credits=4, customer_id=CUSTOMER_ID)

    await _apply(session_maker, checkout_completed(plan_id="unlimited"))

    account = await load_account(session_maker, ACCOUNT_ID)
    assert account.plan == PLAN_PAID
    assert account.plan_id == "unlimited"
    assert account.credits == 4


@pytest.mark.asyncio
async def test_customer_falls_back_to_metadata_account_and_binds(session_maker):
    await seed_account(session_maker, ACCOUNT_ID, credits=10)

    outcome = await _apply(session_maker, checkout_completed(customer_id="cus_fresh"))

    assert outcome.outcome == "applied"
    account = await load_account(session_maker, ACCOUNT_ID)
    assert account.external_billing_customer_id == "cus_fresh"
    assert account.plan == PLAN_PAID


@pytest.mark.asyncio
async def test_unknown_event_type_is_recorded_and_ignored(session_maker):
    outcome = await _apply(session_maker, _event("evt_unknown", "customer.tax_id.created", PERIOD_1, {"id": "txi_1"}))

    assert outcome.outcome == "ignored"
    async with session_maker() as session:
        row = await session.get(BillingEvent, "evt_unknown")
    assert row is not None
    assert row.outcome == "ignored"


@pytest.mark.asyncio
async def test_unresolvable_customer_is_queued_for_reconciliation(session_maker):
    event = checkout_completed("evt_orphan", customer_id="cus_nobody", account_id="acct-ghost")

    first = await _apply(session_maker, event)
    second = await _apply(session_maker, event)

    assert first.outcome == "unresolved"
    assert second.outcome == "duplicate"
    async with session_maker() as session:
        items = (await session.execute(select(BillingReconciliation))).scalars().all()
    assert len(items) == 1
    assert items[0].event_id == "evt_orphan"
    assert items[0].customer_reference == "cus_nobody"
    assert items[0].payload_json["id"] == "evt_orphan"


@pytest.mark.asyncio
async def test_unknown_plan_is_queued_without_touching_account(session_maker):
    await seed_account(session_maker, ACCOUNT_ID, credits=10, customer_id=CUSTOMER_ID)

    outcome = await _apply(session_maker, checkout_completed("evt_bad_plan", plan_id="platinum"))

    assert outcome.outcome == "unresolved"
    account = await load_account(session_maker, ACCOUNT_ID)
    assert account.plan == PLAN_FREE
    assert account.credits == 10


@pytest.mark.asyncio
async def test_customer_mismatch_with_metadata_account_is_unresolved(session_maker):
    await seed_account(session_maker, ACCOUNT_ID, credits=10, customer_id="cus_original")

    outcome = await _apply(session_maker, checkout_completed("evt_mismatch", customer_id="cus_other"))

    assert outcome.outcome == "unresolved"
    account = await load_account(session_maker, ACCOUNT_ID)
    assert account.external_billing_customer_id == "cus_original"
    assert account.plan == PLAN_FREE
