"""Billing state machine: folds verified Stripe events into account state.

Events may arrive duplicated, concurrently and out of order. Each event is
applied in one transaction together with its `billing_events` dedup record,
so a transition is either fully applied or not at all. Per subscription, an
event older than the newest applied one is discarded, and once a
subscription has ended only a late activation (which lands as the
cancellation it was followed by) may still touch the account.

Status-only events for a subscription the account is not on yet are kept on
the subscription's cursor by event time and folded in when it activates, so
every delivery order ends in the same state.

    FREE -> (checkout) -> ACTIVE <-> PAST_DUE -> (deleted) -> CANCELLED/FREE
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import Plan, get_plan, settings
from models.account import (
    PLAN_FREE,
    PLAN_PAID,
    STATUS_ACTIVE,
    STATUS_CANCELLED,
    STATUS_PAST_DUE,
    Account,
)
from models.billing_event import BillingEvent
from models.billing_reconciliation import BillingReconciliation
from models.billing_subscription import BillingSubscription
from services.errors import AccountResolutionFailed, WebhookEventStale
from services.ledger import grant_credits

logger = logging.getLogger(__name__)

OUTCOME_APPLIED = "applied"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_STALE = "stale"
OUTCOME_IGNORED = "ignored"
OUTCOME_UNRESOLVED = "unresolved"

PROVIDER_STATUS_ACTIVE = "active"


@dataclass(frozen=True)
class EventOutcome:
    event_id: str
    event_type: str
    outcome: str
    account_id: Optional[str] = None


def _ref(value: Any) -> Optional[str]:
    """Stripe references arrive either as ids or as expanded objects."""
    if value is None:
        return None
    if isinstance(value, dict):
        value = value.get("id")
    text = str(value or "").strip()
    return text or None


def _metadata(obj: Dict[str, Any]) -> Dict[str, Any]:
    metadata = obj.get("metadata")
    return metadata if isinstance(metadata, dict) else {}


def _period_start(subscription: Dict[str, Any]) -> Optional[int]:
    value = subscription.get("current_period_start")
    if value is None:
        # Newer API versions report billing periods per subscription item.
        items = (subscription.get("items") or {}).get("data") or []
        if items and isinstance(items[0], dict):
            value = items[0].get("current_period_start")
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _invoice_subscription(invoice: Dict[str, Any]) -> Optional[str]:
    sub_id = _ref(invoice.get("subscription"))
    if sub_id:
        return sub_id
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return _ref(details.get("subscription"))


class _Transition:
    """State for one event being applied inside a single transaction."""

    def __init__(self, db: AsyncSession, event_id: str, created: int):
        self.db = db
        self.event_id = event_id
        self.created = created

    async def resolve_account(
        self,
        customer_id: Optional[str],
        metadata_account_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
    ) -> Account:
        """Find the account by Stripe customer, else by the stable account id in metadata."""
        account: Optional[Account] = None
        if customer_id:
            result = await self.db.execute(
                select(Account)
                .where(Account.external_billing_customer_id == customer_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            account = result.scalar_one_or_none()

        if account is None and metadata_account_id:
            result = await self.db.execute(
                select(Account)
                .where(Account.id == str(metadata_account_id))
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            account = result.scalar_one_or_none()
            if account is not None and customer_id:
                if account.external_billing_customer_id not in (None, customer_id):
                    raise AccountResolutionFailed(
                        "customer does not match account",
                        customer_reference=customer_id,
                        subscription_reference=subscription_id,
                    )
                account.external_billing_customer_id = customer_id

        if account is None:
            raise AccountResolutionFailed(
                "no account for billing customer",
                customer_reference=customer_id,
                subscription_reference=subscription_id,
            )
        return account

    async def load_cursor(self, subscription_id: str) -> Optional[BillingSubscription]:
        result = await self.db.execute(
            select(BillingSubscription)
            .where(BillingSubscription.id == subscription_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    def ensure_fresh(self, cursor: Optional[BillingSubscription]) -> None:
        if cursor is None:
            return
        if cursor.ended:
            raise WebhookEventStale(f"subscription {cursor.id} already ended")
        if self.created < int(cursor.last_event_created or 0):
            raise WebhookEventStale(
                f"event {self.event_id} at {self.created} older than {cursor.last_event_created}"
            )

    def cursor_for(
        self,
        cursor: Optional[BillingSubscription],
        subscription_id: str,
        account_id: str,
    ) -> BillingSubscription:
        if cursor is None:
            cursor = BillingSubscription(
                id=subscription_id,
                account_id=account_id,
                last_event_created=0,
                ended=False,
                activated=False,
            )
            self.db.add(cursor)
        return cursor

    def advance_cursor(
        self,
        cursor: Optional[BillingSubscription],
        subscription_id: str,
        account_id: str,
        **fields: Any,
    ) -> BillingSubscription:
        """Record an applied account transition; older events become stale."""
        cursor = self.cursor_for(cursor, subscription_id, account_id)
        cursor.account_id = account_id
        cursor.last_event_created = max(int(cursor.last_event_created or 0), self.created)
        for name, value in fields.items():
            setattr(cursor, name, value)
        return cursor

    def observe_status(self, cursor: BillingSubscription, provider_status: str) -> None:
        """Keep the newest provider status seen for the subscription, by event time."""
        if cursor.status_created is None or self.created >= int(cursor.status_created):
            cursor.provider_status = provider_status
            cursor.status_created = self.created

    @staticmethod
    def sync_status(account: Account, cursor: BillingSubscription) -> None:
        if account.plan != PLAN_PAID or account.external_subscription_id != cursor.id:
            return
        if cursor.provider_status == PROVIDER_STATUS_ACTIVE:
            account.subscription_status = STATUS_ACTIVE
        else:
            account.subscription_status = STATUS_PAST_DUE

    async def activate(self, account: Account, plan: Plan, subscription_id: str, period_key: Optional[str]) -> None:
        if account.external_subscription_id not in (None, subscription_id):
            logger.warning(
                "Account %s switching subscription %s -> %s",
                account.id,
                account.external_subscription_id,
                subscription_id,
            )
        account.plan = PLAN_PAID
        account.plan_id = plan.plan_id
        account.subscription_status = STATUS_ACTIVE
        account.external_subscription_id = subscription_id
        if period_key is not None and not plan.unmetered:
            await grant_credits(
                account.id,
                int(plan.credits),
                period_key,
                self.db,
                reason=f"plan:{plan.plan_id}",
                commit=False,
            )

    async def cancel(self, account: Account, subscription_id: str) -> None:
        account.plan = PLAN_FREE
        account.plan_id = None
        account.subscription_status = STATUS_CANCELLED
        account.external_subscription_id = None
        await grant_credits(
            account.id,
            max(int(settings.FREE_TIER_CREDITS), 0),
            f"{subscription_id}:cancelled",
            self.db,
            reason="subscription_deleted",
            commit=False,
        )

    async def settle_late_activation(
        self,
        account: Account,
        cursor: Optional[BillingSubscription],
        subscription_id: str,
    ) -> bool:
        """Land an activation that arrives after its subscription's delete.

        Delivered in order the account would have been activated and then
        cancelled, so the cancellation is what gets applied. Only a paid
        signal (checkout or an active subscription) reaches this path.
        """
        if cursor is None or not cursor.ended or cursor.activated:
            return False
        if account.external_subscription_id is not None:
            return False
        await self.cancel(account, subscription_id)
        cursor.account_id = account.id
        cursor.activated = True
        logger.info(
            "billing_late_activation_cancelled account=%s subscription=%s",
            account.id,
            subscription_id,
        )
        return True


def _resolve_plan(*candidates: Optional[str], customer_id: Optional[str], subscription_id: Optional[str]) -> Plan:
    for candidate in candidates:
        plan = get_plan(candidate)
        if plan is not None:
            return plan
    raise AccountResolutionFailed(
        "unknown plan",
        customer_reference=customer_id,
        subscription_reference=subscription_id,
    )


def _bound_to(account: Account, subscription_id: str) -> bool:
    return account.plan == PLAN_PAID and account.external_subscription_id == subscription_id


async def _on_checkout_completed(tx: _Transition, obj: Dict[str, Any]) -> Tuple[str, Optional[str]]:
    if obj.get("mode") not in (None, "subscription"):
        return OUTCOME_IGNORED, None

    metadata = _metadata(obj)
    customer_id = _ref(obj.get("customer"))
    subscription_id = _ref(obj.get("subscription"))
    plan = _resolve_plan(metadata.get("plan_id"), customer_id=customer_id, subscription_id=subscription_id)
    account = await tx.resolve_account(customer_id, metadata.get("account_id"), subscription_id)
    if not subscription_id:
        raise AccountResolutionFailed(
            "checkout without subscription reference",
            customer_reference=customer_id,
        )

    cursor = await tx.load_cursor(subscription_id)
    if await tx.settle_late_activation(account, cursor, subscription_id):
        return OUTCOME_APPLIED, account.id
    tx.ensure_fresh(cursor)

    await tx.activate(account, plan, subscription_id, f"{subscription_id}:initial")
    cursor = tx.advance_cursor(cursor, subscription_id, account.id, plan_id=plan.plan_id, activated=True)
    tx.observe_status(cursor, PROVIDER_STATUS_ACTIVE)
    tx.sync_status(account, cursor)
    logger.info(
        "billing_checkout_completed account=%s plan=%s subscription=%s status=%s",
        account.id,
        plan.plan_id,
        subscription_id,
        account.subscription_status,
    )
    return OUTCOME_APPLIED, account.id


async def _on_subscription_changed(tx: _Transition, obj: Dict[str, Any]) -> Tuple[str, Optional[str]]:
    metadata = _metadata(obj)
    subscription_id = _ref(obj.get("id"))
    customer_id = _ref(obj.get("customer"))
    provider_status = str(obj.get("status") or "").strip().lower()
    period_start = _period_start(obj)
    if not subscription_id:
        return OUTCOME_IGNORED, None

    account = await tx.resolve_account(customer_id, metadata.get("account_id"), subscription_id)
    cursor = await tx.load_cursor(subscription_id)

    if provider_status == PROVIDER_STATUS_ACTIVE:
        if await tx.settle_late_activation(account, cursor, subscription_id):
            return OUTCOME_APPLIED, account.id
        tx.ensure_fresh(cursor)

        plan = _resolve_plan(
            metadata.get("plan_id"),
            cursor.plan_id if cursor else None,
            account.plan_id,
            customer_id=customer_id,
            subscription_id=subscription_id,
        )
        recorded_period = cursor.current_period_start if cursor else None
        if recorded_period is None:
            period_key = f"{subscription_id}:initial"
        elif period_start is not None and period_start > int(recorded_period):
            period_key = f"{subscription_id}:{period_start}"
        else:
            period_key = None
        await tx.activate(account, plan, subscription_id, period_key)

        next_period = recorded_period
        if period_start is not None:
            next_period = max(int(recorded_period or 0), period_start)
        cursor = tx.advance_cursor(
            cursor,
            subscription_id,
            account.id,
            plan_id=plan.plan_id,
            current_period_start=next_period,
            activated=True,
        )
        tx.observe_status(cursor, provider_status)
        tx.sync_status(account, cursor)
        logger.info(
            "billing_subscription_active account=%s subscription=%s refill=%s status=%s",
            account.id,
            subscription_id,
            period_key,
            account.subscription_status,
        )
        return OUTCOME_APPLIED, account.id

    tx.ensure_fresh(cursor)
    if not _bound_to(account, subscription_id):
        # Not the account's subscription (yet); remember the status for a later activation.
        cursor = tx.cursor_for(cursor, subscription_id, account.id)
        tx.observe_status(cursor, provider_status or "unknown")
        logger.info(
            "billing_subscription_status_pending account=%s subscription=%s provider_status=%s",
            account.id,
            subscription_id,
            provider_status,
        )
        return OUTCOME_IGNORED, account.id

    cursor = tx.advance_cursor(cursor, subscription_id, account.id)
    tx.observe_status(cursor, provider_status or "unknown")
    tx.sync_status(account, cursor)
    logger.info(
        "billing_subscription_status account=%s subscription=%s provider_status=%s",
        account.id,
        subscription_id,
        provider_status,
    )
    return OUTCOME_APPLIED, account.id


async def _on_subscription_deleted(tx: _Transition, obj: Dict[str, Any]) -> Tuple[str, Optional[str]]:
    subscription_id = _ref(obj.get("id"))
    customer_id = _ref(obj.get("customer"))
    if not subscription_id:
        return OUTCOME_IGNORED, None

    account = await tx.resolve_account(customer_id, _metadata(obj).get("account_id"), subscription_id)
    cursor = await tx.load_cursor(subscription_id)
    if cursor is not None and cursor.ended:
        raise WebhookEventStale(f"subscription {subscription_id} already ended")

    if _bound_to(account, subscription_id):
        await tx.cancel(account, subscription_id)
    else:
        logger.info(
            "Subscription %s deleted but account %s is not on it (current %s); account unchanged",
            subscription_id,
            account.id,
            account.external_subscription_id,
        )

    cursor = tx.advance_cursor(cursor, subscription_id, account.id, ended=True)
    tx.observe_status(cursor, "canceled")
    logger.info("billing_subscription_deleted account=%s subscription=%s", account.id, subscription_id)
    return OUTCOME_APPLIED, account.id


async def _on_invoice(tx: _Transition, obj: Dict[str, Any], *, paid: bool) -> Tuple[str, Optional[str]]:
    subscription_id = _invoice_subscription(obj)
    customer_id = _ref(obj.get("customer"))
    if not subscription_id:
        return OUTCOME_IGNORED, None

    account = await tx.resolve_account(customer_id, _metadata(obj).get("account_id"), subscription_id)
    cursor = await tx.load_cursor(subscription_id)
    tx.ensure_fresh(cursor)
    provider_status = PROVIDER_STATUS_ACTIVE if paid else STATUS_PAST_DUE

    if not _bound_to(account, subscription_id):
        cursor = tx.cursor_for(cursor, subscription_id, account.id)
        tx.observe_status(cursor, provider_status)
        logger.info(
            "billing_invoice_pending account=%s subscription=%s paid=%s",
            account.id,
            subscription_id,
            paid,
        )
        return OUTCOME_IGNORED, account.id

    cursor = tx.advance_cursor(cursor, subscription_id, account.id)
    tx.observe_status(cursor, provider_status)
    tx.sync_status(account, cursor)
    logger.info(
        "billing_invoice account=%s subscription=%s paid=%s status=%s",
        account.id,
        subscription_id,
        paid,
        account.subscription_status,
    )
    return OUTCOME_APPLIED, account.id


async def _on_payment_failed(tx: _Transition, obj: Dict[str, Any]) -> Tuple[str, Optional[str]]:
    return await _on_invoice(tx, obj, paid=False)


async def _on_payment_succeeded(tx: _Transition, obj: Dict[str, Any]) -> Tuple[str, Optional[str]]:
    return await _on_invoice(tx, obj, paid=True)


Handler = Callable[[_Transition, Dict[str, Any]], Awaitable[Tuple[str, Optional[str]]]]

EVENT_HANDLERS: Dict[str, Handler] = {
    "checkout.session.completed": _on_checkout_completed,
    "customer.subscription.created": _on_subscription_changed,
    "customer.subscription.updated": _on_subscription_changed,
    "customer.subscription.deleted": _on_subscription_deleted,
    "invoice.payment_failed": _on_payment_failed,
    "invoice.payment_succeeded": _on_payment_succeeded,
    "invoice.paid": _on_payment_succeeded,
}


async def _already_processed(db: AsyncSession, event_id: str) -> bool:
    result = await db.execute(select(BillingEvent.id).where(BillingEvent.id == event_id))
    return result.scalar_one_or_none() is not None


async def apply_billing_event(event: Dict[str, Any], db: AsyncSession) -> EventOutcome:
    """Apply one verified provider event exactly once.

    Returns the recorded outcome; only unexpected errors propagate (after a
    rollback), so the provider retries the delivery.
    """
    event_id = str(event.get("id") or "").strip()
    event_type = str(event.get("type") or "").strip()
    if not event_id or not event_type:
        raise ValueError("event id and type are required")
    try:
        created = int(event.get("created") or 0)
    except (TypeError, ValueError):
        created = 0
    obj = (event.get("data") or {}).get("object") or {}

    if await _already_processed(db, event_id):
        logger.info("billing_event_duplicate id=%s type=%s", event_id, event_type)
        return EventOutcome(event_id, event_type, OUTCOME_DUPLICATE)

    handler = EVENT_HANDLERS.get(event_type)
    account_id: Optional[str] = None
    try:
        if handler is None:
            logger.info("Unhandled billing event type: %s (%s)", event_type, event_id)
            outcome = OUTCOME_IGNORED
        else:
            outcome, account_id = await handler(_Transition(db, event_id, created), obj)
    except WebhookEventStale as exc:
        await db.rollback()
        logger.info("billing_event_stale id=%s type=%s: %s", event_id, event_type, exc)
        outcome, account_id = OUTCOME_STALE, None
    except AccountResolutionFailed as exc:
        await db.rollback()
        logger.warning(
            "billing_event_unresolved id=%s type=%s reason=%s customer=%s subscription=%s",
            event_id,
            event_type,
            exc.reason,
            exc.customer_reference,
            exc.subscription_reference,
        )
        db.add(
            BillingReconciliation(
                event_id=event_id,
                event_type=event_type,
                customer_reference=exc.customer_reference,
                subscription_reference=exc.subscription_reference,
                reason=exc.reason,
                payload_json=event,
            )
        )
        outcome, account_id = OUTCOME_UNRESOLVED, None
    except Exception:
        await db.rollback()
        raise

    db.add(
        BillingEvent(
            id=event_id,
            event_type=event_type,
            provider_created=created or None,
            account_id=account_id,
            outcome=outcome,
        )
    )
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        if await _already_processed(db, event_id):
            # Concurrent delivery of the same event committed first.
            return EventOutcome(event_id, event_type, OUTCOME_DUPLICATE)
        raise

    return EventOutcome(event_id, event_type, outcome, account_id)
