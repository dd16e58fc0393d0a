"""Thin, bounded pass-throughs to Stripe (signature checks, checkout, portal)."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Dict

import stripe
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_plan, settings
from models.account import Account
from services.accounts import get_account
from services.errors import ExternalServicePermanent, ExternalServiceTransient, WebhookSignatureInvalid

logger = logging.getLogger(__name__)

_TRANSIENT_STRIPE_ERRORS = (
    stripe.APIConnectionError,
    stripe.RateLimitError,
    stripe.APIError,
)


def verify_webhook(payload: bytes, signature_header: str) -> Dict[str, Any]:
    """Verify the `Stripe-Signature` header and return the decoded event."""
    secret = (settings.STRIPE_WEBHOOK_SECRET or "").strip()
    if not secret:
        raise WebhookSignatureInvalid("webhook secret is not configured")
    if not signature_header:
        raise WebhookSignatureInvalid("missing Stripe-Signature header")

    try:
        body = payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else str(payload)
    except UnicodeDecodeError as exc:
        raise WebhookSignatureInvalid("payload is not valid UTF-8") from exc
    try:
        stripe.WebhookSignature.verify_header(
            body,
            signature_header,
            secret,
            tolerance=int(settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS),
        )
    except stripe.SignatureVerificationError as exc:
        raise WebhookSignatureInvalid(str(exc)) from exc

    try:
        event = json.loads(body)
    except json.JSONDecodeError as exc:
        raise WebhookSignatureInvalid("payload is not valid JSON") from exc
    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise WebhookSignatureInvalid("payload is not a Stripe event")
    return event


async def _call_stripe(operation: str, fn: Callable[..., Any], **params: Any) -> Any:
    if not settings.STRIPE_SECRET_KEY:
        raise ExternalServicePermanent("stripe", "STRIPE_SECRET_KEY is not configured")
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(fn, api_key=settings.STRIPE_SECRET_KEY, **params),
            timeout=float(settings.STRIPE_TIMEOUT_SECONDS),
        )
    except asyncio.TimeoutError as exc:
        logger.warning("Stripe %s timed out after %ss", operation, settings.STRIPE_TIMEOUT_SECONDS)
        raise ExternalServiceTransient("stripe", f"{operation} timed out") from exc
    except _TRANSIENT_STRIPE_ERRORS as exc:
        logger.warning("Stripe %s transient failure: %s", operation, exc)
        raise ExternalServiceTransient("stripe", operation) from exc
    except stripe.StripeError as exc:
        logger.error("Stripe %s failed: %s", operation, exc)
        raise ExternalServicePermanent("stripe", operation) from exc


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


async def ensure_billing_customer(account_id: str, db: AsyncSession) -> str:
    """Return the account's Stripe customer id, creating it on first use."""
    account = await get_account(account_id, db)
    if account.external_billing_customer_id:
        return account.external_billing_customer_id

    params: Dict[str, Any] = {"metadata": {"account_id": account.id}}
    if account.email:
        params["email"] = account.email
    customer = await _call_stripe("customer.create", stripe.Customer.create, **params)
    customer_id = str(_field(customer, "id"))

    bound = await db.execute(
        update(Account)
        .where(Account.id == account.id, Account.external_billing_customer_id.is_(None))
        .values(external_billing_customer_id=customer_id)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if bound.rowcount != 1:
        # Another request bound a customer first; keep theirs.
        await db.refresh(account)
        logger.warning(
            "Discarding duplicate Stripe customer %s for account %s (bound %s)",
            customer_id,
            account.id,
            account.external_billing_customer_id,
        )
        return account.external_billing_customer_id

    logger.info("billing_customer_created account=%s customer=%s", account.id, customer_id)
    return customer_id


async def start_checkout(account_id: str, plan_id: str, db: AsyncSession) -> str:
    """Create a subscription Checkout Session and return its redirect URL."""
    plan = get_plan(plan_id)
    if plan is None:
        raise ValueError(f"Unknown plan: {plan_id}")

    customer_id = await ensure_billing_customer(account_id, db)
    metadata = {"account_id": account_id, "plan_id": plan.plan_id}
    session = await _call_stripe(
        "checkout.session.create",
        stripe.checkout.Session.create,
        customer=customer_id,
        mode="subscription",
        line_items=[{"price": plan.price_id, "quantity": 1}],
        success_url=f"{settings.SITE_URL}/dashboard?payment=success",
        cancel_url=f"{settings.SITE_URL}/pricing?payment=cancelled",
        client_reference_id=account_id,
        metadata=metadata,
        subscription_data={"metadata": metadata},
    )
    logger.info("checkout_started account=%s plan=%s", account_id, plan.plan_id)
    return str(_field(session, "url"))


async def open_billing_portal(account_id: str, db: AsyncSession) -> str:
    customer_id = await ensure_billing_customer(account_id, db)
    session = await _call_stripe(
        "billing_portal.session.create",
        stripe.billing_portal.Session.create,
        customer=customer_id,
        return_url=f"{settings.SITE_URL}/dashboard?tab=billing",
    )
    return str(_field(session, "url"))
