"""Billing router: plan catalogue, entitlement, Stripe checkout and portal."""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_plan, get_plan_catalogue, settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.errors import AccountNotFound, ExternalServicePermanent, ExternalServiceTransient
from services.ledger import get_entitlement
from services.stripe_gateway import open_billing_portal, start_checkout

router = APIRouter()
logger = logging.getLogger(__name__)


class CheckoutRequest(BaseModel):
    plan_id: str


class BillingRedirect(BaseModel):
    url: str


class PlanResponse(BaseModel):
    plan_id: str
    name: str
    price: float
    credits: Optional[int] = None
    unlimited: bool
    description: str


class EntitlementResponse(BaseModel):
    account_id: str
    plan: str
    plan_id: Optional[str] = None
    credits: int
    subscription_status: str
    unlimited: bool


def _require_billing() -> None:
    if not settings.BILLING_ENABLED:
        raise HTTPException(status_code=503, detail="Billing is disabled.")


def _gateway_error(exc: Exception) -> HTTPException:
    if isinstance(exc, ExternalServiceTransient):
        return HTTPException(status_code=503, detail=exc.user_message)
    if isinstance(exc, AccountNotFound):
        return HTTPException(status_code=404, detail="Account not found")
    return HTTPException(status_code=502, detail="Payment provider request failed.")


@router.get("/plans", response_model=List[PlanResponse])
async def list_plans():
    return [
        PlanResponse(
            plan_id=plan.plan_id,
            name=plan.name,
            price=plan.price,
            credits=plan.credits,
            unlimited=plan.unmetered,
            description=plan.description,
        )
        for plan in get_plan_catalogue().values()
    ]


@router.get("/entitlement", response_model=EntitlementResponse)
async def entitlement(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    try:
        current = await get_entitlement(auth.account_id, db)
    except AccountNotFound as exc:
        raise HTTPException(status_code=404, detail="Account not found") from exc
    return EntitlementResponse(**asdict(current))


@router.post("/checkout", response_model=BillingRedirect)
async def create_checkout_session(
    request: CheckoutRequest,
    _rate_limit: None = Depends(rate_limit("billing_checkout", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Start a subscription checkout and return the provider redirect URL."""
    _require_billing()
    plan = get_plan(request.plan_id)
    if plan is None:
        raise HTTPException(status_code=422, detail="Unknown plan.")
    if not plan.price_id:
        logger.error("Plan %s has no Stripe price configured", plan.plan_id)
        raise HTTPException(status_code=503, detail="Plan is not available.")

    try:
        url = await start_checkout(auth.account_id, plan.plan_id, db)
    except (ExternalServiceTransient, ExternalServicePermanent, AccountNotFound) as exc:
        raise _gateway_error(exc) from exc
    return BillingRedirect(url=url)


@router.post("/portal", response_model=BillingRedirect)
async def create_portal_session(
    _rate_limit: None = Depends(rate_limit("billing_portal", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Open the provider-hosted billing portal for the current account."""
    _require_billing()
    try:
        url = await open_billing_portal(auth.account_id, db)
    except (ExternalServiceTransient, ExternalServicePermanent, AccountNotFound) as exc:
        raise _gateway_error(exc) from exc
    return BillingRedirect(url=url)
