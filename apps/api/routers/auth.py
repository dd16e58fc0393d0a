"""
Authentication router: identity-provider session sync and account profile retrieval.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from models.account import Account
from routers.auth_scope import AuthContext, get_auth_context, get_current_account
from routers.rate_limit import rate_limit
from services.accounts import ensure_account
from services.ledger import has_unlimited_access
from services.session_token import create_session_token, verify_identity_token

router = APIRouter()


class SyncSessionRequest(BaseModel):
    access_token: str


class SyncSessionResponse(BaseModel):
    account_id: str
    email: Optional[str] = None
    plan: str
    credits: int
    session_token: str
    session_expires_at: int


class CurrentAccountResponse(BaseModel):
    account_id: str
    email: Optional[str] = None
    plan: str
    plan_id: Optional[str] = None
    credits: int
    subscription_status: str
    unlimited: bool
    billing_enabled: bool


@router.post("/sync", response_model=SyncSessionResponse)
async def sync_session(
    request: SyncSessionRequest,
    _rate_limit: None = Depends(rate_limit("auth_sync", limit=30, window_seconds=60)),
    db: AsyncSession = Depends(get_db),
):
    """Exchange an identity-provider access token for a backend session token."""
    try:
        claims = verify_identity_token(request.access_token)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    account = await ensure_account(str(claims["sub"]), claims.get("email"), db)
    session = create_session_token(account.id, account.email)
    return SyncSessionResponse(
        account_id=account.id,
        email=account.email,
        plan=account.plan,
        credits=int(account.credits or 0),
        session_token=session["token"],
        session_expires_at=session["expires_at"],
    )


@router.get("/me", response_model=CurrentAccountResponse)
async def read_current_account(account: Account = Depends(get_current_account)):
    """Get the current account and its entitlement."""
    return CurrentAccountResponse(
        account_id=account.id,
        email=account.email,
        plan=account.plan,
        plan_id=account.plan_id,
        credits=int(account.credits or 0),
        subscription_status=account.subscription_status,
        unlimited=has_unlimited_access(account),
        billing_enabled=bool(settings.BILLING_ENABLED),
    )


@router.post("/logout")
async def logout(_auth: AuthContext = Depends(get_auth_context)):
    """Frontend-managed logout acknowledgment endpoint."""
    return {"message": "Logged out successfully"}
