"""Authentication dependencies for API account scoping."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.account import Account
from services.accounts import get_account
from services.errors import AccountNotFound
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    account_id: str
    email: Optional[str] = None
    expires_at: Optional[int] = None


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve the authenticated account id from a Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        payload = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(
        account_id=str(payload.get("sub", "")),
        email=str(payload.get("email", "")) or None,
        expires_at=payload.get("exp"),
    )


async def get_current_account(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
) -> Account:
    """Load the session's account; a token for a vanished account is a 404."""
    try:
        return await get_account(auth.account_id, db)
    except AccountNotFound as exc:
        raise HTTPException(status_code=404, detail="Account not found") from exc
