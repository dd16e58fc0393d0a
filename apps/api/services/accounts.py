"""Account lifecycle helpers (sign-in upsert, lookups)."""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.account import PLAN_FREE, STATUS_NONE, Account
from services.errors import AccountNotFound

logger = logging.getLogger(__name__)


async def get_account(account_id: str, db: AsyncSession) -> Account:
    result = await db.execute(select(Account).where(Account.id == account_id))
    account = result.scalar_one_or_none()
    if account is None:
        raise AccountNotFound(account_id)
    return account


async def get_account_by_subject(subject_id: str, db: AsyncSession) -> Optional[Account]:
    result = await db.execute(select(Account).where(Account.subject_id == subject_id))
    return result.scalar_one_or_none()


async def ensure_account(subject_id: str, email: Optional[str], db: AsyncSession) -> Account:
    """Idempotent upsert keyed by the immutable identity-provider subject.

    Email is metadata only and is refreshed on every sign-in.
    """
    subject = str(subject_id or "").strip()
    if not subject:
        raise ValueError("subject_id is required")
    normalized_email = str(email or "").strip().lower() or None

    account = await get_account_by_subject(subject, db)
    if account is not None:
        if normalized_email and account.email != normalized_email:
            account.email = normalized_email
            await db.commit()
        return account

    account = Account(
        subject_id=subject,
        email=normalized_email,
        plan=PLAN_FREE,
        credits=max(int(settings.FREE_TIER_CREDITS), 0),
        subscription_status=STATUS_NONE,
    )
    db.add(account)
    try:
        await db.commit()
    except IntegrityError:
        # Concurrent first sign-in for the same subject.
        await db.rollback()
        account = await get_account_by_subject(subject, db)
        if account is None:
            raise
        return account

    logger.info("account_created account=%s subject=%s", account.id, subject)
    return account
