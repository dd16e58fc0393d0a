"""Entitlement ledger: the only code path that changes `Account.credits`.

Every debit is a single conditional UPDATE (`credits > 0`) so two concurrent
requests can never both spend the last credit, and every outcome is recorded
under the caller's idempotency key in the same transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.account import PLAN_PAID, STATUS_ACTIVE, STATUS_PAST_DUE, Account
from models.credit_consumption import CreditConsumption
from models.credit_grant import CreditGrant
from services.errors import AccountNotFound, DuplicateIdempotencyKey, InsufficientCredits, InvalidAmount

logger = logging.getLogger(__name__)

MAX_IDEMPOTENCY_KEY_LENGTH = 200


@dataclass(frozen=True)
class ConsumeResult:
    granted: bool
    credits_remaining: int
    unlimited: bool = False
    replayed: bool = False


@dataclass(frozen=True)
class GrantResult:
    applied: bool
    credits: int


@dataclass(frozen=True)
class Entitlement:
    account_id: str
    plan: str
    plan_id: Optional[str]
    credits: int
    subscription_status: str
    unlimited: bool


def normalize_idempotency_key(value: Optional[str]) -> str:
    key = str(value or "").strip()
    if not key:
        raise ValueError("idempotency key is required")
    if len(key) > MAX_IDEMPOTENCY_KEY_LENGTH:
        raise ValueError(f"idempotency key must be at most {MAX_IDEMPOTENCY_KEY_LENGTH} characters")
    return key


def entitled_statuses() -> frozenset:
    if settings.PAST_DUE_RETAINS_ACCESS:
        return frozenset({STATUS_ACTIVE, STATUS_PAST_DUE})
    return frozenset({STATUS_ACTIVE})


def has_unlimited_access(account: Account) -> bool:
    return account.plan == PLAN_PAID and account.subscription_status in entitled_statuses()


async def _load_account(db: AsyncSession, account_id: str) -> Account:
    result = await db.execute(
        select(Account).where(Account.id == account_id).execution_options(populate_existing=True)
    )
    account = result.scalar_one_or_none()
    if account is None:
        raise AccountNotFound(account_id)
    return account


async def _read_credits(db: AsyncSession, account_id: str) -> int:
    result = await db.execute(select(Account.credits).where(Account.id == account_id))
    return int(result.scalar() or 0)


async def _get_consumption(db: AsyncSession, account_id: str, key: str) -> Optional[CreditConsumption]:
    result = await db.execute(
        select(CreditConsumption)
        .where(
            CreditConsumption.account_id == account_id,
            CreditConsumption.idempotency_key == key,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def _replay(row: CreditConsumption) -> ConsumeResult:
    return ConsumeResult(
        granted=bool(row.granted),
        credits_remaining=int(row.credits_remaining or 0),
        unlimited=bool(row.unlimited),
        replayed=True,
    )


async def _debit_one(db: AsyncSession, account: Account) -> ConsumeResult:
    if has_unlimited_access(account):
        return ConsumeResult(granted=True, credits_remaining=int(account.credits or 0), unlimited=True)

    result = await db.execute(
        update(Account)
        .where(Account.id == account.id, Account.credits > 0)
        .values(credits=Account.credits - 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return ConsumeResult(granted=False, credits_remaining=0)
    return ConsumeResult(granted=True, credits_remaining=await _read_credits(db, account.id))


async def _record_consumption(db: AsyncSession, account_id: str, key: str, outcome: ConsumeResult) -> None:
    db.add(
        CreditConsumption(
            account_id=account_id,
            idempotency_key=key,
            granted=outcome.granted,
            unlimited=outcome.unlimited,
            debited=outcome.granted and not outcome.unlimited,
            credits_remaining=outcome.credits_remaining,
        )
    )
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise DuplicateIdempotencyKey(key) from exc


async def try_consume_credit(account_id: str, idempotency_key: str, db: AsyncSession) -> ConsumeResult:
    """Atomically check-and-decrement one credit for a logical user action.

    Replaying the same key returns the recorded result without debiting again.
    A key whose debit was refunded is charged again on replay, since the retried
    action will run again.
    """
    key = normalize_idempotency_key(idempotency_key)

    existing = await _get_consumption(db, account_id, key)
    if existing is not None and existing.refunded_at is None:
        return _replay(existing)

    account = await _load_account(db, account_id)

    if existing is not None:
        claim = await db.execute(
            update(CreditConsumption)
            .where(
                CreditConsumption.id == existing.id,
                CreditConsumption.refunded_at.is_not(None),
            )
            .values(refunded_at=None)
            .execution_options(synchronize_session=False)
        )
        if claim.rowcount != 1:
            await db.rollback()
            return _replay(await _get_consumption(db, account_id, key))

        outcome = await _debit_one(db, account)
        await db.execute(
            update(CreditConsumption)
            .where(CreditConsumption.id == existing.id)
            .values(
                granted=outcome.granted,
                unlimited=outcome.unlimited,
                debited=outcome.granted and not outcome.unlimited,
                credits_remaining=outcome.credits_remaining,
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        logger.info("credit_reconsume account=%s key=%s granted=%s", account_id, key, outcome.granted)
        return outcome

    outcome = await _debit_one(db, account)
    try:
        await _record_consumption(db, account_id, key, outcome)
    except DuplicateIdempotencyKey:
        # A concurrent request with the same key won; its debit is the only one.
        winner = await _get_consumption(db, account_id, key)
        if winner is None:
            raise
        return _replay(winner)

    logger.info(
        "credit_consume account=%s key=%s granted=%s remaining=%s unlimited=%s",
        account_id,
        key,
        outcome.granted,
        outcome.credits_remaining,
        outcome.unlimited,
    )
    return outcome


async def spend_credit(account_id: str, idempotency_key: str, db: AsyncSession) -> ConsumeResult:
    """Gate a paid action: consume (or replay) a credit, raising when none is left."""
    outcome = await try_consume_credit(account_id, idempotency_key, db)
    if not outcome.granted:
        raise InsufficientCredits(account_id, outcome.credits_remaining)
    return outcome


async def refund_credit(account_id: str, idempotency_key: str, db: AsyncSession) -> bool:
    """Return the credit debited under `idempotency_key`, at most once."""
    key = normalize_idempotency_key(idempotency_key)
    row = await _get_consumption(db, account_id, key)
    if row is None or not row.debited or row.refunded_at is not None:
        return False

    claim = await db.execute(
        update(CreditConsumption)
        .where(
            CreditConsumption.id == row.id,
            CreditConsumption.refunded_at.is_(None),
        )
        .values(refunded_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    if claim.rowcount != 1:
        await db.rollback()
        return False

    await db.execute(
        update(Account)
        .where(Account.id == account_id)
        .values(credits=Account.credits + 1)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.info("credit_refund account=%s key=%s", account_id, key)
    return True


async def grant_credits(
    account_id: str,
    amount: int,
    period_key: str,
    db: AsyncSession,
    *,
    reason: Optional[str] = None,
    commit: bool = True,
) -> GrantResult:
    """Reset credits to `amount`, once per `(account_id, period_key)`.

    Unused credits do not roll over: a refill replaces the balance. With
    `commit=False` the grant joins the caller's transaction.
    """
    if int(amount) < 0:
        raise InvalidAmount(int(amount))
    marker = str(period_key or "").strip()
    if not marker:
        raise ValueError("period_key is required")

    exists = await db.execute(select(Account.id).where(Account.id == account_id))
    if exists.scalar_one_or_none() is None:
        raise AccountNotFound(account_id)

    already = await db.execute(
        select(CreditGrant.id).where(
            CreditGrant.account_id == account_id,
            CreditGrant.period_key == marker,
        )
    )
    if already.scalar_one_or_none() is not None:
        return GrantResult(applied=False, credits=await _read_credits(db, account_id))

    db.add(CreditGrant(account_id=account_id, period_key=marker, amount=int(amount), reason=reason))
    await db.execute(
        update(Account)
        .where(Account.id == account_id)
        .values(credits=int(amount))
        .execution_options(synchronize_session=False)
    )
    if commit:
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            return GrantResult(applied=False, credits=await _read_credits(db, account_id))
    else:
        await db.flush()

    logger.info("credit_grant account=%s period=%s amount=%s reason=%s", account_id, marker, amount, reason)
    return GrantResult(applied=True, credits=int(amount))


async def get_entitlement(account_id: str, db: AsyncSession) -> Entitlement:
    account = await _load_account(db, account_id)
    return Entitlement(
        account_id=account.id,
        plan=account.plan,
        plan_id=account.plan_id,
        credits=int(account.credits or 0),
        subscription_status=account.subscription_status,
        unlimited=has_unlimited_access(account),
    )
