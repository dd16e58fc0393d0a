from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from main import app
from models.account import PLAN_FREE, STATUS_NONE, Account
from routers import rate_limit


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    """Throwaway SQLite database with the full schema."""
    db_path = tmp_path / "headshot_test.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


async def seed_account(
    maker,
    account_id: str,
    *,
    credits: int = 10,
    plan: str = PLAN_FREE,
    plan_id: Optional[str] = None,
    subscription_status: str = STATUS_NONE,
    customer_id: Optional[str] = None,
    subscription_id: Optional[str] = None,
    email: Optional[str] = None,
) -> None:
    async with maker() as session:
        session.add(
            Account(
                id=account_id,
                subject_id=f"subject-{account_id}",
                email=email or f"{account_id}@example.com",
                plan=plan,
                plan_id=plan_id,
                credits=credits,
                subscription_status=subscription_status,
                external_billing_customer_id=customer_id,
                external_subscription_id=subscription_id,
            )
        )
        await session.commit()


async def load_account(maker, account_id: str) -> Account:
    async with maker() as session:
        return await session.get(Account, account_id)
