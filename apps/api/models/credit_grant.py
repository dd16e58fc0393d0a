"""CreditGrant model: applied refills, one per billing-period marker."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CreditGrant(Base):
    """Immutable record that a refill for `period_key` was applied."""

    __tablename__ = "credit_grants"
    __table_args__ = (
        UniqueConstraint("account_id", "period_key", name="uq_credit_grants_account_period"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    period_key = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    reason = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    account = relationship("Account", back_populates="grants")
