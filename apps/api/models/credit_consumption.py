"""CreditConsumption model: one row per idempotent spend attempt."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CreditConsumption(Base):
    """Recorded outcome of a `try_consume_credit` call for a given idempotency key."""

    __tablename__ = "credit_consumptions"
    __table_args__ = (
        UniqueConstraint("account_id", "idempotency_key", name="uq_credit_consumptions_account_key"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    idempotency_key = Column(String, nullable=False)
    granted = Column(Boolean, nullable=False)
    unlimited = Column(Boolean, nullable=False, default=False)
    debited = Column(Boolean, nullable=False, default=False)
    credits_remaining = Column(Integer, nullable=False, default=0)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    account = relationship("Account", back_populates="consumptions")
