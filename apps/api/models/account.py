"""Account model: one row per signed-in identity."""

import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


PLAN_FREE = "free"
PLAN_PAID = "paid"

STATUS_NONE = "none"
STATUS_ACTIVE = "active"
STATUS_PAST_DUE = "past_due"
STATUS_CANCELLED = "cancelled"


class Account(Base):
    """Canonical account shape keyed by the identity-provider subject."""

    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_accounts_credits_non_negative"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    subject_id = Column(String, nullable=False, unique=True, index=True)
    email = Column(String, nullable=True)
    plan = Column(String, nullable=False, default=PLAN_FREE)
    plan_id = Column(String, nullable=True)
    credits = Column(Integer, nullable=False, default=0)
    subscription_status = Column(String, nullable=False, default=STATUS_NONE)
    external_billing_customer_id = Column(String, nullable=True, unique=True, index=True)
    external_subscription_id = Column(String, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    consumptions = relationship("CreditConsumption", back_populates="account")
    grants = relationship("CreditGrant", back_populates="account")
    generations = relationship("Generation", back_populates="account")
    mobile_sessions = relationship("MobileUploadSession", back_populates="account")
