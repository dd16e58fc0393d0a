"""BillingSubscription model: per-subscription staleness cursor."""

from sqlalchemy import Boolean, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class BillingSubscription(Base):
    """Newest applied provider state for one subscription."""

    __tablename__ = "billing_subscriptions"

    id = Column(String, primary_key=True)  # provider subscription id
    account_id = Column(String, nullable=False, index=True)
    plan_id = Column(String, nullable=True)
    provider_status = Column(String, nullable=True)
    status_created = Column(Integer, nullable=True)  # provider time of provider_status
    current_period_start = Column(Integer, nullable=True)
    last_event_created = Column(Integer, nullable=False, default=0)
    ended = Column(Boolean, nullable=False, default=False)
    activated = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
