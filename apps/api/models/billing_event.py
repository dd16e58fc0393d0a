"""BillingEvent model: processed payment-provider webhook events."""

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class BillingEvent(Base):
    """Dedup record for a provider event id. Written once, never mutated."""

    __tablename__ = "billing_events"

    id = Column(String, primary_key=True)  # provider event id
    event_type = Column(String, nullable=False)
    provider_created = Column(Integer, nullable=True)
    account_id = Column(String, nullable=True, index=True)
    outcome = Column(String, nullable=False)  # applied, stale, ignored, unresolved
    received_at = Column(DateTime(timezone=True), server_default=func.now())
