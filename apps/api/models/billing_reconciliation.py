"""BillingReconciliation model: events held for manual review."""

import uuid

from sqlalchemy import JSON, Column, DateTime, String
from sqlalchemy.sql import func

from database import Base


class BillingReconciliation(Base):
    """Webhook event that could not be matched to an account or plan."""

    __tablename__ = "billing_reconciliations"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    event_id = Column(String, nullable=False, unique=True, index=True)
    event_type = Column(String, nullable=False)
    customer_reference = Column(String, nullable=True)
    subscription_reference = Column(String, nullable=True)
    reason = Column(String, nullable=False)
    payload_json = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
