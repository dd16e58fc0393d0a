"""Generation model: headshot generation history."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, String, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Generation(Base):
    """One headshot generation attempt. Image bytes are not stored."""

    __tablename__ = "generations"
    __table_args__ = (
        # At most one delivered result per paid request key.
        Index(
            "uq_generations_completed_key",
            "account_id",
            "idempotency_key",
            unique=True,
            postgresql_where=text("status = 'completed'"),
            sqlite_where=text("status = 'completed'"),
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    style = Column(String, nullable=False)
    idempotency_key = Column(String, nullable=False)
    status = Column(String, nullable=False)  # completed, failed
    error_kind = Column(String, nullable=True)  # transient, permanent
    mime_type = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    account = relationship("Account", back_populates="generations")
