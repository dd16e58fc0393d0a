"""Mobile hand-off models: QR sessions and the photos uploaded through them."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class MobileUploadSession(Base):
    """Short-lived capability linking a phone upload to a desktop account."""

    __tablename__ = "mobile_upload_sessions"

    id = Column(String, primary_key=True)  # URL-safe random token
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    account = relationship("Account", back_populates="mobile_sessions")
    uploads = relationship("MobileUpload", back_populates="session", cascade="all, delete-orphan")


class MobileUpload(Base):
    """Photo uploaded from a phone, claimed once by the desktop."""

    __tablename__ = "mobile_uploads"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    session_id = Column(String, ForeignKey("mobile_upload_sessions.id"), nullable=False, index=True)
    file_url = Column(String, nullable=False)
    original_filename = Column(String, nullable=True)
    mime_type = Column(String, nullable=True)
    file_size_bytes = Column(Integer, nullable=True)
    claim_token = Column(String, nullable=True, index=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    session = relationship("MobileUploadSession", back_populates="uploads")
