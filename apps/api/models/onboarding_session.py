"""OnboardingSession model for anonymous pre-signup input."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class OnboardingSession(Base):
    """Cookie-addressed anonymous session with a fixed expiry."""

    __tablename__ = "onboarding_sessions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    # Stored status is active or claimed; expired is derived from expires_at.
    status = Column(String, nullable=False, default="active", index=True)
    ip_hash = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    claimed_by_account_id = Column(String, ForeignKey("accounts.id"), nullable=True, index=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    drafts = relationship("OnboardingDraft", back_populates="session", cascade="all, delete-orphan")
