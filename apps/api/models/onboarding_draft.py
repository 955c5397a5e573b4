"""OnboardingDraft model: append-only JD + resume snapshots."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class OnboardingDraft(Base):
    """Draft inputs attached to an onboarding session. Latest row wins."""

    __tablename__ = "onboarding_drafts"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    session_id = Column(String, ForeignKey("onboarding_sessions.id"), nullable=False, index=True)
    # Monotonic per-session counter; breaks created_at ties between fast inserts.
    sequence = Column(Integer, nullable=False, default=1)
    jd_text = Column(Text, nullable=False)
    jd_source_url = Column(String, nullable=True)
    jd_title = Column(String, nullable=True)
    jd_company = Column(String, nullable=True)
    resume_bucket = Column(String, nullable=False)
    resume_object_path = Column(String, nullable=False, index=True)
    resume_original_filename = Column(String, nullable=True)
    resume_mime_type = Column(String, nullable=True)
    resume_size_bytes = Column(Integer, nullable=True)
    resume_extracted_text = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    session = relationship("OnboardingSession", back_populates="drafts")
