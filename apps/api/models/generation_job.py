"""Generation job model."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


JOB_STATUSES = ("queued", "running", "succeeded", "failed", "canceled")
ACTIVE_JOB_STATUSES = ("queued", "running")
TERMINAL_JOB_STATUSES = ("succeeded", "failed", "canceled")
GENERATION_MODES = ("QUICK", "DEEP", "FROM_SCRATCH")


class GenerationJob(Base):
    """One billable resume tailoring request."""

    __tablename__ = "generation_jobs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    status = Column(String, nullable=False, default="queued", index=True)
    progress = Column(Integer, nullable=False, default=0)
    progress_stage = Column(String, nullable=False, default="queued")
    mode = Column(String, nullable=False, default="QUICK")
    jd_text = Column(Text, nullable=False)
    resume_reference = Column(String, nullable=False)
    resume_text = Column(Text, nullable=True)
    session_id = Column(String, ForeignKey("onboarding_sessions.id"), nullable=True, index=True)
    draft_id = Column(String, ForeignKey("onboarding_drafts.id"), nullable=True)
    result_artifact_ref = Column(String, nullable=True)
    error_message = Column(String, nullable=True)
    queue_job_id = Column(String, nullable=True, index=True)
    lock_id = Column(String, nullable=True)
    # none | charged | debit_failed; debit_failed rows need manual reconciliation.
    billing_status = Column(String, nullable=False, default="none")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    account = relationship("Account", back_populates="generation_jobs")
