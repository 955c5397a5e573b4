"""Account model."""

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class Account(Base):
    """Authenticated account owning a credit balance and generation jobs."""

    __tablename__ = "accounts"
    __table_args__ = (CheckConstraint("credit_balance >= 0", name="ck_accounts_credit_balance_non_negative"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, nullable=True, index=True)
    # Maintained by services.credits only; always equals the sum of ledger deltas.
    credit_balance = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    credit_entries = relationship("CreditLedgerEntry", back_populates="account", cascade="all, delete-orphan")
    generation_jobs = relationship("GenerationJob", back_populates="account", cascade="all, delete-orphan")
