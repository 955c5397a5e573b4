"""CreditLedgerEntry model for generation billing."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


LEDGER_REASONS = ("grant", "purchase", "generation", "refund")


class CreditLedgerEntry(Base):
    """Immutable credit ledger entry."""

    __tablename__ = "credit_ledger"
    __table_args__ = (
        Index(
            "ux_credit_ledger_account_reason_reference",
            "account_id",
            "reason",
            "reference_id",
            unique=True,
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    delta = Column(Integer, nullable=False)
    reason = Column(String, nullable=False)
    source = Column(String, nullable=False)
    reference_id = Column(String, nullable=True)
    balance_after = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    account = relationship("Account", back_populates="credit_entries")
