"""BankTransaction model - one ledger entry for a bank account."""

from sqlalchemy import Column, DateTime, ForeignKey, Index, Numeric, String, UniqueConstraint
from sqlalchemy.orm import relationship

from database import Base
from models.utils import generate_uuid, utcnow


class BankTransaction(Base):
    """A booked transaction from the aggregator.

    ``amount`` is signed: credits are positive, debits negative.
    Deduplication via the (account_id, external_id) unique constraint;
    overlapping resync windows re-deliver rows that are updated in place.
    """

    __tablename__ = "bank_transactions"
    __table_args__ = (
        UniqueConstraint(
            "account_id", "external_id", name="uix_bank_transaction_account_external"
        ),
        Index("ix_bank_transactions_account_booked", "account_id", "booked_at"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    account_id = Column(
        String(36), ForeignKey("bank_accounts.id", ondelete="CASCADE"), nullable=False
    )
    owner_id = Column(String, nullable=False, index=True)
    external_id = Column(String, nullable=False)
    amount = Column(Numeric(18, 4), nullable=False)
    currency = Column(String(3), nullable=True)
    credit_debit = Column(String, nullable=False)  # "credit" | "debit"
    description = Column(String, nullable=True)
    merchant_name = Column(String, nullable=True)
    category = Column(String, nullable=False, default="other")
    category_group = Column(String, nullable=True)  # "Income" | "Expense"
    booked_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
    )

    account = relationship("BankAccount", back_populates="transactions")
