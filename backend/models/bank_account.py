"""BankAccount model - one account surfaced by the aggregator."""

from sqlalchemy import Column, DateTime, ForeignKey, Numeric, String, UniqueConstraint
from sqlalchemy.orm import relationship

from database import Base
from models.utils import generate_uuid, utcnow


class BankAccount(Base):
    """A bank account owned by exactly one BankConnection.

    Upserted by (connection_id, external_id) so a re-sync never creates
    a second row for the same aggregator account.
    """

    __tablename__ = "bank_accounts"
    __table_args__ = (
        UniqueConstraint(
            "connection_id", "external_id", name="uix_bank_account_connection_external"
        ),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    connection_id = Column(
        String(36), ForeignKey("bank_connections.id", ondelete="CASCADE"), nullable=False
    )
    owner_id = Column(String, nullable=False, index=True)
    external_id = Column(String, nullable=False)  # Aggregator's account ID
    name = Column(String, nullable=True)
    account_type = Column(String, nullable=True)  # e.g. "CurrentAccount", "Savings"
    account_number = Column(String, nullable=False, default="••••0000")  # Masked
    currency = Column(String(3), nullable=True)
    balance = Column(Numeric(18, 4), nullable=False, default=0)
    available_balance = Column(Numeric(18, 4), nullable=False, default=0)
    last_synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
    )

    connection = relationship("BankConnection", back_populates="accounts")
    transactions = relationship(
        "BankTransaction",
        back_populates="account",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
