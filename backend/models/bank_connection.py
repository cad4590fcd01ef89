"""BankConnection model - one linked institution for one owner."""

from sqlalchemy import Column, DateTime, Index, String
from sqlalchemy.orm import relationship

from database import Base
from models.utils import generate_uuid, utcnow


# Placeholder institution of a pending row, replaced when the callback promotes it
PENDING_INSTITUTION_ID = "pending"


class ConnectionStatus:
    """Lifecycle values stored in ``BankConnection.status``."""

    PENDING = "pending"
    ACTIVE = "active"


class BankConnection(Base):
    """An institution linked through the Open Banking aggregator.

    A pending row is written when the owner starts linking and is either
    promoted to active by the callback, deleted on failure, or folded into
    an existing active connection for the same institution.  At most one
    active row exists per (owner_id, institution_id); this is enforced by
    ``ConnectionMergeService`` rather than a unique index, because
    violating rows have to be merged, not rejected.
    """

    __tablename__ = "bank_connections"
    __table_args__ = (
        Index("ix_bank_connections_owner_status", "owner_id", "status"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    owner_id = Column(String, nullable=False, index=True)
    institution_id = Column(String, nullable=False, default=PENDING_INSTITUTION_ID)
    institution_name = Column(String, nullable=False, default="Pending Selection")
    status = Column(String, nullable=False, default=ConnectionStatus.PENDING)
    consent_id = Column(String, nullable=True, index=True)  # Aggregator intent/consent ID
    flow_id = Column(String, nullable=True, unique=True)  # Round-tripped through the redirect
    access_token = Column(String, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)
    consent_expires_at = Column(DateTime, nullable=True)
    last_synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
    )

    accounts = relationship(
        "BankAccount",
        back_populates="connection",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
