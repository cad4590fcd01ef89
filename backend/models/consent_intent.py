"""ConsentIntent model - one initiation of the bank-linking flow."""

from sqlalchemy import Column, DateTime, String

from database import Base
from models.utils import generate_uuid, utcnow


class ConsentStatus:
    """Lifecycle values stored in ``ConsentIntent.status``."""

    PENDING = "pending"
    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"


class ConsentIntent(Base):
    """Local record of an aggregator-issued consent.

    Created pending together with the placeholder BankConnection, activated
    by a successful callback, revoked when superseded by a newer consent for
    the same institution or when the owner disconnects, and expired once
    ``expires_at`` passes.
    """

    __tablename__ = "consent_intents"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    owner_id = Column(String, nullable=False, index=True)
    consent_id = Column(String, nullable=False, index=True)
    flow_id = Column(String, nullable=True, unique=True)
    status = Column(String, nullable=False, default=ConsentStatus.PENDING)
    expires_at = Column(DateTime, nullable=True)
    revoked_at = Column(DateTime, nullable=True)
    revocation_reason = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
    )
