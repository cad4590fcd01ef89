"""AuditLogEntry model - append-only trail of consent and connection events."""

from sqlalchemy import Column, DateTime, String, Text

from database import Base
from models.utils import generate_uuid, utcnow


class AuditLogEntry(Base):
    """One audit event (consent_given, bank_connected, bank_synced, ...)."""

    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    owner_id = Column(String, nullable=True, index=True)
    event_type = Column(String, nullable=False, index=True)
    subject_id = Column(String, nullable=True)
    event_metadata = Column(Text, nullable=True)  # JSON string
    created_at = Column(DateTime, default=utcnow)
