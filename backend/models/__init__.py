"""SQLAlchemy ORM models."""

from .audit_log import AuditLogEntry
from .bank_account import BankAccount
from .bank_connection import PENDING_INSTITUTION_ID, BankConnection, ConnectionStatus
from .bank_transaction import BankTransaction
from .consent_intent import ConsentIntent, ConsentStatus
from .utils import generate_uuid, utcnow

__all__ = [
    "AuditLogEntry",
    "BankAccount",
    "BankConnection",
    "BankTransaction",
    "ConnectionStatus",
    "ConsentIntent",
    "ConsentStatus",
    "PENDING_INSTITUTION_ID",
    "generate_uuid",
    "utcnow",
]
