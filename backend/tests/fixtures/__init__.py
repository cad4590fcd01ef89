"""Test fixtures and sample data."""
import pytest
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy.orm import Session

from models import (
    BankAccount,
    BankConnection,
    BankTransaction,
    ConnectionStatus,
    ConsentIntent,
    ConsentStatus,
)
from models.utils import utcnow
from tests.fixtures.mocks import INSTITUTION_ID, INSTITUTION_NAME, OWNER_ID


def create_pending_link(
    db: Session,
    owner_id: str = OWNER_ID,
    intent_id: str = "intent-new",
    flow_id: str = "flow-new",
    created_at: datetime | None = None,
    expires_at: datetime | None = None,
) -> BankConnection:
    """Create a pending connection and its pending consent intent.

    This is a helper function (not a fixture) for tests that need several
    pending flows with different ids.
    """
    connection = BankConnection(
        owner_id=owner_id,
        status=ConnectionStatus.PENDING,
        consent_id=intent_id,
        flow_id=flow_id,
        access_token="intent-token",
        consent_expires_at=expires_at,
    )
    if created_at is not None:
        connection.created_at = created_at
    db.add(connection)
    db.add(
        ConsentIntent(
            owner_id=owner_id,
            consent_id=intent_id,
            flow_id=flow_id,
            status=ConsentStatus.PENDING,
            expires_at=expires_at,
        )
    )
    db.commit()
    db.refresh(connection)
    return connection


def create_active_connection(
    db: Session,
    owner_id: str = OWNER_ID,
    institution_id: str = INSTITUTION_ID,
    consent_id: str = "consent-old",
    flow_id: str = "flow-old",
    account_ids: tuple[str, ...] = ("OLD-1",),
    transactions_per_account: int = 2,
) -> BankConnection:
    """Create an active connection with accounts, transactions and intent."""
    connection = BankConnection(
        owner_id=owner_id,
        institution_id=institution_id,
        institution_name=INSTITUTION_NAME,
        status=ConnectionStatus.ACTIVE,
        consent_id=consent_id,
        flow_id=flow_id,
        access_token="old-token",
        token_expires_at=utcnow() + timedelta(hours=1),
    )
    db.add(connection)
    db.add(
        ConsentIntent(
            owner_id=owner_id,
            consent_id=consent_id,
            flow_id=flow_id,
            status=ConsentStatus.ACTIVE,
        )
    )
    db.flush()

    booked = utcnow() - timedelta(days=5)
    for external_id in account_ids:
        account = BankAccount(
            connection_id=connection.id,
            owner_id=owner_id,
            external_id=external_id,
            name=f"Account {external_id}",
            account_number="••••1234",
            currency="BHD",
            balance=Decimal("10.000"),
            available_balance=Decimal("10.000"),
        )
        db.add(account)
        db.flush()
        for i in range(transactions_per_account):
            db.add(
                BankTransaction(
                    account_id=account.id,
                    owner_id=owner_id,
                    external_id=f"old-{external_id}-{i}",
                    amount=Decimal("-1.000"),
                    currency="BHD",
                    credit_debit="debit",
                    booked_at=booked + timedelta(hours=i),
                )
            )
    db.commit()
    db.refresh(connection)
    return connection


@pytest.fixture
def pending_connection(db: Session) -> BankConnection:
    """A pending connection (intent "intent-new", flow "flow-new")."""
    return create_pending_link(db)


@pytest.fixture
def active_connection(db: Session) -> BankConnection:
    """An active connection at INSTITUTION_ID with one account and two transactions."""
    return create_active_connection(db)
