"""Normalized data types and client protocol for the Open Banking aggregator.

The aggregator client maps the wire payloads into these dataclasses so the
services never touch raw JSON.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Protocol


# Institution id given to accounts whose payload names no provider
UNKNOWN_INSTITUTION_ID = "unknown"


class GrantStatus:
    """Status values carried by consents and per-account grants."""

    ACTIVE = "ACTIVE"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"


@dataclass
class AccessToken:
    """Owner-scoped credential returned by the token exchange."""

    access_token: str
    expires_in: int  # Seconds
    token_type: str = "Bearer"


@dataclass
class ConnectIntent:
    """Result of creating a consent intent."""

    intent_id: str
    connect_url: str
    expires_at: datetime | None = None


@dataclass
class AccountGrant:
    """A consent grant embedded in an account payload."""

    consent_id: str
    status: str
    expires_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status.upper() == GrantStatus.ACTIVE


@dataclass
class AggregatorAccount:
    """Normalized account visible under an access token."""

    account_id: str
    institution_id: str
    institution_name: str | None = None
    account_type: str | None = None
    account_subtype: str | None = None
    currency: str | None = None
    identification: str | None = None  # Raw account number / IBAN
    name: str | None = None
    grants: list[AccountGrant] = field(default_factory=list)

    @property
    def display_type(self) -> str | None:
        return self.account_subtype or self.account_type


@dataclass
class AggregatorConsent:
    """A consent as reported by the consent list or detail endpoints."""

    consent_id: str
    institution_id: str | None = None
    institution_name: str | None = None
    status: str = GrantStatus.ACTIVE
    created_at: datetime | None = None
    expires_at: datetime | None = None
    account_ids: list[str] = field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return self.status.upper() == GrantStatus.ACTIVE


@dataclass
class AggregatorTransaction:
    """Normalized booked transaction; ``amount`` is signed (debits negative)."""

    transaction_id: str
    account_id: str
    amount: Decimal
    currency: str | None
    credit_debit: str  # "credit" | "debit"
    booked_at: datetime
    description: str | None = None
    merchant_name: str | None = None
    category: str | None = None
    category_group: str | None = None


@dataclass
class TransactionPage:
    """One page of the transactions endpoint."""

    transactions: list[AggregatorTransaction]
    current_page: int = 1
    total_pages: int = 1


class AggregatorClientProtocol(Protocol):
    """Contract the link pipeline consumes from the aggregator."""

    def is_configured(self) -> bool:
        ...

    def get_access_token(self, owner_id: str) -> AccessToken:
        ...

    def create_intent(self, access_token: str, owner_id: str, redirect_url: str) -> ConnectIntent:
        ...

    def get_accounts(self, access_token: str) -> list[AggregatorAccount]:
        ...

    def get_consents(self, access_token: str) -> list[AggregatorConsent]:
        ...

    def get_consent_detail(self, access_token: str, consent_id: str) -> AggregatorConsent:
        ...

    def get_balance(self, access_token: str, account_id: str) -> Decimal | None:
        ...

    def get_transactions(
        self, access_token: str, account_id: str, since: datetime | None = None
    ) -> list[AggregatorTransaction]:
        ...

    def revoke_consent(self, access_token: str, consent_id: str) -> None:
        ...
