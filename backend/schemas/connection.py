"""Pydantic schemas for bank connections and the link flow."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel


class ConnectResponse(BaseModel):
    """Response for starting a bank link."""

    authorization_url: str
    intent_id: str
    flow_id: str


class BankAccountResponse(BaseModel):
    id: str
    external_id: str
    name: Optional[str] = None
    account_type: Optional[str] = None
    account_number: str
    currency: Optional[str] = None
    balance: Decimal
    available_balance: Decimal
    last_synced_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class BankConnectionResponse(BaseModel):
    """A linked institution and its accounts (access token never exposed)."""

    id: str
    institution_id: str
    institution_name: str
    status: str
    consent_expires_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    accounts: list[BankAccountResponse] = []

    model_config = {"from_attributes": True}


class SyncResponse(BaseModel):
    """Result of a manual resync."""

    connection_id: str
    accounts_synced: int
    transactions_upserted: int
    errors: list[str] = []
