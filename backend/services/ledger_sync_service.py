"""Ledger sync - idempotent upsert of accounts, balances and transactions."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import func
from sqlalchemy.orm import Session

from config import settings
from integrations.aggregator_protocol import (
    AggregatorAccount,
    AggregatorClientProtocol,
    AggregatorTransaction,
)
from integrations.exceptions import AggregatorError
from integrations.parsing_utils import to_naive_utc
from models import BankAccount, BankConnection, BankTransaction
from models.utils import utcnow

logger = logging.getLogger(__name__)

MASK_PREFIX = "••••"
DEFAULT_MASKED_NUMBER = MASK_PREFIX + "0000"
DEFAULT_CATEGORY = "other"


def mask_account_number(identification: str | None) -> str:
    """Mask an account identifier down to its last four characters."""
    if not identification:
        return DEFAULT_MASKED_NUMBER
    cleaned = identification.strip()
    if not cleaned:
        return DEFAULT_MASKED_NUMBER
    return MASK_PREFIX + cleaned[-4:]


@dataclass
class AccountSyncError:
    account_id: str  # Aggregator account ID
    stage: str  # "balance" | "account" | "transactions"
    message: str

    def __str__(self) -> str:
        return f"{self.account_id} ({self.stage}): {self.message}"


@dataclass
class LedgerSyncResult:
    accounts_synced: int = 0
    transactions_upserted: int = 0
    errors: list[AccountSyncError] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)


class LedgerSyncService:
    """Writes aggregator accounts and transactions under one connection.

    Owns its commits: each account row and each transaction batch is
    committed as it is written, so a later failure never rolls back
    earlier progress.  Re-running with the same aggregator data is a no-op
    apart from refreshed balances and timestamps.
    """

    def __init__(
        self,
        client: AggregatorClientProtocol,
        batch_size: int | None = None,
        lookback_days: int | None = None,
    ):
        self._client = client
        self._batch_size = batch_size or settings.TRANSACTION_BATCH_SIZE
        self._lookback_days = lookback_days or settings.INITIAL_SYNC_LOOKBACK_DAYS

    def sync_accounts(
        self,
        db: Session,
        connection: BankConnection,
        accounts: list[AggregatorAccount],
        access_token: str,
    ) -> LedgerSyncResult:
        """Sync each account in turn; per-account failures are collected."""
        result = LedgerSyncResult()

        for remote in accounts:
            balance = self._fetch_balance(access_token, remote, result)

            try:
                account = self.upsert_account(db, connection, remote, balance)
                db.commit()
            except Exception as e:
                db.rollback()
                logger.warning("Account upsert failed for %s: %s", remote.account_id, e)
                result.errors.append(AccountSyncError(remote.account_id, "account", str(e)))
                continue
            result.accounts_synced += 1

            cutoff = self.compute_cutoff(db, account)
            try:
                transactions = self._client.get_transactions(
                    access_token, remote.account_id, since=cutoff
                )
            except AggregatorError as e:
                logger.warning("Transaction fetch failed for %s: %s", remote.account_id, e)
                result.errors.append(AccountSyncError(remote.account_id, "transactions", str(e)))
                continue

            try:
                result.transactions_upserted += self.upsert_transactions(db, account, transactions)
            except Exception as e:
                db.rollback()
                logger.warning("Transaction upsert failed for %s: %s", remote.account_id, e)
                result.errors.append(AccountSyncError(remote.account_id, "transactions", str(e)))

        connection.last_synced_at = utcnow()
        db.commit()

        logger.info(
            "Ledger sync for connection %s: %d accounts, %d transactions, %d errors",
            connection.id, result.accounts_synced,
            result.transactions_upserted, len(result.errors),
        )
        return result

    def _fetch_balance(
        self,
        access_token: str,
        remote: AggregatorAccount,
        result: LedgerSyncResult,
    ) -> Decimal:
        try:
            balance = self._client.get_balance(access_token, remote.account_id)
        except AggregatorError as e:
            logger.warning("Balance fetch failed for %s, defaulting to 0: %s", remote.account_id, e)
            result.errors.append(AccountSyncError(remote.account_id, "balance", str(e)))
            return Decimal("0")
        return balance if balance is not None else Decimal("0")

    @staticmethod
    def upsert_account(
        db: Session,
        connection: BankConnection,
        remote: AggregatorAccount,
        balance: Decimal,
    ) -> BankAccount:
        """Create or update the account keyed by (connection, external id)."""
        now = utcnow()
        account = (
            db.query(BankAccount)
            .filter_by(connection_id=connection.id, external_id=remote.account_id)
            .first()
        )
        if account is None:
            account = BankAccount(
                connection_id=connection.id,
                owner_id=connection.owner_id,
                external_id=remote.account_id,
            )
            db.add(account)

        account.name = remote.name or remote.display_type or "Bank Account"
        account.account_type = remote.display_type
        account.account_number = mask_account_number(remote.identification)
        account.currency = remote.currency
        account.balance = balance
        account.available_balance = balance
        account.last_synced_at = now
        db.flush()
        return account

    def compute_cutoff(self, db: Session, account: BankAccount) -> datetime:
        """Latest stored booking time, else the initial lookback window."""
        latest = (
            db.query(func.max(BankTransaction.booked_at))
            .filter(BankTransaction.account_id == account.id)
            .scalar()
        )
        if latest is not None:
            return latest
        return utcnow() - timedelta(days=self._lookback_days)

    def upsert_transactions(
        self,
        db: Session,
        account: BankAccount,
        transactions: list[AggregatorTransaction],
    ) -> int:
        """Upsert keyed by (account, external id), committing every batch.

        Returns:
            Number of rows inserted or updated.
        """
        upserted = 0
        for start in range(0, len(transactions), self._batch_size):
            batch = self._dedupe(transactions[start:start + self._batch_size])
            ids = [t.transaction_id for t in batch]
            existing = {
                row.external_id: row
                for row in db.query(BankTransaction).filter(
                    BankTransaction.account_id == account.id,
                    BankTransaction.external_id.in_(ids),
                )
            }

            for txn in batch:
                row = existing.get(txn.transaction_id)
                if row is None:
                    row = BankTransaction(
                        account_id=account.id,
                        owner_id=account.owner_id,
                        external_id=txn.transaction_id,
                    )
                    db.add(row)
                row.amount = txn.amount
                row.currency = txn.currency or account.currency
                row.credit_debit = txn.credit_debit
                row.description = txn.description
                row.merchant_name = txn.merchant_name
                row.category = txn.category or DEFAULT_CATEGORY
                row.category_group = txn.category_group
                row.booked_at = to_naive_utc(txn.booked_at)

            db.commit()
            upserted += len(batch)
            logger.debug(
                "Committed batch of %d transactions for account %s",
                len(batch), account.id,
            )

        if upserted:
            logger.info("Upserted %d transactions for account %s", upserted, account.id)
        return upserted

    @staticmethod
    def _dedupe(batch: list[AggregatorTransaction]) -> list[AggregatorTransaction]:
        # Last occurrence of a repeated id wins
        by_id: dict[str, AggregatorTransaction] = {}
        for txn in batch:
            by_id[txn.transaction_id] = txn
        return list(by_id.values())
