"""Connection service - listing, disconnect and resync of linked banks."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import case, or_
from sqlalchemy.orm import Session, selectinload

from config import settings
from integrations.aggregator_protocol import AggregatorAccount, AggregatorClientProtocol
from integrations.exceptions import AggregatorError
from models import BankAccount, BankConnection, ConnectionStatus
from models.utils import utcnow
from services.audit_service import AuditEvent, AuditRecorder, NullAuditRecorder
from services.connection_merge_service import ConnectionMergeService
from services.consent_intent_service import ConsentIntentService
from services.ledger_sync_service import LedgerSyncResult, LedgerSyncService
from services.token_manager import TokenManager

logger = logging.getLogger(__name__)

USER_REQUESTED_REASON = "user requested"


@dataclass
class StaleSyncResult:
    """Totals for one scheduled sync sweep."""

    connections_stale: int = 0
    connections_skipped: int = 0  # Active but synced recently
    connections_synced: int = 0
    accounts_synced: int = 0
    transactions_upserted: int = 0
    errors: list[str] = field(default_factory=list)


class ConnectionService:
    """Owner-facing operations on existing connections."""

    def __init__(
        self,
        client: AggregatorClientProtocol,
        audit: AuditRecorder | None = None,
        token_manager: TokenManager | None = None,
        ledger: LedgerSyncService | None = None,
    ):
        self._client = client
        self._audit = audit or NullAuditRecorder()
        self._tokens = token_manager or TokenManager(client)
        self._ledger = ledger or LedgerSyncService(client)

    @staticmethod
    def list_connections(db: Session, owner_id: str) -> list[BankConnection]:
        """Owner's connections with accounts loaded, active first."""
        active_first = case((BankConnection.status == ConnectionStatus.ACTIVE, 0), else_=1)
        return (
            db.query(BankConnection)
            .options(selectinload(BankConnection.accounts))
            .filter(BankConnection.owner_id == owner_id)
            .order_by(active_first, BankConnection.created_at.desc())
            .all()
        )

    def disconnect(self, db: Session, owner_id: str, connection: BankConnection) -> None:
        """Revoke the consent (best effort) and delete all local state.

        Commits the session.
        """
        connection_id = connection.id
        consent_id = connection.consent_id
        institution_id = connection.institution_id

        if consent_id and connection.status == ConnectionStatus.ACTIVE:
            try:
                token = self._tokens.get_valid_token(owner_id, connection)
                self._client.revoke_consent(token.access_token, consent_id)
            except AggregatorError as e:
                logger.warning("Failed to revoke consent %s at aggregator: %s", consent_id, e)

        if consent_id:
            ConsentIntentService.revoke(db, consent_id, USER_REQUESTED_REASON)
        accounts_deleted, transactions_deleted = ConnectionMergeService.purge_connection_ledger(
            db, connection
        )
        db.delete(connection)
        db.commit()

        logger.info(
            "Disconnected connection %s (%d accounts, %d transactions removed)",
            connection_id, accounts_deleted, transactions_deleted,
        )
        if consent_id:
            self._audit.record(
                owner_id, AuditEvent.CONSENT_REVOKED, consent_id,
                {"reason": USER_REQUESTED_REASON, "connection_id": connection_id},
            )
        self._audit.record(
            owner_id, AuditEvent.BANK_DISCONNECTED, connection_id,
            {"institution_id": institution_id},
        )

    def resync(self, db: Session, owner_id: str, connection: BankConnection) -> LedgerSyncResult:
        """Refresh the token and re-run the ledger sync for stored accounts.

        Account payloads come from the aggregator's account list so names
        and masks stay current; only accounts already stored under this
        connection are synced.

        Raises:
            AggregatorError: Token refresh or account listing failed.
        """
        token = self._tokens.get_valid_token(owner_id, connection)
        if token.refreshed:
            connection.access_token = token.access_token
            connection.token_expires_at = token.expires_at
            db.commit()

        stored_ids = {
            row[0]
            for row in db.query(BankAccount.external_id).filter(
                BankAccount.connection_id == connection.id
            )
        }
        remote_accounts = self._client.get_accounts(token.access_token)
        accounts: list[AggregatorAccount] = [
            a for a in remote_accounts if a.account_id in stored_ids
        ]
        missing = stored_ids - {a.account_id for a in accounts}
        if missing:
            logger.warning(
                "%d stored account(s) no longer visible for connection %s",
                len(missing), connection.id,
            )

        result = self._ledger.sync_accounts(db, connection, accounts, token.access_token)
        self._audit.record(
            owner_id, AuditEvent.BANK_SYNCED, connection.id,
            {
                "accounts": result.accounts_synced,
                "transactions": result.transactions_upserted,
                "errors": len(result.errors),
            },
        )
        return result

    @staticmethod
    def find_stale_connections(db: Session, cutoff: datetime) -> list[BankConnection]:
        """Active connections with at least one account not synced since ``cutoff``.

        Connections without accounts are never stale; there is nothing to sync.
        """
        stale_account = BankConnection.accounts.any(
            or_(BankAccount.last_synced_at.is_(None), BankAccount.last_synced_at < cutoff)
        )
        return (
            db.query(BankConnection)
            .filter(BankConnection.status == ConnectionStatus.ACTIVE, stale_account)
            .order_by(BankConnection.owner_id, BankConnection.created_at)
            .all()
        )

    def sync_stale(
        self,
        db: Session,
        cutoff: datetime | None = None,
        dry_run: bool = False,
    ) -> StaleSyncResult:
        """Resync every stale active connection, one at a time.

        A failing connection is rolled back, recorded in ``errors`` and
        skipped; the sweep carries on with the next one.
        """
        if cutoff is None:
            cutoff = utcnow() - timedelta(hours=settings.SCHEDULED_SYNC_STALE_HOURS)

        stale = self.find_stale_connections(db, cutoff)
        active_count = (
            db.query(BankConnection)
            .filter(BankConnection.status == ConnectionStatus.ACTIVE)
            .count()
        )
        result = StaleSyncResult(
            connections_stale=len(stale),
            connections_skipped=active_count - len(stale),
        )
        if dry_run:
            return result

        for connection in stale:
            connection_id = connection.id
            owner_id = connection.owner_id
            try:
                sync = self.resync(db, owner_id, connection)
            except AggregatorError as e:
                db.rollback()
                logger.warning("Scheduled sync failed for connection %s: %s", connection_id, e)
                result.errors.append(f"{connection_id}: {e}")
                continue
            except Exception:
                db.rollback()
                logger.error("Scheduled sync failed for connection %s", connection_id, exc_info=True)
                result.errors.append(f"{connection_id}: unexpected error")
                continue

            result.connections_synced += 1
            result.accounts_synced += sync.accounts_synced
            result.transactions_upserted += sync.transactions_upserted
            result.errors.extend(f"{connection_id}: {err}" for err in sync.errors)

        logger.info(
            "Scheduled sync: %d of %d stale connection(s) synced, %d skipped as fresh, %d error(s)",
            result.connections_synced, result.connections_stale,
            result.connections_skipped, len(result.errors),
        )
        return result
