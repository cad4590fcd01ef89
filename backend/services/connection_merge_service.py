"""Connection merge - fold a new consent into an existing institution link."""

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from integrations.aggregator_protocol import UNKNOWN_INSTITUTION_ID, AggregatorClientProtocol
from integrations.exceptions import AggregatorError
from integrations.parsing_utils import to_naive_utc
from models import (
    PENDING_INSTITUTION_ID,
    BankAccount,
    BankConnection,
    BankTransaction,
    ConnectionStatus,
)
from services.consent_intent_service import ConsentIntentService

logger = logging.getLogger(__name__)

SUPERSEDED_REASON = "superseded"

# Ids that do not identify a real institution and must never be merged on
PLACEHOLDER_INSTITUTION_IDS = frozenset({UNKNOWN_INSTITUTION_ID, PENDING_INSTITUTION_ID})


@dataclass
class MergeResult:
    """Outcome of the merge stage.

    ``connection`` is the identity all later writes must target: the
    promoted pending row, or the pre-existing active row it was merged into.
    """

    connection: BankConnection
    merged: bool
    superseded_consent_id: str | None = None
    accounts_purged: int = 0
    transactions_purged: int = 0


class ConnectionMergeService:
    """Keeps one active connection per (owner, institution)."""

    @staticmethod
    def find_active_for_institution(
        db: Session,
        owner_id: str,
        institution_id: str,
        exclude_id: str | None = None,
    ) -> BankConnection | None:
        """Oldest active connection of ``owner_id`` at ``institution_id``.

        Placeholder ids never match, so accounts with no known institution
        are always linked as a new connection.
        """
        if not institution_id or institution_id in PLACEHOLDER_INSTITUTION_IDS:
            return None
        query = db.query(BankConnection).filter(
            BankConnection.owner_id == owner_id,
            BankConnection.institution_id == institution_id,
            BankConnection.status == ConnectionStatus.ACTIVE,
        )
        if exclude_id:
            query = query.filter(BankConnection.id != exclude_id)
        return query.order_by(BankConnection.created_at.asc()).first()

    @staticmethod
    def purge_connection_ledger(db: Session, connection: BankConnection) -> tuple[int, int]:
        """Hard-delete a connection's transactions, then its accounts.

        Uses explicit bulk deletes so the purge does not depend on the
        database enforcing ``ON DELETE CASCADE``.

        Returns:
            Tuple of (accounts_deleted, transactions_deleted).
        """
        account_ids = select(BankAccount.id).where(BankAccount.connection_id == connection.id)
        transactions_deleted = (
            db.query(BankTransaction)
            .filter(BankTransaction.account_id.in_(account_ids))
            .delete(synchronize_session=False)
        )
        accounts_deleted = (
            db.query(BankAccount)
            .filter(BankAccount.connection_id == connection.id)
            .delete(synchronize_session=False)
        )
        db.expire(connection, ["accounts"])
        return accounts_deleted, transactions_deleted

    @staticmethod
    def merge_or_promote(
        db: Session,
        client: AggregatorClientProtocol,
        pending: BankConnection,
        institution_id: str,
        institution_name: str | None,
        access_token: str,
        token_expires_at: datetime | None = None,
        consent_expires_at: datetime | None = None,
    ) -> MergeResult:
        """Promote ``pending`` or merge it into an existing active connection.

        Merge path: purge the existing connection's accounts and
        transactions, move the new consent/credential/flow id onto it and
        delete ``pending``, all inside one savepoint committed together.
        Only after that commit is the superseded consent revoked at the
        aggregator (best effort) and its ConsentIntent marked revoked.

        Commits the session.

        Raises:
            Exception: Any local write failure; the savepoint is rolled
                back so the existing connection is left untouched.
        """
        owner_id = pending.owner_id
        new_consent_id = pending.consent_id
        token_expires_at = to_naive_utc(token_expires_at)
        consent_expires_at = to_naive_utc(consent_expires_at)

        existing = ConnectionMergeService.find_active_for_institution(
            db, owner_id, institution_id, exclude_id=pending.id
        )

        if existing is None:
            pending.institution_id = institution_id
            pending.institution_name = institution_name or institution_id
            pending.status = ConnectionStatus.ACTIVE
            pending.access_token = access_token
            pending.token_expires_at = token_expires_at
            if consent_expires_at is not None:
                pending.consent_expires_at = consent_expires_at
            ConsentIntentService.activate(db, new_consent_id, consent_expires_at)
            db.commit()
            logger.info(
                "Promoted connection %s for %s (owner %s)",
                pending.id, institution_id, owner_id,
            )
            return MergeResult(connection=pending, merged=False)

        superseded_consent_id = existing.consent_id
        new_flow_id = pending.flow_id
        consent_expiry = consent_expires_at or pending.consent_expires_at

        with db.begin_nested():
            accounts_purged, transactions_purged = (
                ConnectionMergeService.purge_connection_ledger(db, existing)
            )
            # Pending row goes first; it holds the unique flow id
            db.delete(pending)
            db.flush()

            existing.consent_id = new_consent_id
            existing.flow_id = new_flow_id
            existing.access_token = access_token
            existing.token_expires_at = token_expires_at
            existing.consent_expires_at = consent_expiry
            if institution_name:
                existing.institution_name = institution_name
            ConsentIntentService.activate(db, new_consent_id, consent_expires_at)
            db.flush()
        db.commit()

        logger.info(
            "Merged new consent %s into connection %s for %s "
            "(purged %d accounts, %d transactions)",
            new_consent_id, existing.id, institution_id,
            accounts_purged, transactions_purged,
        )

        if superseded_consent_id and superseded_consent_id != new_consent_id:
            try:
                client.revoke_consent(access_token, superseded_consent_id)
            except AggregatorError as e:
                logger.warning(
                    "Failed to revoke superseded consent %s: %s",
                    superseded_consent_id, e,
                )
            ConsentIntentService.revoke(db, superseded_consent_id, SUPERSEDED_REASON)
            db.commit()

        return MergeResult(
            connection=existing,
            merged=True,
            superseded_consent_id=superseded_consent_id,
            accounts_purged=accounts_purged,
            transactions_purged=transactions_purged,
        )
