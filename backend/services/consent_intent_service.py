"""Consent intent tracking - pending rows written when linking starts."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from sqlalchemy import false, or_
from sqlalchemy.orm import Session

from config import settings
from integrations.aggregator_protocol import AggregatorClientProtocol
from integrations.parsing_utils import to_naive_utc
from models import BankConnection, ConnectionStatus, ConsentIntent, ConsentStatus
from models.utils import generate_uuid, utcnow

logger = logging.getLogger(__name__)


@dataclass
class StartedIntent:
    """What the browser needs to continue at the aggregator."""

    authorization_url: str
    intent_id: str
    flow_id: str
    connection_id: str


@dataclass
class ExpiryResult:
    intents_expired: int = 0
    connections_deleted: int = 0


def build_redirect_url(flow_id: str, base_url: str | None = None) -> str:
    """Append the flow correlation id to the registered callback URL."""
    parts = urlsplit(base_url or settings.AGGREGATOR_REDIRECT_URI)
    query = [(k, v) for k, v in parse_qsl(parts.query) if k != "flow"]
    query.append(("flow", flow_id))
    return urlunsplit(parts._replace(query=urlencode(query)))


class ConsentIntentService:
    """Lifecycle of ConsentIntent rows and their placeholder connections."""

    @staticmethod
    def start_intent(
        db: Session,
        client: AggregatorClientProtocol,
        owner_id: str,
    ) -> StartedIntent:
        """Create an aggregator intent and record the pending rows.

        Writes one pending BankConnection (institution unknown until the
        callback) and one pending ConsentIntent, both carrying the
        aggregator's intent id and a fresh flow id.  Flushes only; the
        caller commits.

        Raises:
            AggregatorError: If the token exchange or intent creation fails.
        """
        token = client.get_access_token(owner_id)
        flow_id = generate_uuid()
        intent = client.create_intent(token.access_token, owner_id, build_redirect_url(flow_id))

        now = utcnow()
        intent_expires_at = to_naive_utc(intent.expires_at)
        token_expires_at = now + timedelta(seconds=token.expires_in) if token.expires_in else None

        connection = BankConnection(
            owner_id=owner_id,
            status=ConnectionStatus.PENDING,
            consent_id=intent.intent_id,
            flow_id=flow_id,
            access_token=token.access_token,
            token_expires_at=token_expires_at,
            consent_expires_at=intent_expires_at,
        )
        consent = ConsentIntent(
            owner_id=owner_id,
            consent_id=intent.intent_id,
            flow_id=flow_id,
            status=ConsentStatus.PENDING,
            expires_at=intent_expires_at,
        )
        db.add(connection)
        db.add(consent)
        db.flush()

        logger.info("Started consent intent %s (flow %s) for owner %s", intent.intent_id, flow_id, owner_id)
        return StartedIntent(
            authorization_url=intent.connect_url,
            intent_id=intent.intent_id,
            flow_id=flow_id,
            connection_id=connection.id,
        )

    @staticmethod
    def find_pending_connection(
        db: Session,
        owner_id: str,
        flow_id: str | None = None,
        intent_id: str | None = None,
    ) -> BankConnection | None:
        """Select the pending connection a callback belongs to.

        Lookup order: flow id, then aggregator intent id.  Only when the
        redirect carries neither does it fall back to the owner's most
        recent pending connection.  A flow/intent id that matches nothing
        (e.g. a replayed callback) returns None rather than guessing.
        """
        base = db.query(BankConnection).filter(
            BankConnection.owner_id == owner_id,
            BankConnection.status == ConnectionStatus.PENDING,
        )

        if flow_id:
            connection = base.filter(BankConnection.flow_id == flow_id).first()
            if connection:
                return connection
        if intent_id:
            connection = base.filter(BankConnection.consent_id == intent_id).first()
            if connection:
                return connection
        if flow_id or intent_id:
            return None

        connection = base.order_by(BankConnection.created_at.desc()).first()
        if connection:
            logger.warning(
                "Callback without flow id for owner %s; using most recent pending connection %s",
                owner_id, connection.id,
            )
        return connection

    @staticmethod
    def discard_pending(
        db: Session,
        owner_id: str,
        connection: BankConnection | None = None,
    ) -> int:
        """Delete pending rows for an abandoned or failed flow.

        With ``connection``, deletes that pending connection and the pending
        ConsentIntent sharing its flow id or consent id.  Without it, deletes
        every pending connection and pending ConsentIntent of the owner.
        Active rows are never touched.  Flushes only.

        Returns:
            Number of connections deleted.
        """
        intents = db.query(ConsentIntent).filter(
            ConsentIntent.owner_id == owner_id,
            ConsentIntent.status == ConsentStatus.PENDING,
        )
        connections = db.query(BankConnection).filter(
            BankConnection.owner_id == owner_id,
            BankConnection.status == ConnectionStatus.PENDING,
        )

        if connection is not None:
            if connection.status != ConnectionStatus.PENDING:
                return 0
            match = []
            if connection.flow_id:
                match.append(ConsentIntent.flow_id == connection.flow_id)
            if connection.consent_id:
                match.append(ConsentIntent.consent_id == connection.consent_id)
            if match:
                intents = intents.filter(or_(*match))
            else:
                intents = intents.filter(false())
            connections = connections.filter(BankConnection.id == connection.id)

        db.flush()
        intent_count = intents.delete(synchronize_session="fetch")
        deleted = connections.delete(synchronize_session="fetch")

        if deleted or intent_count:
            logger.info(
                "Discarded %d pending connection(s) and %d pending intent(s) for owner %s",
                deleted, intent_count, owner_id,
            )
        return deleted

    @staticmethod
    def activate(
        db: Session,
        consent_id: str,
        expires_at: datetime | None = None,
    ) -> ConsentIntent | None:
        """Mark the pending ConsentIntent for ``consent_id`` active."""
        intent = (
            db.query(ConsentIntent)
            .filter(
                ConsentIntent.consent_id == consent_id,
                ConsentIntent.status.in_([ConsentStatus.PENDING, ConsentStatus.ACTIVE]),
            )
            .order_by(ConsentIntent.created_at.desc())
            .first()
        )
        if intent is None:
            logger.warning("No consent intent found to activate for %s", consent_id)
            return None

        intent.status = ConsentStatus.ACTIVE
        if expires_at is not None:
            intent.expires_at = to_naive_utc(expires_at)
        db.flush()
        return intent

    @staticmethod
    def revoke(db: Session, consent_id: str, reason: str) -> int:
        """Mark every non-revoked ConsentIntent for ``consent_id`` revoked.

        Returns:
            Number of intents updated.
        """
        intents = (
            db.query(ConsentIntent)
            .filter(
                ConsentIntent.consent_id == consent_id,
                ConsentIntent.status != ConsentStatus.REVOKED,
            )
            .all()
        )
        now = utcnow()
        for intent in intents:
            intent.status = ConsentStatus.REVOKED
            intent.revoked_at = now
            intent.revocation_reason = reason
        db.flush()
        return len(intents)

    @staticmethod
    def expire_stale(
        db: Session,
        now: datetime | None = None,
        dry_run: bool = False,
    ) -> ExpiryResult:
        """Expire intents past their expiry and drop stale pending connections.

        Pending/active intents whose ``expires_at`` has passed become
        expired.  Pending connections whose intent expiry has passed are
        deleted.  With ``dry_run`` nothing is modified; counts are still
        reported.
        """
        cutoff = to_naive_utc(now) if now is not None else utcnow()

        stale_intents = (
            db.query(ConsentIntent)
            .filter(
                ConsentIntent.status.in_([ConsentStatus.PENDING, ConsentStatus.ACTIVE]),
                ConsentIntent.expires_at.isnot(None),
                ConsentIntent.expires_at < cutoff,
            )
            .all()
        )
        stale_connections = (
            db.query(BankConnection)
            .filter(
                BankConnection.status == ConnectionStatus.PENDING,
                BankConnection.consent_expires_at.isnot(None),
                BankConnection.consent_expires_at < cutoff,
            )
            .all()
        )
        result = ExpiryResult(
            intents_expired=len(stale_intents),
            connections_deleted=len(stale_connections),
        )
        if dry_run:
            return result

        for intent in stale_intents:
            intent.status = ConsentStatus.EXPIRED
        for connection in stale_connections:
            db.delete(connection)
        db.flush()

        logger.info(
            "Expired %d consent intent(s), deleted %d stale pending connection(s)",
            result.intents_expired, result.connections_deleted,
        )
        return result
