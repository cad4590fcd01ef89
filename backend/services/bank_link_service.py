"""Bank-link finalization - the callback pipeline.

Classify the redirect, attribute accounts to the new consent, merge or
promote the connection, then sync the ledger.  Any stage that fails before
the connection is usable removes the pending rows, and the browser is
always redirected with a short, sanitized message.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from urllib.parse import quote

from sqlalchemy.orm import Session

from config import settings
from integrations.aggregator_protocol import AggregatorClientProtocol
from integrations.exceptions import AggregatorError
from models import BankConnection
from models.utils import utcnow
from services.attribution_service import AttributionResolver, ConsentContext
from services.audit_service import AuditEvent, AuditRecorder, NullAuditRecorder
from services.callback_classifier import (
    GENERIC_FAILURE_MESSAGE,
    NO_ACCOUNTS_MESSAGE,
    UNEXPECTED_STATUS_MESSAGE,
    CallbackOutcome,
    classify,
    sanitize_error_message,
)
from services.connection_merge_service import ConnectionMergeService
from services.consent_intent_service import ConsentIntentService
from services.ledger_sync_service import LedgerSyncService

logger = logging.getLogger(__name__)

SESSION_NOT_FOUND_MESSAGE = "Bank connection session not found. Please try again."


class LinkFlowError(Exception):
    """A pipeline failure with a message that is safe to show the user.

    ``cleanup`` says whether the pending connection and consent intent
    must be deleted before redirecting.
    """

    def __init__(self, user_message: str, cleanup: bool = True, reason: str = ""):
        self.user_message = user_message
        self.cleanup = cleanup
        self.reason = reason
        super().__init__(user_message)


@dataclass
class CallbackParams:
    status: str | None = None
    error: str | None = None
    error_description: str | None = None
    intent_id: str | None = None
    flow_id: str | None = None


@dataclass
class LinkOutcome:
    redirect_url: str
    success: bool
    connection_id: str | None = None
    merged: bool = False
    accounts_synced: int = 0
    transactions_upserted: int = 0
    error_message: str | None = None


def success_redirect_url() -> str:
    return f"{settings.FRONTEND_URL}/?bank_connected=true"


def error_redirect_url(message: str) -> str:
    return f"{settings.FRONTEND_URL}/?bank_error={quote(message, safe='')}"


def reauth_redirect_url() -> str:
    return f"{settings.FRONTEND_URL}/login?error=Session%20expired"


class BankLinkService:
    """Runs the callback pipeline for one redirect."""

    def __init__(
        self,
        client: AggregatorClientProtocol,
        audit: AuditRecorder | None = None,
        resolver: AttributionResolver | None = None,
        ledger: LedgerSyncService | None = None,
    ):
        self._client = client
        self._audit = audit or NullAuditRecorder()
        self._resolver = resolver or AttributionResolver()
        self._ledger = ledger or LedgerSyncService(client)

    def complete_link(
        self,
        db: Session,
        owner_id: str | None,
        params: CallbackParams,
    ) -> LinkOutcome:
        """Finalize a bank link from the aggregator's redirect.

        Commits the session (multi-step pipeline).  Never raises: every
        failure becomes a redirect carrying a sanitized message.
        """
        outcome = classify(params.status, params.error)

        if outcome is not CallbackOutcome.SUCCESS:
            default = GENERIC_FAILURE_MESSAGE if outcome is CallbackOutcome.ERROR else UNEXPECTED_STATUS_MESSAGE
            message = sanitize_error_message(params.error, params.error_description, default=default)
            logger.warning(
                "Bank link callback %s for owner %s (status=%r)",
                outcome.value, owner_id, params.status,
            )
            if owner_id:
                self._cleanup(db, owner_id)
                self._audit.record(
                    owner_id, AuditEvent.BANK_LINK_FAILED, None,
                    {"reason": outcome.value, "status": params.status},
                )
            return self._failure(message)

        if not owner_id:
            logger.info("Bank link callback without an authenticated owner")
            return LinkOutcome(redirect_url=reauth_redirect_url(), success=False)

        pending = ConsentIntentService.find_pending_connection(
            db, owner_id, flow_id=params.flow_id, intent_id=params.intent_id
        )
        if pending is None:
            logger.error(
                "No pending connection for owner %s (flow=%s, intent=%s)",
                owner_id, params.flow_id, params.intent_id,
            )
            self._audit.record(owner_id, AuditEvent.BANK_LINK_FAILED, None, {"reason": "no_pending"})
            return self._failure(SESSION_NOT_FOUND_MESSAGE)

        flow_id = pending.flow_id
        pending_id = pending.id
        try:
            return self._finalize(db, owner_id, pending)
        except LinkFlowError as e:
            db.rollback()
            logger.warning("Bank link failed for owner %s: %s", owner_id, e.reason or e.user_message)
            if e.cleanup:
                self._cleanup(db, owner_id, pending_id=pending_id)
            self._audit.record(
                owner_id, AuditEvent.BANK_LINK_FAILED, flow_id, {"reason": e.reason or "link_error"}
            )
            return self._failure(e.user_message)
        except Exception:
            db.rollback()
            logger.error("Bank link failed for owner %s", owner_id, exc_info=True)
            self._cleanup(db, owner_id, pending_id=pending_id)
            self._audit.record(owner_id, AuditEvent.BANK_LINK_FAILED, flow_id, {"reason": "exception"})
            return self._failure(GENERIC_FAILURE_MESSAGE)

    def _finalize(self, db: Session, owner_id: str, pending: BankConnection) -> LinkOutcome:
        consent_id = pending.consent_id

        try:
            token = self._client.get_access_token(owner_id)
            accounts = self._client.get_accounts(token.access_token)
        except AggregatorError as e:
            raise LinkFlowError(GENERIC_FAILURE_MESSAGE, reason=f"aggregator: {e}") from e
        token_expires_at = utcnow() + timedelta(seconds=token.expires_in) if token.expires_in else None

        ctx = ConsentContext(consent_id, client=self._client, access_token=token.access_token)
        attributed = self._resolver.resolve(accounts, ctx)
        if not attributed:
            raise LinkFlowError(NO_ACCOUNTS_MESSAGE, reason="no_accounts")

        institution_id = attributed[0].institution_id
        institution_name = next((a.institution_name for a in attributed if a.institution_name), None)
        detail = ctx.consent_detail
        consent_expires_at = detail.expires_at if detail is not None else None

        merge = ConnectionMergeService.merge_or_promote(
            db,
            self._client,
            pending,
            institution_id=institution_id,
            institution_name=institution_name,
            access_token=token.access_token,
            token_expires_at=token_expires_at,
            consent_expires_at=consent_expires_at,
        )
        connection = merge.connection
        connection_id = connection.id

        self._audit.record(
            owner_id, AuditEvent.CONSENT_GIVEN, consent_id,
            {"institution_id": institution_id, "connection_id": connection_id},
        )
        if merge.merged and merge.superseded_consent_id:
            self._audit.record(
                owner_id, AuditEvent.CONSENT_REVOKED, merge.superseded_consent_id,
                {"reason": "superseded", "connection_id": connection_id},
            )

        sync = self._ledger.sync_accounts(db, connection, attributed, token.access_token)

        self._audit.record(
            owner_id, AuditEvent.BANK_CONNECTED, connection_id,
            {
                "institution_id": institution_id,
                "accounts": sync.accounts_synced,
                "transactions": sync.transactions_upserted,
                "merged": merge.merged,
            },
        )
        logger.info(
            "Bank link complete for owner %s: connection %s (%s), %d accounts, %d transactions",
            owner_id, connection_id, "merged" if merge.merged else "new",
            sync.accounts_synced, sync.transactions_upserted,
        )
        return LinkOutcome(
            redirect_url=success_redirect_url(),
            success=True,
            connection_id=connection_id,
            merged=merge.merged,
            accounts_synced=sync.accounts_synced,
            transactions_upserted=sync.transactions_upserted,
        )

    def _cleanup(self, db: Session, owner_id: str, pending_id: str | None = None) -> None:
        """Delete pending rows; a cleanup failure is logged, not raised."""
        try:
            connection = None
            if pending_id:
                connection = db.get(BankConnection, pending_id)
                if connection is None:
                    return
            ConsentIntentService.discard_pending(db, owner_id, connection)
            db.commit()
        except Exception:
            db.rollback()
            logger.error("Failed to clean up pending bank link for owner %s", owner_id, exc_info=True)

    @staticmethod
    def _failure(message: str) -> LinkOutcome:
        return LinkOutcome(
            redirect_url=error_redirect_url(message),
            success=False,
            error_message=message,
        )
