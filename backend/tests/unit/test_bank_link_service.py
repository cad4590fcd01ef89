"""Tests for the bank link callback pipeline."""

from decimal import Decimal
from unittest.mock import patch
from urllib.parse import parse_qs, urlsplit

from config import settings
from models import (
    BankAccount,
    BankConnection,
    BankTransaction,
    ConnectionStatus,
    ConsentIntent,
    ConsentStatus,
)
from services.audit_service import AuditEvent
from services.bank_link_service import (
    SESSION_NOT_FOUND_MESSAGE,
    BankLinkService,
    CallbackParams,
    error_redirect_url,
)
from services.callback_classifier import (
    GENERIC_FAILURE_MESSAGE,
    NO_ACCOUNTS_MESSAGE,
    UNEXPECTED_STATUS_MESSAGE,
)
from tests.fixtures import create_active_connection, create_pending_link
from tests.fixtures.mocks import (
    OWNER_ID,
    MockAggregatorClient,
    RecordingAuditRecorder,
    make_account,
    make_consent,
    make_transactions,
)


def _bank_error(url: str) -> str | None:
    values = parse_qs(urlsplit(url).query).get("bank_error")
    return values[0] if values else None


def _linked_client(**overrides) -> MockAggregatorClient:
    """Aggregator whose consent detail names A1 and A2 at Alpha Bank."""
    kwargs = dict(
        accounts=[make_account("A1"), make_account("A2"), make_account("X9", institution_id="bank-beta")],
        consent_details={"intent-new": make_consent("intent-new", account_ids=["A1", "A2"])},
        balances={"A1": Decimal("120.000"), "A2": Decimal("45.500")},
        transactions={"A1": make_transactions("A1", 3), "A2": make_transactions("A2", 2)},
    )
    kwargs.update(overrides)
    return MockAggregatorClient(**kwargs)


def _success(**kwargs) -> CallbackParams:
    return CallbackParams(status="successful", flow_id="flow-new", intent_id="intent-new", **kwargs)


class TestNonSuccessCallbacks:
    def test_error_cleans_up_every_pending_row(self, db):
        create_pending_link(db)
        create_pending_link(db, intent_id="intent-2", flow_id="flow-2")
        audit = RecordingAuditRecorder()

        outcome = BankLinkService(MockAggregatorClient(), audit=audit).complete_link(
            db, OWNER_ID, CallbackParams(status="FAILED", error="access_denied",
                                         error_description="User cancelled <b>consent</b>"),
        )

        assert outcome.success is False
        assert _bank_error(outcome.redirect_url) == "User cancelled consent"
        assert db.query(BankConnection).count() == 0
        assert db.query(ConsentIntent).count() == 0
        assert audit.event_types == [AuditEvent.BANK_LINK_FAILED]

    def test_failed_status_without_error_uses_generic_message(self, db, pending_connection):
        outcome = BankLinkService(MockAggregatorClient()).complete_link(
            db, OWNER_ID, CallbackParams(status="failed"),
        )
        assert _bank_error(outcome.redirect_url) == GENERIC_FAILURE_MESSAGE

    def test_unexpected_status(self, db, pending_connection):
        outcome = BankLinkService(MockAggregatorClient()).complete_link(
            db, OWNER_ID, CallbackParams(status="weird", flow_id="flow-new"),
        )
        assert outcome.success is False
        assert _bank_error(outcome.redirect_url) == UNEXPECTED_STATUS_MESSAGE
        assert db.query(BankConnection).count() == 0

    def test_error_without_owner_does_not_touch_rows(self, db, pending_connection):
        outcome = BankLinkService(MockAggregatorClient()).complete_link(
            db, None, CallbackParams(error="server_error"),
        )
        assert _bank_error(outcome.redirect_url) == "server_error"
        assert db.query(BankConnection).count() == 1

    def test_error_leaves_active_connections_alone(self, db, active_connection, pending_connection):
        BankLinkService(MockAggregatorClient()).complete_link(
            db, OWNER_ID, CallbackParams(error="denied"),
        )
        remaining = db.query(BankConnection).all()
        assert [c.id for c in remaining] == [active_connection.id]
        assert db.query(BankTransaction).count() == 2


class TestPreconditions:
    def test_success_without_owner_redirects_to_login(self, db, pending_connection):
        client = _linked_client()

        outcome = BankLinkService(client).complete_link(db, None, _success())

        assert outcome.redirect_url == f"{settings.FRONTEND_URL}/login?error=Session%20expired"
        assert client.token_requests == []
        assert db.query(BankConnection).one().status == ConnectionStatus.PENDING

    def test_no_pending_connection(self, db):
        audit = RecordingAuditRecorder()

        outcome = BankLinkService(_linked_client(), audit=audit).complete_link(db, OWNER_ID, _success())

        assert outcome.redirect_url == error_redirect_url(SESSION_NOT_FOUND_MESSAGE)
        assert audit.event_types == [AuditEvent.BANK_LINK_FAILED]

    def test_unknown_flow_does_not_fall_back(self, db, pending_connection):
        outcome = BankLinkService(_linked_client()).complete_link(
            db, OWNER_ID, CallbackParams(status="successful", flow_id="flow-unknown"),
        )
        assert _bank_error(outcome.redirect_url) == SESSION_NOT_FOUND_MESSAGE
        # Not this flow's row, so it is left for its own callback or expiry
        assert db.query(BankConnection).one().id == pending_connection.id


class TestSuccessfulLink:
    def test_new_connection_end_to_end(self, db, pending_connection):
        client = _linked_client()
        audit = RecordingAuditRecorder()

        outcome = BankLinkService(client, audit=audit).complete_link(db, OWNER_ID, _success())

        assert outcome.success is True
        assert outcome.redirect_url == f"{settings.FRONTEND_URL}/?bank_connected=true"
        assert outcome.merged is False
        assert outcome.accounts_synced == 2
        assert outcome.transactions_upserted == 5

        connection = db.get(BankConnection, pending_connection.id)
        assert connection.status == ConnectionStatus.ACTIVE
        assert connection.institution_id == "bank-alpha"
        assert connection.institution_name == "Alpha Bank"
        assert connection.access_token == "token-1"
        assert connection.last_synced_at is not None

        balances = {a.external_id: a.balance for a in db.query(BankAccount).all()}
        assert balances == {"A1": Decimal("120.000"), "A2": Decimal("45.500")}
        assert db.query(ConsentIntent).one().status == ConsentStatus.ACTIVE
        assert audit.event_types == [AuditEvent.CONSENT_GIVEN, AuditEvent.BANK_CONNECTED]

    def test_missing_status_is_success(self, db, pending_connection):
        outcome = BankLinkService(_linked_client()).complete_link(
            db, OWNER_ID, CallbackParams(flow_id="flow-new"),
        )
        assert outcome.success is True

    def test_merges_into_existing_connection(self, db):
        existing = create_active_connection(db, account_ids=("OLD-1", "OLD-2"))
        create_pending_link(db)
        client = _linked_client()
        audit = RecordingAuditRecorder()

        outcome = BankLinkService(client, audit=audit).complete_link(db, OWNER_ID, _success())

        assert outcome.success is True
        assert outcome.merged is True
        assert outcome.connection_id == existing.id
        connections = db.query(BankConnection).all()
        assert [c.id for c in connections] == [existing.id]
        assert connections[0].consent_id == "intent-new"
        assert {a.external_id for a in db.query(BankAccount).all()} == {"A1", "A2"}
        assert not db.query(BankTransaction).filter(BankTransaction.external_id.like("old-%")).count()
        assert client.revoked == ["consent-old"]
        assert audit.event_types == [
            AuditEvent.CONSENT_GIVEN,
            AuditEvent.CONSENT_REVOKED,
            AuditEvent.BANK_CONNECTED,
        ]

    def test_accounts_without_institution_do_not_merge(self, db):
        existing = create_active_connection(db, institution_id="unknown", account_ids=("OLD-1",))
        create_pending_link(db)
        client = _linked_client(accounts=[make_account("A1", institution_id="unknown", institution_name=None)])

        outcome = BankLinkService(client).complete_link(db, OWNER_ID, _success())

        assert outcome.success is True
        assert outcome.merged is False
        assert outcome.connection_id != existing.id
        assert client.revoked == []
        assert {a.external_id for a in db.query(BankAccount).all()} == {"OLD-1", "A1"}

    def test_attribution_falls_back_to_institution(self, db, pending_connection):
        client = _linked_client(
            consent_details={},
            consents=[make_consent("intent-new", institution_id="bank-beta")],
        )

        outcome = BankLinkService(client).complete_link(db, OWNER_ID, _success())

        assert outcome.accounts_synced == 1
        assert db.query(BankAccount).one().external_id == "X9"

    def test_balance_failure_does_not_fail_link(self, db, pending_connection):
        client = _linked_client(fail_balance_for={"A2"})

        outcome = BankLinkService(client).complete_link(db, OWNER_ID, _success())

        assert outcome.success is True
        a2 = db.query(BankAccount).filter_by(external_id="A2").one()
        assert a2.balance == Decimal("0")


class TestPipelineFailures:
    def test_no_attributable_accounts(self, db, pending_connection):
        outcome = BankLinkService(MockAggregatorClient()).complete_link(db, OWNER_ID, _success())

        assert _bank_error(outcome.redirect_url) == NO_ACCOUNTS_MESSAGE
        assert db.query(BankConnection).count() == 0
        assert db.query(ConsentIntent).count() == 0

    def test_token_failure_cleans_up(self, db, pending_connection):
        client = _linked_client(fail={"token": "auth"})

        outcome = BankLinkService(client).complete_link(db, OWNER_ID, _success())

        assert _bank_error(outcome.redirect_url) == GENERIC_FAILURE_MESSAGE
        assert db.query(BankConnection).count() == 0

    def test_accounts_failure_cleans_up(self, db, pending_connection):
        client = _linked_client(fail={"accounts": "connection"})

        outcome = BankLinkService(client).complete_link(db, OWNER_ID, _success())

        assert outcome.success is False
        assert db.query(BankConnection).count() == 0

    def test_unexpected_exception_is_generic_and_cleans_up(self, db, pending_connection):
        audit = RecordingAuditRecorder()
        with patch(
            "services.bank_link_service.ConnectionMergeService.merge_or_promote",
            side_effect=RuntimeError("database exploded"),
        ):
            outcome = BankLinkService(_linked_client(), audit=audit).complete_link(
                db, OWNER_ID, _success(),
            )

        assert _bank_error(outcome.redirect_url) == GENERIC_FAILURE_MESSAGE
        assert "exploded" not in outcome.redirect_url
        assert db.query(BankConnection).count() == 0
        assert audit.events[-1][3] == {"reason": "exception"}

    def test_failure_keeps_other_pending_flows(self, db, pending_connection):
        other = create_pending_link(db, intent_id="intent-2", flow_id="flow-2")

        BankLinkService(MockAggregatorClient()).complete_link(db, OWNER_ID, _success())

        assert [c.id for c in db.query(BankConnection).all()] == [other.id]
