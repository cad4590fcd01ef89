"""Tests for ConnectionService (list, disconnect, resync)."""

from datetime import timedelta
from decimal import Decimal

import pytest

from integrations.exceptions import AggregatorAuthError
from models import (
    BankAccount,
    BankConnection,
    BankTransaction,
    ConsentIntent,
    ConsentStatus,
)
from models.utils import utcnow
from services.audit_service import AuditEvent
from services.connection_service import USER_REQUESTED_REASON, ConnectionService
from tests.fixtures import create_active_connection, create_pending_link
from tests.fixtures.mocks import (
    OWNER_ID,
    MockAggregatorClient,
    RecordingAuditRecorder,
    make_account,
    make_transactions,
)


class TestListConnections:
    def test_active_first_and_owner_scoped(self, db):
        pending = create_pending_link(db)
        active = create_active_connection(db)
        create_active_connection(db, owner_id="someone-else", consent_id="c-x", flow_id="f-x")

        connections = ConnectionService.list_connections(db, OWNER_ID)

        assert [c.id for c in connections] == [active.id, pending.id]
        assert [a.external_id for a in connections[0].accounts] == ["OLD-1"]


class TestDisconnect:
    def test_revokes_and_deletes_everything(self, db, active_connection):
        client = MockAggregatorClient()
        audit = RecordingAuditRecorder()
        connection_id = active_connection.id

        ConnectionService(client, audit=audit).disconnect(db, OWNER_ID, active_connection)

        assert client.revoked == ["consent-old"]
        assert client.token_requests == []  # stored token still valid
        assert db.get(BankConnection, connection_id) is None
        assert db.query(BankAccount).count() == 0
        assert db.query(BankTransaction).count() == 0
        intent = db.query(ConsentIntent).one()
        assert intent.status == ConsentStatus.REVOKED
        assert intent.revocation_reason == USER_REQUESTED_REASON
        assert audit.event_types == [AuditEvent.CONSENT_REVOKED, AuditEvent.BANK_DISCONNECTED]

    def test_remote_revoke_failure_still_deletes(self, db, active_connection):
        client = MockAggregatorClient(fail={"revoke": "api"})

        ConnectionService(client).disconnect(db, OWNER_ID, active_connection)

        assert db.query(BankConnection).count() == 0

    def test_expired_token_refreshed_before_revoke(self, db, active_connection):
        active_connection.token_expires_at = utcnow() - timedelta(minutes=1)
        db.commit()
        client = MockAggregatorClient()

        ConnectionService(client).disconnect(db, OWNER_ID, active_connection)

        assert client.token_requests == [OWNER_ID]
        assert client.revoked == ["consent-old"]

    def test_pending_connection_not_revoked_remotely(self, db, pending_connection):
        client = MockAggregatorClient()

        ConnectionService(client).disconnect(db, OWNER_ID, pending_connection)

        assert client.revoked == []
        assert db.query(BankConnection).count() == 0

    def test_other_connections_untouched(self, db, active_connection):
        other = create_active_connection(
            db, institution_id="bank-beta", consent_id="consent-b", flow_id="flow-b", account_ids=("B-1",)
        )

        ConnectionService(MockAggregatorClient()).disconnect(db, OWNER_ID, active_connection)

        assert [c.id for c in db.query(BankConnection).all()] == [other.id]
        assert db.query(BankTransaction).count() == 2


class TestResync:
    def test_syncs_only_stored_accounts(self, db, active_connection):
        client = MockAggregatorClient(
            accounts=[make_account("OLD-1"), make_account("NEW-9")],
            balances={"OLD-1": Decimal("77.125")},
            transactions={"OLD-1": make_transactions("OLD-1", 4)},
        )
        audit = RecordingAuditRecorder()

        result = ConnectionService(client, audit=audit).resync(db, OWNER_ID, active_connection)

        assert result.accounts_synced == 1
        assert result.transactions_upserted == 4
        assert {a.external_id for a in db.query(BankAccount).all()} == {"OLD-1"}
        assert db.query(BankAccount).one().balance == Decimal("77.125")
        assert audit.event_types == [AuditEvent.BANK_SYNCED]
        assert db.get(BankConnection, active_connection.id).last_synced_at is not None

    def test_incremental_cutoff_uses_latest_booking(self, db, active_connection):
        client = MockAggregatorClient(accounts=[make_account("OLD-1")])

        ConnectionService(client).resync(db, OWNER_ID, active_connection)

        latest = max(t.booked_at for t in db.query(BankTransaction).all())
        assert client.transaction_requests == [("OLD-1", latest)]

    def test_refreshed_token_is_persisted(self, db, active_connection):
        active_connection.token_expires_at = utcnow() + timedelta(minutes=1)
        db.commit()
        client = MockAggregatorClient(accounts=[make_account("OLD-1")])

        ConnectionService(client).resync(db, OWNER_ID, active_connection)

        connection = db.get(BankConnection, active_connection.id)
        assert connection.access_token == "token-1"
        assert connection.token_expires_at > utcnow() + timedelta(minutes=30)

    def test_token_failure_propagates(self, db, active_connection):
        active_connection.token_expires_at = None
        db.commit()
        client = MockAggregatorClient(fail={"token": "auth"})

        with pytest.raises(AggregatorAuthError):
            ConnectionService(client).resync(db, OWNER_ID, active_connection)

    def test_transaction_failure_reported_not_raised(self, db, active_connection):
        client = MockAggregatorClient(accounts=[make_account("OLD-1")], fail={"transactions": "connection"})

        result = ConnectionService(client).resync(db, OWNER_ID, active_connection)

        assert result.has_errors
        assert result.errors[0].stage == "transactions"
        assert result.accounts_synced == 1


def _mark_synced(db, connection, when):
    for account in db.query(BankAccount).filter(BankAccount.connection_id == connection.id):
        account.last_synced_at = when
    db.commit()


class TestFindStaleConnections:
    def test_selects_unsynced_and_old_accounts_only(self, db):
        cutoff = utcnow() - timedelta(hours=4)
        never = create_active_connection(db, consent_id="c-never", flow_id="f-never", account_ids=("N-1",))
        old = create_active_connection(db, consent_id="c-old", flow_id="f-old", account_ids=("O-1",))
        fresh = create_active_connection(db, consent_id="c-fresh", flow_id="f-fresh", account_ids=("F-1",))
        create_active_connection(db, consent_id="c-empty", flow_id="f-empty", account_ids=())
        create_pending_link(db)
        _mark_synced(db, old, utcnow() - timedelta(hours=6))
        _mark_synced(db, fresh, utcnow() - timedelta(minutes=30))

        stale = ConnectionService.find_stale_connections(db, cutoff)

        assert {c.id for c in stale} == {never.id, old.id}

    def test_one_stale_account_makes_connection_stale(self, db):
        connection = create_active_connection(db, account_ids=("A-1", "A-2"))
        _mark_synced(db, connection, utcnow())
        lagging = db.query(BankAccount).filter(BankAccount.external_id == "A-2").one()
        lagging.last_synced_at = utcnow() - timedelta(days=1)
        db.commit()

        stale = ConnectionService.find_stale_connections(db, utcnow() - timedelta(hours=4))

        assert [c.id for c in stale] == [connection.id]


class TestSyncStale:
    def test_failure_on_one_connection_does_not_stop_others(self, db):
        broken = create_active_connection(db, consent_id="c-broken", flow_id="f-broken", account_ids=("B-1",))
        broken.token_expires_at = utcnow() - timedelta(minutes=1)
        healthy = create_active_connection(
            db, owner_id="owner-2", consent_id="c-ok", flow_id="f-ok", account_ids=("H-1",)
        )
        db.commit()
        broken_id, healthy_id = broken.id, healthy.id
        client = MockAggregatorClient(
            accounts=[make_account("B-1"), make_account("H-1")],
            transactions={"H-1": make_transactions("H-1", 3)},
            fail={"token": "auth"},
        )
        audit = RecordingAuditRecorder()

        result = ConnectionService(client, audit=audit).sync_stale(db)

        assert result.connections_stale == 2
        assert result.connections_synced == 1
        assert result.accounts_synced == 1
        assert len(result.errors) == 1
        assert result.errors[0].startswith(f"{broken_id}:")
        assert db.get(BankConnection, healthy_id).last_synced_at is not None
        assert db.get(BankConnection, broken_id).last_synced_at is None
        assert audit.event_types == [AuditEvent.BANK_SYNCED]

    def test_recently_synced_connections_are_skipped(self, db, active_connection):
        _mark_synced(db, active_connection, utcnow())
        client = MockAggregatorClient(accounts=[make_account("OLD-1")])

        result = ConnectionService(client).sync_stale(db)

        assert result.connections_stale == 0
        assert result.connections_skipped == 1
        assert client.transaction_requests == []

    def test_dry_run_does_not_call_aggregator(self, db, active_connection):
        client = MockAggregatorClient(accounts=[make_account("OLD-1")])

        result = ConnectionService(client).sync_stale(db, dry_run=True)

        assert result.connections_stale == 1
        assert result.connections_synced == 0
        assert client.transaction_requests == []
        assert db.get(BankConnection, active_connection.id).last_synced_at is None
