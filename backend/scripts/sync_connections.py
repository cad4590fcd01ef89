#!/usr/bin/env python
"""Resync active bank connections that have not been synced recently.

Meant to run on a schedule.  A connection is stale when any of its accounts
has never been synced or was last synced before the cutoff; connections
without accounts are left alone.  Each connection is synced independently
so one failing bank does not stop the rest.

Usage:
    python -m scripts.sync_connections
    python -m scripts.sync_connections --hours 12
    python -m scripts.sync_connections --dry-run
"""

import argparse
from datetime import timedelta

from config import settings
from database import get_session_local
from integrations.aggregator_client import AggregatorClient
from models.utils import utcnow
from services.audit_service import get_audit_recorder
from services.connection_service import ConnectionService, StaleSyncResult


def sync_connections(dry_run: bool = False, stale_hours: int | None = None) -> StaleSyncResult:
    """Run one scheduled sync sweep."""
    hours = settings.SCHEDULED_SYNC_STALE_HOURS if stale_hours is None else stale_hours
    cutoff = utcnow() - timedelta(hours=hours)

    SessionLocal = get_session_local()
    db = SessionLocal()
    client = AggregatorClient()

    try:
        if not dry_run and not client.is_configured():
            raise RuntimeError("Aggregator credentials are not configured")

        service = ConnectionService(client, audit=get_audit_recorder())
        result = service.sync_stale(db, cutoff=cutoff, dry_run=dry_run)

        if dry_run:
            print(f"[DRY RUN] Connections not synced in the last {hours}h: {result.connections_stale}")
            print(f"  Skipped (recently synced): {result.connections_skipped}")
            print("\n[DRY RUN] Nothing synced. Run without --dry-run to sync.")
        else:
            print(f"Synced {result.connections_synced} of {result.connections_stale} stale connection(s)")
            print(f"  Accounts: {result.accounts_synced}")
            print(f"  Transactions: {result.transactions_upserted}")
            print(f"  Skipped (recently synced): {result.connections_skipped}")
            for error in result.errors:
                print(f"  Error: {error}")
        return result
    except Exception as e:
        db.rollback()
        print(f"Error: {e}")
        raise
    finally:
        client.close()
        db.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="Resync active bank connections with stale account data"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show how many connections would sync without calling the aggregator",
    )
    parser.add_argument(
        "--hours",
        type=int,
        default=None,
        help=f"Staleness cutoff in hours (default: {settings.SCHEDULED_SYNC_STALE_HOURS})",
    )
    args = parser.parse_args()

    sync_connections(dry_run=args.dry_run, stale_hours=args.hours)
