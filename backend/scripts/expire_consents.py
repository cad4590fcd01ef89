#!/usr/bin/env python
"""Expire consent intents past their expiry and drop abandoned pending links.

Pending connections are left behind when the owner never returns from the
aggregator's consent screen.  This marks overdue pending/active intents
expired and deletes pending connections whose intent has lapsed.

Usage:
    python -m scripts.expire_consents
    python -m scripts.expire_consents --dry-run
"""

import argparse

from database import get_session_local
from services.consent_intent_service import ConsentIntentService, ExpiryResult


def expire_consents(dry_run: bool = False) -> ExpiryResult:
    """Run the expiry sweep once, committing unless ``dry_run``."""
    SessionLocal = get_session_local()
    db = SessionLocal()

    try:
        result = ConsentIntentService.expire_stale(db, dry_run=dry_run)

        if dry_run:
            print("[DRY RUN] Would expire:")
            print(f"  Consent intents: {result.intents_expired}")
            print(f"  Pending connections: {result.connections_deleted}")
            print("\n[DRY RUN] No changes made. Run without --dry-run to apply.")
        else:
            db.commit()
            print(f"Expired {result.intents_expired} consent intent(s)")
            print(f"Deleted {result.connections_deleted} stale pending connection(s)")
        return result
    except Exception as e:
        db.rollback()
        print(f"Error: {e}")
        raise
    finally:
        db.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="Expire overdue consent intents and stale pending connections"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would change without modifying the database",
    )
    args = parser.parse_args()

    expire_consents(dry_run=args.dry_run)
