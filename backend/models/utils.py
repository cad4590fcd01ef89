"""Shared utilities for ORM models."""

import uuid
from datetime import datetime, timezone


def generate_uuid() -> str:
    """Generate a UUID string."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Current UTC time without tzinfo.

    SQLite returns naive datetimes, so every timestamp written by the app
    is naive UTC to keep in-session and reloaded values comparable.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)
