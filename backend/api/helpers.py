"""Shared API helpers for route handlers.

Ownership lookups and rate-limit enforcement used across route files.
"""

import logging

from fastapi import Depends, HTTPException
from sqlalchemy.orm import Session

from api.auth import get_current_owner_id
from models import BankConnection, ConnectionStatus
from services.rate_limiter import RateLimitDecision, RateLimiter, get_rate_limiter

logger = logging.getLogger(__name__)


def get_owned_connection_or_404(
    db: Session,
    owner_id: str,
    connection_id: str,
    active_only: bool = False,
    detail: str = "Connection not found",
) -> BankConnection:
    """Fetch a connection belonging to ``owner_id`` or raise 404.

    Another owner's connection is indistinguishable from a missing one.

    Args:
        db: Database session.
        owner_id: Authenticated owner.
        connection_id: Primary key value.
        active_only: Also require ``status == active``.
        detail: Error message for the 404 response.

    Raises:
        HTTPException: 404 if no matching connection exists.
    """
    query = db.query(BankConnection).filter(
        BankConnection.id == connection_id,
        BankConnection.owner_id == owner_id,
    )
    if active_only:
        query = query.filter(BankConnection.status == ConnectionStatus.ACTIVE)
    connection = query.first()
    if not connection:
        raise HTTPException(status_code=404, detail=detail)
    return connection


def enforce_rate_limit(limiter: RateLimiter, limit_type: str, key: str) -> RateLimitDecision:
    """Raise HTTP 429 with retry headers when ``key`` is over its limit."""
    decision = limiter.check(limit_type, key)
    if not decision.allowed:
        logger.info("Rate limit %s exceeded for %s", limit_type, key)
        raise HTTPException(
            status_code=429,
            detail="Too many requests. Please try again later.",
            headers={
                "Retry-After": str(decision.retry_after),
                "X-RateLimit-Limit": str(decision.limit),
                "X-RateLimit-Remaining": "0",
            },
        )
    return decision


def rate_limited(limit_type: str):
    """Build a dependency that enforces ``limit_type`` per owner."""

    def dependency(
        owner_id: str = Depends(get_current_owner_id),
        limiter: RateLimiter = Depends(get_rate_limiter),
    ) -> RateLimitDecision:
        return enforce_rate_limit(limiter, limit_type, owner_id)

    return dependency
