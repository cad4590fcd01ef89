"""Access-token manager - proactive refresh of owner-scoped tokens."""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta

from config import settings
from integrations.aggregator_protocol import AggregatorClientProtocol
from models import BankConnection
from models.utils import utcnow

logger = logging.getLogger(__name__)

# A refresh by another caller this recent is reused instead of repeated
RECENT_REFRESH_SECONDS = 10.0


@dataclass
class TokenRefreshResult:
    access_token: str
    expires_at: datetime | None
    refreshed: bool


class TokenManager:
    """Hands out a valid access token for a connection.

    Tokens expiring within the refresh buffer are refreshed through the
    aggregator.  Refreshes are serialized per owner; a caller that waited
    on the lock reuses a token another caller obtained moments earlier.
    The caller is responsible for persisting refreshed tokens.
    """

    # Class-level so every request-scoped instance shares the same locks
    _locks: dict[str, threading.Lock] = {}
    _locks_guard = threading.Lock()
    # owner_id -> (monotonic time, result)
    _recent: dict[str, tuple[float, TokenRefreshResult]] = {}

    def __init__(
        self,
        client: AggregatorClientProtocol,
        buffer_minutes: int | None = None,
    ):
        self._client = client
        self._buffer = timedelta(
            minutes=settings.TOKEN_REFRESH_BUFFER_MINUTES if buffer_minutes is None else buffer_minutes
        )

    @classmethod
    def reset(cls) -> None:
        """Forget recently refreshed tokens."""
        with cls._locks_guard:
            cls._recent.clear()

    @classmethod
    def _prune(cls, now: float) -> None:
        """Drop reuse entries older than the reuse window."""
        with cls._locks_guard:
            for owner_id, (refreshed_at, _) in list(cls._recent.items()):
                if now - refreshed_at >= RECENT_REFRESH_SECONDS:
                    del cls._recent[owner_id]

    def _lock_for(self, owner_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(owner_id)
            if lock is None:
                lock = self._locks[owner_id] = threading.Lock()
            return lock

    def needs_refresh(self, connection: BankConnection, now: datetime | None = None) -> bool:
        """True when the stored token is missing, undated, or inside the buffer."""
        if not connection.access_token or connection.token_expires_at is None:
            return True
        now = now or utcnow()
        return connection.token_expires_at - self._buffer <= now

    def get_valid_token(self, owner_id: str, connection: BankConnection) -> TokenRefreshResult:
        """Return the stored token if still valid, else a refreshed one.

        Raises:
            AggregatorError: If a refresh is needed and the token exchange fails.
        """
        if not self.needs_refresh(connection):
            return TokenRefreshResult(
                access_token=connection.access_token,
                expires_at=connection.token_expires_at,
                refreshed=False,
            )

        self._prune(time.monotonic())
        with self._lock_for(owner_id):
            recent = self._recent.get(owner_id)
            if recent and time.monotonic() - recent[0] < RECENT_REFRESH_SECONDS:
                logger.debug("Reusing token refreshed moments ago for owner %s", owner_id)
                return recent[1]

            token = self._client.get_access_token(owner_id)
            expires_at = utcnow() + timedelta(seconds=token.expires_in) if token.expires_in else None
            result = TokenRefreshResult(
                access_token=token.access_token,
                expires_at=expires_at,
                refreshed=True,
            )
            self._recent[owner_id] = (time.monotonic(), result)
            logger.info("Refreshed access token for owner %s", owner_id)
            return result
