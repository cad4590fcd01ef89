"""Typed exception hierarchy for aggregator errors.

Provides structured exceptions for differentiated error handling
(auth errors vs transient network errors vs data issues).
"""


class AggregatorError(Exception):
    """Base exception for all aggregator-related errors.

    Carries the operation name so callers can tell which call failed
    without parsing the message.
    """

    def __init__(self, message: str, operation: str = ""):
        self.operation = operation
        super().__init__(message)


class AggregatorAuthError(AggregatorError):
    """Credentials missing, expired, or invalid (HTTP 401/403)."""

    pass


class AggregatorConnectionError(AggregatorError):
    """Network failures: timeouts, DNS resolution, connection refused.

    Retriable by default.
    """

    def __init__(self, message: str, operation: str = "", retriable: bool = True):
        self.retriable = retriable
        super().__init__(message, operation)


class AggregatorAPIError(AggregatorError):
    """HTTP 4xx/5xx responses from the aggregator API."""

    def __init__(
        self,
        message: str,
        operation: str = "",
        status_code: int | None = None,
    ):
        self.status_code = status_code
        super().__init__(message, operation)

    @property
    def retriable(self) -> bool:
        """429 (rate limit) and 5xx errors are generally retriable."""
        if self.status_code is None:
            return False
        return self.status_code == 429 or self.status_code >= 500


class AggregatorDataError(AggregatorError):
    """Malformed or unparseable response from the aggregator."""

    pass
