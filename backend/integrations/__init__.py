"""External API integrations.

This package contains:
- Aggregator protocol: normalized types and the client contract
- Aggregator client: httpx wrapper around the Open Banking aggregator API
- Exceptions: typed aggregator error hierarchy
"""

from integrations.aggregator_protocol import (
    AggregatorAccount,
    AggregatorClientProtocol,
    AggregatorConsent,
    AggregatorTransaction,
)
from integrations.exceptions import AggregatorError

__all__ = [
    "AggregatorAccount",
    "AggregatorClientProtocol",
    "AggregatorConsent",
    "AggregatorError",
    "AggregatorTransaction",
]
