"""Account attribution - which visible accounts belong to a new consent.

An owner-scoped access token sees every account the owner has linked at the
aggregator, across all consents.  After a callback we only want the accounts
the just-granted consent covers.  The aggregator does not report this
reliably, so it is inferred by an ordered chain of strategies; the first
strategy that yields accounts wins.

Each strategy is a plain function ``(accounts, context) -> list | None``.
``None`` (or an empty list) means "no signal, try the next one".
"""

import logging
from collections.abc import Callable
from datetime import datetime

from integrations.aggregator_protocol import (
    AggregatorAccount,
    AggregatorClientProtocol,
    AggregatorConsent,
)
from integrations.exceptions import AggregatorError

logger = logging.getLogger(__name__)

_UNSET = object()


class ConsentContext:
    """Lazy, fetch-once view of the consent being attributed.

    ``consent_detail`` and ``consents`` are fetched from the aggregator on
    first access and cached, including a cached ``None``/empty result when
    the fetch fails.  Tests can pass the values directly instead of a client.
    """

    def __init__(
        self,
        consent_id: str | None,
        client: AggregatorClientProtocol | None = None,
        access_token: str | None = None,
        consent_detail=_UNSET,
        consents=_UNSET,
    ):
        self.consent_id = consent_id
        self._client = client
        self._access_token = access_token
        self._consent_detail = consent_detail
        self._consents = consents

    @property
    def consent_detail(self) -> AggregatorConsent | None:
        if self._consent_detail is _UNSET:
            self._consent_detail = None
            if self._client is not None and self.consent_id:
                try:
                    self._consent_detail = self._client.get_consent_detail(
                        self._access_token, self.consent_id
                    )
                except AggregatorError as e:
                    logger.warning("Consent detail fetch failed for %s: %s", self.consent_id, e)
        return self._consent_detail

    @property
    def consents(self) -> list[AggregatorConsent]:
        if self._consents is _UNSET:
            self._consents = []
            if self._client is not None:
                try:
                    self._consents = self._client.get_consents(self._access_token)
                except AggregatorError as e:
                    logger.warning("Consent list fetch failed: %s", e)
        return self._consents


AttributionStrategy = Callable[[list[AggregatorAccount], ConsentContext], "list[AggregatorAccount] | None"]


def by_consent_detail(
    accounts: list[AggregatorAccount], ctx: ConsentContext
) -> list[AggregatorAccount] | None:
    """Strategy 1: the consent detail's explicit account-id list."""
    detail = ctx.consent_detail
    if detail is None or not detail.account_ids:
        return None
    wanted = set(detail.account_ids)
    return [a for a in accounts if a.account_id in wanted]


def _grant_sort_key(expires_at: datetime | None, consent_id: str):
    # Undated grants sort before any dated grant; ties go to the greatest id
    if expires_at is None:
        return (0, datetime.min, consent_id)
    return (1, expires_at.replace(tzinfo=None), consent_id)


def by_active_grant(
    accounts: list[AggregatorAccount], ctx: ConsentContext
) -> list[AggregatorAccount] | None:
    """Strategy 2: accounts carrying the newest ACTIVE embedded grant.

    Picks the ACTIVE grant with the latest expiry across all accounts and
    keeps only accounts that carry that grant id as ACTIVE.
    """
    newest = None
    for account in accounts:
        for grant in account.grants:
            if not grant.is_active:
                continue
            key = _grant_sort_key(grant.expires_at, grant.consent_id)
            if newest is None or key > newest[0]:
                newest = (key, grant.consent_id)

    if newest is None:
        return None
    grant_id = newest[1]
    return [
        a for a in accounts
        if any(g.consent_id == grant_id and g.is_active for g in a.grants)
    ]


def by_institution(
    accounts: list[AggregatorAccount], ctx: ConsentContext
) -> list[AggregatorAccount] | None:
    """Strategy 3: all accounts at the consent's institution.

    The institution comes from the consent list entry matching the consent
    id, else from the most recently created ACTIVE consent.
    """
    consents = ctx.consents
    if not consents:
        return None

    consent = next((c for c in consents if c.consent_id == ctx.consent_id), None)
    if consent is None:
        active = [c for c in consents if c.is_active]
        if not active:
            return None
        consent = max(
            active,
            key=lambda c: c.created_at.replace(tzinfo=None) if c.created_at else datetime.min,
        )
        logger.info(
            "Consent %s not in consent list; using most recent active consent %s",
            ctx.consent_id, consent.consent_id,
        )

    if not consent.institution_id:
        return None
    return [a for a in accounts if a.institution_id == consent.institution_id]


ATTRIBUTION_STRATEGIES: tuple[AttributionStrategy, ...] = (
    by_consent_detail,
    by_active_grant,
    by_institution,
)


class AttributionResolver:
    """Runs the attribution strategies in order."""

    def __init__(self, strategies: tuple[AttributionStrategy, ...] = ATTRIBUTION_STRATEGIES):
        self._strategies = strategies

    def resolve(
        self,
        accounts: list[AggregatorAccount],
        ctx: ConsentContext,
    ) -> list[AggregatorAccount]:
        """Return the accounts attributable to ``ctx.consent_id`` (maybe empty)."""
        if not accounts:
            return []

        for strategy in self._strategies:
            result = strategy(accounts, ctx)
            if result:
                logger.info(
                    "Attributed %d of %d accounts to consent %s via %s",
                    len(result), len(accounts), ctx.consent_id, strategy.__name__,
                )
                return result

        logger.warning(
            "No accounts attributable to consent %s (%d visible)",
            ctx.consent_id, len(accounts),
        )
        return []
