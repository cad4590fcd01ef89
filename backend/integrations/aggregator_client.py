"""Open Banking aggregator API client.

Wraps the aggregator's REST API with httpx and maps its payloads into the
dataclasses in :mod:`integrations.aggregator_protocol`.

Flow as seen from this client:

1. Exchange client credentials (scoped to one owner) for an access token.
2. Create an intent; the owner picks a bank and grants consent in the
   aggregator's hosted UI, which then redirects to our callback.
3. List accounts/consents, read balances and transactions under the token.
4. Revoke a consent when it is superseded or the owner disconnects.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal

import httpx

from config import settings
from integrations.aggregator_protocol import (
    AccessToken,
    AccountGrant,
    AggregatorAccount,
    AggregatorConsent,
    AggregatorTransaction,
    ConnectIntent,
    TransactionPage,
    UNKNOWN_INSTITUTION_ID,
)
from integrations.exceptions import (
    AggregatorAPIError,
    AggregatorAuthError,
    AggregatorConnectionError,
    AggregatorDataError,
)
from integrations.parsing_utils import parse_iso_datetime, to_decimal

logger = logging.getLogger(__name__)

# Header that scopes a client-credentials token to one end user
_CUSTOMER_HEADER = "X-TG-CustomerUserId"

# Hard stop for runaway pagination metadata
_MAX_TRANSACTION_PAGES = 100


class AggregatorClient:
    """Wrapper around the aggregator's account- and consent-information APIs."""

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        token_url: str | None = None,
        api_url: str | None = None,
        timeout: float | None = None,
    ):
        self._client_id = client_id or settings.AGGREGATOR_CLIENT_ID
        self._client_secret = client_secret or settings.AGGREGATOR_CLIENT_SECRET
        self._token_url = token_url or settings.AGGREGATOR_TOKEN_URL
        self._client = httpx.Client(
            base_url=api_url or settings.AGGREGATOR_API_URL,
            timeout=timeout or settings.AGGREGATOR_TIMEOUT_SECONDS,
        )

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._client.close()

    def is_configured(self) -> bool:
        """Check if aggregator credentials are configured."""
        return bool(self._client_id) and bool(self._client_secret)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(
        self,
        method: str,
        url: str,
        operation: str,
        *,
        access_token: str | None = None,
        headers: dict[str, str] | None = None,
        **kwargs,
    ) -> httpx.Response:
        """Send a request and translate transport/HTTP failures.

        Raises:
            AggregatorAuthError: HTTP 401/403.
            AggregatorAPIError: Any other non-2xx status.
            AggregatorConnectionError: Timeouts and network failures.
        """
        request_headers = dict(headers or {})
        if access_token:
            request_headers["Authorization"] = f"Bearer {access_token}"

        try:
            response = self._client.request(method, url, headers=request_headers, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status in (401, 403):
                raise AggregatorAuthError(
                    f"Aggregator authentication failed during {operation} (HTTP {status})",
                    operation=operation,
                ) from exc
            raise AggregatorAPIError(
                f"Aggregator API error during {operation} (HTTP {status})",
                operation=operation,
                status_code=status,
            ) from exc
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            raise AggregatorConnectionError(
                f"Aggregator connection failed during {operation}: {exc}",
                operation=operation,
            ) from exc
        return response

    @staticmethod
    def _json(response: httpx.Response, operation: str) -> dict:
        try:
            data = response.json()
        except ValueError as exc:
            raise AggregatorDataError(
                f"Aggregator returned invalid JSON for {operation}",
                operation=operation,
            ) from exc
        if not isinstance(data, dict):
            raise AggregatorDataError(
                f"Aggregator returned unexpected payload for {operation}",
                operation=operation,
            )
        return data

    # ------------------------------------------------------------------
    # Token & intent
    # ------------------------------------------------------------------

    def get_access_token(self, owner_id: str) -> AccessToken:
        """Exchange client credentials for a token scoped to ``owner_id``."""
        response = self._request(
            "POST",
            self._token_url,
            "token exchange",
            headers={_CUSTOMER_HEADER: owner_id},
            json={
                "clientId": self._client_id,
                "clientSecret": self._client_secret,
                "grantType": "client_credentials",
            },
        )
        data = self._json(response, "token exchange")
        token = data.get("accessToken")
        if not token:
            raise AggregatorDataError(
                "Token response missing accessToken", operation="token exchange"
            )
        return AccessToken(
            access_token=token,
            expires_in=int(data.get("expiresIn") or 0),
            token_type=data.get("tokenType") or "Bearer",
        )

    def create_intent(
        self,
        access_token: str,
        owner_id: str,
        redirect_url: str,
        first_name: str = "User",
        last_name: str = "Account",
        email: str | None = None,
    ) -> ConnectIntent:
        """Create a consent intent; the owner completes it at ``connect_url``."""
        user = {
            "customerUserId": owner_id,
            "firstName": first_name,
            "lastName": last_name,
        }
        if email:
            user["email"] = email

        response = self._request(
            "POST",
            "/accountInformation/v1/intent",
            "create intent",
            access_token=access_token,
            json={
                "user": user,
                "redirectUrl": redirect_url,
                "providerType": "Retail",
                "language": "EN",
            },
        )
        data = self._json(response, "create intent")
        if not data.get("intentId") or not data.get("connectUrl"):
            raise AggregatorDataError(
                "Intent response missing intentId or connectUrl", operation="create intent"
            )
        return ConnectIntent(
            intent_id=data["intentId"],
            connect_url=data["connectUrl"],
            expires_at=parse_iso_datetime(data.get("expiry")),
        )

    # ------------------------------------------------------------------
    # Accounts & consents
    # ------------------------------------------------------------------

    def get_accounts(self, access_token: str) -> list[AggregatorAccount]:
        """List every account visible under the token (all consents)."""
        response = self._request(
            "GET", "/accountInformation/v2/accounts", "list accounts",
            access_token=access_token,
        )
        data = self._json(response, "list accounts")

        accounts: list[AggregatorAccount] = []
        for raw in data.get("accounts") or []:
            account = self._map_account(raw)
            if account:
                accounts.append(account)
        logger.info("Aggregator: %d accounts visible", len(accounts))
        return accounts

    def get_consents(self, access_token: str) -> list[AggregatorConsent]:
        """List the owner's consents."""
        response = self._request(
            "GET", "/consentInformation/v1/consents", "list consents",
            access_token=access_token,
        )
        data = self._json(response, "list consents")
        consents = [self._map_consent(c) for c in data.get("consents") or [] if c.get("consentId")]
        return consents

    def get_consent_detail(self, access_token: str, consent_id: str) -> AggregatorConsent:
        """Fetch one consent, including its account-id list when provided."""
        response = self._request(
            "GET", f"/consentInformation/v1/consents/{consent_id}", "consent detail",
            access_token=access_token,
        )
        data = self._json(response, "consent detail")
        # Some responses wrap the object under "consent"
        payload = data.get("consent") if isinstance(data.get("consent"), dict) else data
        if not payload.get("consentId"):
            payload = {**payload, "consentId": consent_id}
        return self._map_consent(payload)

    def revoke_consent(self, access_token: str, consent_id: str) -> None:
        """Revoke a consent at the aggregator."""
        self._request(
            "DELETE", f"/consentInformation/v1/consents/{consent_id}", "revoke consent",
            access_token=access_token,
        )
        logger.info("Aggregator: consent %s revoked", consent_id)

    # ------------------------------------------------------------------
    # Balances & transactions
    # ------------------------------------------------------------------

    def get_balance(self, access_token: str, account_id: str) -> Decimal | None:
        """Return the first reported balance amount, refreshed from the bank."""
        response = self._request(
            "GET",
            f"/accountInformation/v2/accounts/{account_id}/balances/refresh",
            "balance",
            access_token=access_token,
        )
        data = self._json(response, "balance")
        balances = data.get("balances") or []
        if not balances:
            return None
        amount = balances[0].get("amount") or {}
        return to_decimal(amount.get("value"))

    def get_transaction_page(
        self,
        access_token: str,
        account_id: str,
        since: datetime | None = None,
        page: int = 1,
    ) -> TransactionPage:
        """Fetch a single page of enriched transactions."""
        params: dict[str, str] = {"page": str(page)}
        if since is not None:
            if since.tzinfo is None:
                since = since.replace(tzinfo=timezone.utc)
            params["fromBookingDateTime"] = since.isoformat()

        response = self._request(
            "GET",
            f"/accountInformation/v2/accounts/{account_id}/transactions",
            "transactions",
            access_token=access_token,
            params=params,
        )
        data = self._json(response, "transactions")

        transactions: list[AggregatorTransaction] = []
        for raw in data.get("transactions") or []:
            txn = self._map_transaction(raw, account_id)
            if txn:
                transactions.append(txn)

        meta = data.get("meta") or {}
        return TransactionPage(
            transactions=transactions,
            current_page=int(meta.get("currentPage") or page),
            total_pages=int(meta.get("totalPages") or 1),
        )

    def get_transactions(
        self,
        access_token: str,
        account_id: str,
        since: datetime | None = None,
    ) -> list[AggregatorTransaction]:
        """Fetch all pages of transactions booked since ``since``."""
        transactions: list[AggregatorTransaction] = []
        page = 1
        while True:
            result = self.get_transaction_page(access_token, account_id, since, page)
            transactions.extend(result.transactions)
            if result.current_page >= result.total_pages or not result.transactions:
                break
            if page >= _MAX_TRANSACTION_PAGES:
                logger.warning(
                    "Aggregator: stopping transaction pagination for %s at %d pages",
                    account_id, page,
                )
                break
            page += 1
        return transactions

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _map_account(raw: dict) -> AggregatorAccount | None:
        account_id = raw.get("accountId")
        if not account_id:
            return None
        grants = [
            AccountGrant(
                consent_id=g["consentId"],
                status=str(g.get("status") or ""),
                expires_at=parse_iso_datetime(g.get("expiryDate")),
            )
            for g in raw.get("consents") or []
            if g.get("consentId")
        ]
        return AggregatorAccount(
            account_id=account_id,
            institution_id=raw.get("providerId") or UNKNOWN_INSTITUTION_ID,
            institution_name=raw.get("providerName"),
            account_type=raw.get("accountType"),
            account_subtype=raw.get("accountSubType"),
            currency=raw.get("currency"),
            identification=raw.get("identification"),
            name=raw.get("name"),
            grants=grants,
        )

    @staticmethod
    def _map_consent(raw: dict) -> AggregatorConsent:
        return AggregatorConsent(
            consent_id=raw["consentId"],
            institution_id=raw.get("providerId"),
            institution_name=raw.get("providerName"),
            status=str(raw.get("status") or ""),
            created_at=parse_iso_datetime(raw.get("createdAt")),
            expires_at=parse_iso_datetime(raw.get("expiresAt")),
            account_ids=[a for a in raw.get("accountIds") or [] if a],
        )

    @staticmethod
    def _map_transaction(raw: dict, account_id: str) -> AggregatorTransaction | None:
        """Map a transaction payload; amounts are signed by the credit/debit flag."""
        transaction_id = raw.get("transactionId")
        booked_at = parse_iso_datetime(raw.get("bookingDateTime"))
        amount_obj = raw.get("amount") or {}
        value = to_decimal(amount_obj.get("value"))
        if not transaction_id or booked_at is None or value is None:
            logger.debug("Aggregator: skipping unmappable transaction %r", transaction_id)
            return None

        is_credit = str(raw.get("creditDebitIndicator") or "").lower() == "credit"
        magnitude = abs(value)

        category = raw.get("category") or {}
        merchant = raw.get("merchant") or raw.get("merchantDetails") or {}
        category_name = category.get("name")

        return AggregatorTransaction(
            transaction_id=transaction_id,
            account_id=raw.get("accountId") or account_id,
            amount=magnitude if is_credit else -magnitude,
            currency=amount_obj.get("currency"),
            credit_debit="credit" if is_credit else "debit",
            booked_at=booked_at,
            description=raw.get("transactionDescription") or "",
            merchant_name=merchant.get("name"),
            category=category_name.lower() if category_name else None,
            category_group=category.get("group") or ("Income" if is_credit else "Expense"),
        )
