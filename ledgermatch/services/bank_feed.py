"""Bank feed API client."""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any

import httpx

from ledgermatch.config import settings

from .bank_data import ExternalTransaction

logger = logging.getLogger(__name__)


@dataclass
class PendingSummary:
    """Pending (not yet settled) transactions on the bank side."""

    total: Decimal
    count: int


class BankFeedClientError(Exception):
    """Base exception for bank feed client errors."""

    pass


class BankFeedAPIError(BankFeedClientError):
    """API request failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


# Provider fields carried into the snapshot beyond the common ones
PROVIDER_EXTRA_FIELDS = {
    "akahu": {
        "merchant_name": ("merchant", "name"),
        "category_group": ("category", "groups", "personal_finance", "name"),
        "transaction_type": ("type",),
    },
}


def _dig(data: dict[str, Any], path: tuple[str, ...]) -> Any:
    value: Any = data
    for key in path:
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value


def parse_transaction(data: dict[str, Any], provider: str) -> ExternalTransaction:
    """Normalize a provider transaction payload.

    Raises:
        BankFeedAPIError: The record carries no transaction id
    """
    external_id = data.get("_id") or data.get("id")
    if not external_id:
        raise BankFeedAPIError(f"Bank transaction without an id dated {data.get('date')}")

    extra = {
        name: _dig(data, path) for name, path in PROVIDER_EXTRA_FIELDS.get(provider, {}).items()
    }
    category = data.get("category")
    bank_category = category.get("name") if isinstance(category, dict) else category
    meta = data.get("meta") or {}

    return ExternalTransaction(
        external_id=str(external_id),
        amount=Decimal(str(data.get("amount", 0))),
        date=date.fromisoformat(str(data.get("date", ""))[:10]),
        description=data.get("description"),
        bank_category=bank_category,
        reference=meta.get("reference") or data.get("reference"),
        provider=provider,
        extra={k: v for k, v in extra.items() if v is not None},
    )


class BankFeedClient:
    """Async client for the open-banking feed that supplies bank records."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        provider: str | None = None,
    ):
        self.base_url = base_url or settings.bank_feed_api_url
        self.api_key = api_key or settings.bank_feed_api_key
        self.provider = provider or settings.bank_feed_provider
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "BankFeedClient":
        """Async context manager entry."""
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            timeout=30.0,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make API request.

        Raises:
            BankFeedAPIError: If the request fails or times out
        """
        if self._client is None:
            raise BankFeedClientError("Client not initialized. Use async with context manager.")

        try:
            response = await self._client.request(method, path, params=params)
        except httpx.HTTPError as e:
            raise BankFeedAPIError(f"Request failed: {e}") from e

        if response.status_code >= 400:
            raise BankFeedAPIError(
                f"API error: {response.status_code} - {response.text}",
                status_code=response.status_code,
            )

        return response.json()

    async def ping(self) -> None:
        """Raise BankFeedAPIError unless the feed's health endpoint answers 200."""
        if self._client is None:
            raise BankFeedClientError("Client not initialized. Use async with context manager.")
        try:
            response = await self._client.get("/health", timeout=5.0)
        except httpx.HTTPError as e:
            raise BankFeedAPIError(f"Request failed: {e}") from e
        if response.status_code != 200:
            raise BankFeedAPIError(
                f"Health check returned {response.status_code}",
                status_code=response.status_code,
            )

    async def get_transactions(
        self,
        account_ref: str,
        start_date: date,
        end_date: date,
    ) -> list[ExternalTransaction]:
        """Get settled transactions for an account and period.

        Args:
            account_ref: Provider account id
            start_date: First day of the period
            end_date: Last day of the period

        Returns:
            List of ExternalTransaction objects
        """
        transactions: list[ExternalTransaction] = []
        cursor: str | None = None

        while True:
            params = {"start": start_date.isoformat(), "end": end_date.isoformat()}
            if cursor:
                params["cursor"] = cursor
            data = await self._request(
                "GET", f"/v1/accounts/{account_ref}/transactions", params=params
            )
            for item in data.get("items", []):
                transactions.append(parse_transaction(item, self.provider))

            cursor = (data.get("cursor") or {}).get("next")
            if not cursor:
                break

        logger.info(f"Fetched {len(transactions)} bank transactions for {account_ref}")
        return transactions

    async def get_balance(self, account_ref: str) -> Decimal:
        """Current balance reported by the bank."""
        data = await self._request("GET", f"/v1/accounts/{account_ref}")
        balance = (data.get("item") or data).get("balance", {})
        return Decimal(str(balance.get("current", 0)))

    async def get_pending(self, account_ref: str) -> PendingSummary:
        """Total and count of pending transactions."""
        data = await self._request("GET", f"/v1/accounts/{account_ref}/transactions/pending")
        items = data.get("items", [])
        total = sum((Decimal(str(i.get("amount", 0))) for i in items), Decimal("0.00"))
        return PendingSummary(total=total, count=len(items))
