"""Category mapping client for imported bank rows."""

import logging
from decimal import Decimal
from typing import Any

import httpx

from ledgermatch.config import settings

from .cache import CacheClient, CategoryMapping

logger = logging.getLogger(__name__)


class CategoryClientError(Exception):
    """Base exception for category client errors."""

    pass


class CategoryAPIError(CategoryClientError):
    """API request failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class CategoryMappingClient:
    """Async client for the service that maps bank categories to ledger categories."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
    ):
        self.base_url = base_url or settings.category_api_url
        self.api_key = api_key or settings.category_api_key
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "CategoryMappingClient":
        """Async context manager entry."""
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "X-API-Key": self.api_key,
                "Content-Type": "application/json",
            },
            timeout=10.0,
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
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make API request."""
        if self._client is None:
            raise CategoryClientError("Client not initialized. Use async with context manager.")

        try:
            response = await self._client.request(method, path, json=json)
        except httpx.HTTPError as e:
            raise CategoryAPIError(f"Request failed: {e}") from e

        if response.status_code >= 400:
            raise CategoryAPIError(
                f"API error: {response.status_code} - {response.text}",
                status_code=response.status_code,
            )

        return response.json()

    async def lookup(self, user_id: int, bank_categories: list[str]) -> list[CategoryMapping]:
        """Look up mappings for a batch of bank category strings.

        Args:
            user_id: Owner of the ledger categories
            bank_categories: Distinct bank category strings

        Returns:
            Mappings found; unknown categories are omitted
        """
        data = await self._request(
            "POST",
            "/api/category-mappings/lookup",
            json={"user_id": user_id, "bank_categories": bank_categories},
        )
        return [
            CategoryMapping(
                bank_category=m["bank_category"],
                category_id=m["category_id"],
                confidence=Decimal(str(m.get("confidence", 0))),
            )
            for m in data.get("mappings", [])
        ]


class CategoryResolver:
    """Resolves bank categories through the cache, then the mapping service."""

    def __init__(self, client: CategoryMappingClient, cache: CacheClient | None = None):
        self.client = client
        self.cache = cache

    async def resolve(self, user_id: int, bank_categories: list[str]) -> dict[str, CategoryMapping]:
        """Mappings keyed by bank category string."""
        wanted = sorted({c for c in bank_categories if c})
        if not wanted:
            return {}

        mappings: dict[str, CategoryMapping] = {}
        if self.cache is not None:
            try:
                mappings.update(await self.cache.get_category_mappings(user_id, wanted))
            except Exception as e:
                logger.warning(f"Category cache read failed: {e}")

        missing = [c for c in wanted if c not in mappings]
        if missing:
            fetched = await self.client.lookup(user_id, missing)
            mappings.update({m.bank_category: m for m in fetched})
            if self.cache is not None and fetched:
                try:
                    await self.cache.set_category_mappings(user_id, fetched)
                except Exception as e:
                    logger.warning(f"Category cache write failed: {e}")

        return mappings
