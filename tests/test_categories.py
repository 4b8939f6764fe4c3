"""Tests for category mapping lookup."""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from ledgermatch.services.cache import CacheClient, CategoryMapping
from ledgermatch.services.categories import (
    CategoryAPIError,
    CategoryMappingClient,
    CategoryResolver,
)


def mapping(category, category_id, confidence):
    return CategoryMapping(
        bank_category=category, category_id=category_id, confidence=Decimal(confidence)
    )


@pytest.fixture
def mock_client():
    client = MagicMock(spec=CategoryMappingClient)
    client.lookup = AsyncMock(return_value=[])
    return client


@pytest.fixture
def mock_cache():
    cache = MagicMock(spec=CacheClient)
    cache.get_category_mappings = AsyncMock(return_value={})
    cache.set_category_mappings = AsyncMock()
    return cache


class TestCategoryMappingClient:
    """Tests for CategoryMappingClient."""

    @pytest.mark.asyncio
    async def test_lookup_parses_mappings(self):
        client = CategoryMappingClient(base_url="https://categories.test", api_key="k")
        response = {
            "mappings": [
                {"bank_category": "Groceries", "category_id": 12, "confidence": 0.97},
            ]
        }
        with patch.object(client, "_request", AsyncMock(return_value=response)) as mock_request:
            result = await client.lookup(1, ["Groceries", "Unknown"])

        assert result == [mapping("Groceries", 12, "0.97")]
        mock_request.assert_awaited_once_with(
            "POST",
            "/api/category-mappings/lookup",
            json={"user_id": 1, "bank_categories": ["Groceries", "Unknown"]},
        )


class TestCategoryResolver:
    """Tests for CategoryResolver."""

    @pytest.mark.asyncio
    async def test_cache_hit_skips_lookup(self, mock_client, mock_cache):
        mock_cache.get_category_mappings.return_value = {
            "Groceries": mapping("Groceries", 12, "0.97")
        }
        resolver = CategoryResolver(mock_client, mock_cache)

        result = await resolver.resolve(1, ["Groceries"])

        assert result["Groceries"].category_id == 12
        mock_client.lookup.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_misses_fetched_and_cached(self, mock_client, mock_cache):
        fetched = [mapping("Fuel", 20, "0.80")]
        mock_client.lookup.return_value = fetched
        resolver = CategoryResolver(mock_client, mock_cache)

        result = await resolver.resolve(1, ["Fuel", "Fuel", None])

        assert result == {"Fuel": fetched[0]}
        mock_client.lookup.assert_awaited_once_with(1, ["Fuel"])
        mock_cache.set_category_mappings.assert_awaited_once_with(1, fetched)

    @pytest.mark.asyncio
    async def test_cache_failure_falls_back_to_service(self, mock_client, mock_cache):
        mock_cache.get_category_mappings.side_effect = ConnectionError("redis down")
        mock_client.lookup.return_value = [mapping("Fuel", 20, "0.80")]
        resolver = CategoryResolver(mock_client, mock_cache)

        result = await resolver.resolve(1, ["Fuel"])

        assert "Fuel" in result

    @pytest.mark.asyncio
    async def test_service_failure_propagates(self, mock_client):
        mock_client.lookup.side_effect = CategoryAPIError("API error: 503", status_code=503)
        resolver = CategoryResolver(mock_client)

        with pytest.raises(CategoryAPIError):
            await resolver.resolve(1, ["Fuel"])

    @pytest.mark.asyncio
    async def test_nothing_to_resolve(self, mock_client):
        resolver = CategoryResolver(mock_client)
        assert await resolver.resolve(1, [None, ""]) == {}
        mock_client.lookup.assert_not_awaited()
