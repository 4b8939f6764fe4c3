"""Redis cache for category mapping lookups."""

import json
import logging
from dataclasses import asdict, dataclass
from decimal import Decimal

import redis.asyncio as redis

from ledgermatch.config import settings

logger = logging.getLogger(__name__)


@dataclass
class CategoryMapping:
    """Ledger category suggested for a bank category string."""

    bank_category: str
    category_id: int
    confidence: Decimal


class CacheClient:
    """Redis cache client for category mappings."""

    # Key prefixes
    CATEGORY_PREFIX = "categories:"

    # TTLs in seconds
    CATEGORY_TTL = 3600  # 1 hour

    def __init__(
        self,
        host: str | None = None,
        port: int | None = None,
        password: str | None = None,
    ):
        self.host = host or settings.redis_host
        self.port = port or settings.redis_port
        self.password = password or settings.redis_password
        self._client: redis.Redis | None = None

    async def __aenter__(self) -> "CacheClient":
        """Async context manager entry."""
        self._client = redis.Redis(
            host=self.host,
            port=self.port,
            password=self.password or None,
            decode_responses=True,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> redis.Redis:
        """Get Redis client."""
        if self._client is None:
            raise RuntimeError("Cache client not initialized. Use async with context manager.")
        return self._client

    def _key(self, user_id: int) -> str:
        return f"{self.CATEGORY_PREFIX}{user_id}"

    async def get_category_mappings(
        self, user_id: int, bank_categories: list[str]
    ) -> dict[str, CategoryMapping]:
        """Cached mappings for the given bank categories, misses omitted."""
        if not bank_categories:
            return {}
        values = await self.client.hmget(self._key(user_id), bank_categories)

        mappings = {}
        for bank_category, raw in zip(bank_categories, values, strict=True):
            if raw is None:
                continue
            data = json.loads(raw)
            mappings[bank_category] = CategoryMapping(
                bank_category=bank_category,
                category_id=data["category_id"],
                confidence=Decimal(data["confidence"]),
            )
        return mappings

    async def set_category_mappings(self, user_id: int, mappings: list[CategoryMapping]) -> None:
        """Cache category mappings."""
        if not mappings:
            return
        key = self._key(user_id)
        values = {}
        for mapping in mappings:
            data = asdict(mapping)
            data["confidence"] = str(mapping.confidence)
            values[mapping.bank_category] = json.dumps(data)
        await self.client.hset(key, mapping=values)
        await self.client.expire(key, self.CATEGORY_TTL)
