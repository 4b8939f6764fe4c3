"""Configuration from environment variables."""

from decimal import Decimal

from pydantic import BaseModel
from pydantic_settings import BaseSettings


class ToleranceParams(BaseModel):
    """Tolerance window and confidence floor for one matching feature."""

    amount_tolerance: Decimal
    date_tolerance_days: int
    min_confidence: Decimal

    model_config = {"frozen": True}


class MatchingConfig(BaseModel):
    """Shared thresholds for reconciliation, duplicate and transfer matching."""

    reconciliation: ToleranceParams = ToleranceParams(
        amount_tolerance=Decimal("0.01"),
        date_tolerance_days=2,
        min_confidence=Decimal("0.50"),
    )
    duplicates: ToleranceParams = ToleranceParams(
        amount_tolerance=Decimal("0.01"),
        date_tolerance_days=1,
        min_confidence=Decimal("0.50"),
    )
    transfers: ToleranceParams = ToleranceParams(
        amount_tolerance=Decimal("0.00"),
        date_tolerance_days=3,
        min_confidence=Decimal("0.50"),
    )

    # Statement vs ledger balance
    balance_tolerance: Decimal = Decimal("0.01")

    # Finalize is allowed up to this share of unmatched items
    finalize_max_unmatched_percent: Decimal = Decimal("5")

    # Imported rows are marked reviewed when the category mapping is this sure
    auto_review_threshold: Decimal = Decimal("0.90")

    # Bulk approval default
    auto_approve_threshold: Decimal = Decimal("0.95")

    # Manual transfer linking accepts this relative amount difference
    transfer_link_tolerance_percent: Decimal = Decimal("5")


class Settings(BaseSettings):
    # PostgreSQL
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "ledgermatch"
    postgres_password: str = ""
    postgres_db: str = "ledgermatch"

    # Redis (category mapping cache)
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: str = ""

    # Bank feed provider
    bank_feed_api_url: str = "http://bank-feed.local"
    bank_feed_api_key: str = ""
    bank_feed_provider: str = "akahu"

    # Category mapping service
    category_api_url: str = "http://categories.local"
    category_api_key: str = ""

    matching: MatchingConfig = MatchingConfig()

    @property
    def database_url(self) -> str:
        """SQLAlchemy database URL."""
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    class Config:
        env_prefix = ""
        env_nested_delimiter = "__"
        case_sensitive = False


settings = Settings()
