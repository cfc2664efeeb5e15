"""Application Configuration — environment-driven settings via pydantic-settings.

Invariants:
    - All provider secrets come from environment variables (never hardcoded)
    - get_settings() is cached (lru_cache) — single instance per process
    - A provider with missing credentials is simply not registered; asking for it
      later is a ConfigurationError, never a silent fallback to another provider

Design Decisions:
    - pydantic-settings over raw os.environ: validation, type coercion, .env file support
    - Defaults provided for all non-secret settings: works out-of-the-box with docker-compose
"""

from decimal import Decimal
from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    # Database
    database_url: str = (
        "postgresql+asyncpg://billing:billing@db:5432/billing"
    )

    @field_validator("database_url", mode="before")
    @classmethod
    def convert_postgres_url(cls, v: str) -> str:
        """Hosting platforms provide postgresql:// but asyncpg needs postgresql+asyncpg://."""
        if isinstance(v, str) and v.startswith("postgresql://"):
            return v.replace("postgresql://", "postgresql+asyncpg://", 1)
        return v

    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Public URLs (success/fail pages the customer returns to)
    public_base_url: str = "http://localhost:3000"

    # Robokassa
    robokassa_merchant_login: str = ""
    robokassa_password1: str = ""
    robokassa_password2: str = ""
    robokassa_hash_algorithm: str = "md5"
    robokassa_test_mode: bool = True
    robokassa_currency: str = "RUB"

    # YooMoney
    yoomoney_receiver: str = ""
    yoomoney_notification_secret: str = ""
    yoomoney_api_token: str = ""
    yoomoney_currency: str = "RUB"
    yoomoney_max_fee_percent: Decimal = Decimal("5")

    # Checkout prices as a JSON object, e.g. {"course-py": "40.00", "service:consult": "5.00"}
    catalog_prices: dict[str, Decimal] = {}

    # Provider status polling
    status_check_timeout_seconds: float = 10.0
    provider_max_retries: int = 2
    provider_base_delay_ms: int = 200
    provider_max_delay_ms: int = 2_000

    # API
    cors_origins: list[str] = ["http://localhost:3000"]

    # Observability
    log_level: str = "INFO"
    log_format: str = "json"


@lru_cache
def get_settings() -> Settings:
    return Settings()
