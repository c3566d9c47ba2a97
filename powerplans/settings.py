import os

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

load_dotenv()

ONCOR_DUNS = "1039940674000"


class Settings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Pricing API Configuration
    pricing_api_url: str = Field(
        default="https://pricing.api.comparepower.com", alias="PRICING_API_URL"
    )
    pricing_api_key: str = Field(default="", alias="PRICING_API_KEY")
    pricing_api_timeout: float = Field(default=10.0, alias="PRICING_API_TIMEOUT")

    # ESIID (address lookup) API Configuration
    esiid_api_url: str = Field(
        default="https://ercot.api.comparepower.com", alias="ESIID_API_URL"
    )
    esiid_api_key: str = Field(default="", alias="ESIID_API_KEY")
    esiid_api_timeout: float = Field(default=10.0, alias="ESIID_API_TIMEOUT")

    # Cache Configuration
    redis_url: str | None = Field(default=None, alias="REDIS_URL")
    redis_key_prefix: str = Field(default="cmp:plans:", alias="REDIS_KEY_PREFIX")
    cache_max_entries: int = Field(default=1000, alias="CACHE_MAX_ENTRIES")
    cache_ttl_plans: int = Field(default=1800, alias="CACHE_TTL_PLANS")
    cache_ttl_resolution: int = Field(default=3600, alias="CACHE_TTL_RESOLUTION")
    cache_ttl_reference: int = Field(default=86400, alias="CACHE_TTL_REFERENCE")
    cache_debug: bool = Field(default=False, alias="CACHE_DEBUG")

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./powerplans.db", alias="DATABASE_URL"
    )
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO")
    snapshot_retention_days: int = Field(default=30, alias="SNAPSHOT_RETENTION_DAYS")

    # Resilience Configuration
    breaker_failure_threshold: int = Field(default=5, alias="BREAKER_FAILURE_THRESHOLD")
    breaker_reset_timeout: float = Field(default=30.0, alias="BREAKER_RESET_TIMEOUT")
    upstream_rate_limit: int = Field(default=60, alias="UPSTREAM_RATE_LIMIT")
    upstream_rate_window: float = Field(default=60.0, alias="UPSTREAM_RATE_WINDOW")
    rate_limit_backoff_attempts: int = Field(default=3, alias="RATE_LIMIT_BACKOFF_ATTEMPTS")
    upstream_max_retries: int = Field(default=3, alias="UPSTREAM_MAX_RETRIES")
    retry_base_delay: float = Field(default=1.0, alias="RETRY_BASE_DELAY")
    retry_max_delay: float = Field(default=8.0, alias="RETRY_MAX_DELAY")

    # Resolver Configuration
    resolution_timeout: float = Field(default=5.0, alias="RESOLUTION_TIMEOUT")
    default_territory_duns: str = Field(
        default=ONCOR_DUNS, alias="DEFAULT_TERRITORY_DUNS"
    )
    default_usage: int = Field(default=1000, alias="DEFAULT_USAGE")

    # HTTP API Configuration
    api_host: str = Field(default="0.0.0.0", alias="API_HOST")
    api_port: int = Field(default=8000, alias="API_PORT")
    zip_validation_rate_limit: int = Field(default=10, alias="ZIP_VALIDATION_RATE_LIMIT")
    zip_validation_rate_window: float = Field(
        default=60.0, alias="ZIP_VALIDATION_RATE_WINDOW"
    )
    zip_validation_plan_timeout: float = Field(
        default=0.15, alias="ZIP_VALIDATION_PLAN_TIMEOUT"
    )

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment (after .env loading)."""
        names = {field.alias for field in cls.model_fields.values() if field.alias}
        return cls.model_validate(
            {key: value for key, value in os.environ.items() if key in names}
        )
