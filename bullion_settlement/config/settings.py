"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

CASHFREE_BASE_URLS = {
    "SANDBOX": "https://sandbox.cashfree.com/pg",
    "PRODUCTION": "https://api.cashfree.com/pg",
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Cashfree Configuration
    cashfree_app_id: str = Field(..., description="Cashfree PG client id")
    cashfree_secret_key: str = Field(..., description="Cashfree PG client secret")
    cashfree_env: str = Field(default="SANDBOX", description="SANDBOX or PRODUCTION")
    cashfree_api_version: str = Field(default="2023-08-01", description="Cashfree API version")
    cashfree_timeout_seconds: float = Field(default=10.0, description="HTTP timeout (seconds)")
    payment_return_url: str = Field(
        default="http://localhost:3000/payment-status?order_id={order_id}",
        description="Where the gateway redirects the customer after checkout",
    )

    # Database Configuration
    database_url: str = Field(..., description="Database connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Settlement
    settlement_currency: str = Field(default="INR", description="Currency of all amounts")

    # Gateway retry policy
    gateway_retry_max_attempts: int = Field(default=3, description="Max gateway call attempts")
    gateway_retry_base_delay: float = Field(
        default=0.5, description="Base delay for retry backoff (seconds)"
    )
    gateway_retry_max_delay: float = Field(
        default=8.0, description="Upper bound for retry backoff (seconds)"
    )
    circuit_breaker_failure_threshold: int = Field(
        default=5, description="Consecutive gateway failures before the circuit opens"
    )
    circuit_breaker_timeout: int = Field(
        default=60, description="Seconds before an open circuit is probed again"
    )

    # Application Configuration
    app_name: str = Field(default="bullion-settlement", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("cashfree_env")
    @classmethod
    def validate_cashfree_env(cls, v: str) -> str:
        """Validate the Cashfree environment name."""
        if v.upper() not in CASHFREE_BASE_URLS:
            raise ValueError(
                f"Invalid Cashfree environment. Must be one of: {sorted(CASHFREE_BASE_URLS)}"
            )
        return v.upper()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("gateway_retry_max_attempts")
    @classmethod
    def validate_retry_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("gateway_retry_max_attempts must be at least 1")
        return v

    @property
    def cashfree_base_url(self) -> str:
        """Base URL of the Cashfree PG API for the configured environment."""
        return CASHFREE_BASE_URLS[self.cashfree_env]

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
