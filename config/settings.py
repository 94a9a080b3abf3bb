"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Card provider (Stripe)
    stripe_secret_key: str = Field(..., description="Stripe secret API key (sk_test_...)")
    stripe_publishable_key: str = Field(..., description="Stripe publishable key (pk_test_...)")
    stripe_webhook_secret: str = Field(..., description="Stripe webhook signing secret")
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")
    stripe_webhook_tolerance: int = Field(
        default=300, description="Accepted webhook timestamp skew (seconds)"
    )

    # Local provider (LiqPay)
    liqpay_public_key: str = Field(..., description="LiqPay public key")
    liqpay_private_key: str = Field(..., description="LiqPay private key")
    liqpay_checkout_url: str = Field(
        default="https://www.liqpay.ua/api/3/checkout", description="LiqPay checkout URL"
    )
    liqpay_api_url: str = Field(
        default="https://www.liqpay.ua/api/request", description="LiqPay server API URL"
    )
    liqpay_sandbox: bool = Field(default=False, description="Send sandbox flag to LiqPay")

    # Database Configuration
    database_url: str = Field(..., description="Database connection URL (async driver)")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration (optional)
    redis_url: Optional[str] = Field(
        default=None, description="Redis URL for order locks and webhook dedupe cache"
    )
    redis_lock_timeout: int = Field(default=30, description="Order payment lock timeout (seconds)")
    redis_lock_blocking_timeout: float = Field(
        default=2.0, description="How long to wait for a busy order lock (seconds)"
    )
    webhook_dedupe_cache_ttl: int = Field(
        default=86400 * 7, description="Processed webhook cache TTL (seconds)"
    )

    # Application Configuration
    app_name: str = Field(default="order-payments", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )
    public_base_url: str = Field(
        default="http://localhost:8000",
        description="Externally reachable base URL used for provider callbacks",
    )

    # Caller identity, set by the upstream auth middleware
    caller_id_header: str = Field(default="X-User-ID", description="Caller id header name")
    caller_role_header: str = Field(default="X-User-Role", description="Caller role header name")

    # Orders
    default_currency: str = Field(default="UAH", description="Currency for new orders")
    max_order_amount_cents: int = Field(
        default=99_999_900, description="Largest accepted order total in minor units"
    )
    status_cas_max_attempts: int = Field(
        default=3, description="Re-read attempts after a lost status compare-and-swap"
    )

    # Provider calls
    provider_timeout_seconds: float = Field(
        default=10.0, description="Network timeout for a single provider call"
    )
    provider_retry_max_attempts: int = Field(
        default=3, description="Max attempts for transient provider errors"
    )
    provider_retry_base_delay: float = Field(
        default=0.5, description="Base delay for retry backoff (seconds)"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: str) -> str:
        """Validate that the Stripe secret key has a known prefix."""
        if not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("default_currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Currencies are stored as upper-case ISO codes."""
        if len(v) != 3:
            raise ValueError("Currency must be 3-letter code")
        return v.upper()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using Stripe test mode."""
        return self.stripe_secret_key.startswith("sk_test_")

    @property
    def local_webhook_url(self) -> str:
        """Callback URL LiqPay posts payment results to."""
        return f"{self.public_base_url.rstrip('/')}/payments/webhook/local"

    @property
    def default_return_url(self) -> str:
        """Where the customer lands after the LiqPay checkout."""
        return f"{self.public_base_url.rstrip('/')}/payment/result"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
