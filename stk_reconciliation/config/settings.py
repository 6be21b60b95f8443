"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import Dict, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # M-Pesa (Daraja) Configuration
    mpesa_consumer_key: str = Field(default="", description="Daraja consumer key")
    mpesa_consumer_secret: str = Field(default="", description="Daraja consumer secret")
    mpesa_shortcode: str = Field(default="174379", description="Business short code (PayBill)")
    mpesa_passkey: str = Field(default="", description="Lipa na M-Pesa online passkey")
    mpesa_callback_url: str = Field(
        default="http://localhost:8000/webhooks/mpesa",
        description="Public URL the provider posts STK callbacks to",
    )
    mpesa_environment: str = Field(default="sandbox", description="sandbox or production")
    mpesa_timeout_seconds: float = Field(
        default=15.0, description="Timeout for every provider HTTP call (seconds)"
    )
    mpesa_retry_max_attempts: int = Field(
        default=3, description="Max attempts for transport-level provider failures"
    )

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./stk_reconciliation.db",
        description="SQLAlchemy async connection URL",
    )
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Ephemeral session cache
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    session_cache_backend: str = Field(default="memory", description="memory or redis")
    session_cache_ttl: int = Field(
        default=3600, description="Lifetime of ephemeral session entries (seconds)"
    )

    # Application Configuration
    app_name: str = Field(default="stk-reconciliation", description="Application name")
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

    # Reconciliation timings
    poll_query_budget_seconds: float = Field(
        default=120.0,
        description="Age after which a status poll falls back to a provider query",
    )
    confirmation_ceiling_seconds: float = Field(
        default=7200.0,
        description="Age after which an unresolved session is force-expired",
    )
    sweep_query_interval_seconds: float = Field(
        default=0.5, description="Delay between consecutive provider queries in a sweep"
    )
    sweep_batch_size: int = Field(default=50, description="Max sessions examined per sweep")
    sweep_interval_seconds: float = Field(
        default=300.0, description="Delay between sweeps in the background worker"
    )

    # Referrals and redemption
    referral_commission_rate: float = Field(
        default=0.12, description="Share of the payment credited to the referrer"
    )
    receipt_validity_days: int = Field(
        default=30, description="Days a receipt code can be redeemed after payment"
    )
    category_prices: Dict[str, int] = Field(
        default={
            "calculate-cluster-points": 150,
            "courses-only": 150,
            "point-and-courses": 160,
        },
        description="Price in KES for each purchasable category",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("mpesa_environment")
    @classmethod
    def validate_mpesa_environment(cls, v: str) -> str:
        """Validate Daraja environment name."""
        if v.lower() not in ("sandbox", "production"):
            raise ValueError("Invalid M-Pesa environment. Must be 'sandbox' or 'production'")
        return v.lower()

    @field_validator("session_cache_backend")
    @classmethod
    def validate_cache_backend(cls, v: str) -> str:
        """Validate session cache backend."""
        if v.lower() not in ("memory", "redis"):
            raise ValueError("Invalid session cache backend. Must be 'memory' or 'redis'")
        return v.lower()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def mpesa_base_url(self) -> str:
        """Daraja API root for the configured environment."""
        if self.mpesa_environment == "production":
            return "https://api.safaricom.co.ke"
        return "https://sandbox.safaricom.co.ke"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
