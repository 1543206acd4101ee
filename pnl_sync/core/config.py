"""
Configuration management using Pydantic Settings.

Loads configuration from environment variables with validation and type safety,
and resolves the SP-API connection config the sync pipeline needs.
"""

from dataclasses import dataclass
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SpApiRegion = Literal["na", "eu", "fe"]

DEFAULT_USER_AGENT = "AmazonPnlSync/1.0 (Language=Python; Platform=CPython)"


class ConfigError(Exception):
    """Raised when required configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings are loaded from .env file or environment variables.
    See .env.example for all available options.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="amazon-pnl-sync", description="Application name")
    app_env: Literal["development", "staging", "production"] = Field(
        default="production", description="Environment"
    )
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: Literal["json", "text"] = Field(default="json", description="Log format")
    debug: bool = Field(default=False, description="Debug mode")
    default_currency: str = Field(
        default="GBP", description="Currency used when an upstream event carries none"
    )

    # Database
    database_url: str = Field(
        default="sqlite:///./data/pnl_sync.db",
        description="Database connection URL",
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size")
    db_max_overflow: int = Field(default=10, description="Database max overflow connections")
    db_pool_recycle: int = Field(default=3600, description="Database pool recycle time")

    # SP-API
    sp_api_region: str = Field(default="eu", description="SP-API region (na, eu, fe)")
    sp_api_marketplace_id: Optional[str] = Field(default=None, description="Marketplace ID")
    sp_api_seller_id: Optional[str] = Field(default=None, description="Seller ID")
    sp_api_client_id: Optional[str] = Field(default=None, description="LWA client ID")
    sp_api_client_secret: Optional[str] = Field(default=None, description="LWA client secret")
    sp_api_refresh_token: Optional[str] = Field(default=None, description="LWA refresh token")
    lwa_client_id: Optional[str] = Field(default=None, description="Fallback LWA client ID")
    lwa_client_secret: Optional[str] = Field(
        default=None, description="Fallback LWA client secret"
    )
    lwa_refresh_token: Optional[str] = Field(
        default=None, description="Fallback LWA refresh token"
    )
    sp_api_user_agent: str = Field(default=DEFAULT_USER_AGENT, description="User-Agent header")
    sp_api_timeout: int = Field(default=30, description="SP-API timeout in seconds")
    sp_api_rate_limit: float = Field(
        default=2.0, description="Outbound SP-API budget (requests per second)"
    )

    # Retry
    retry_attempts: int = Field(default=4, description="Max attempts per upstream call")
    retry_base_delay_ms: int = Field(default=2500, description="Base backoff delay in ms")
    orders_retry_base_delay_ms: int = Field(
        default=4000, description="Base backoff delay for the orders feed in ms"
    )
    retry_max_delay_ms: int = Field(default=60_000, description="Max backoff delay in ms")

    # Sync
    sync_default_days: int = Field(default=30, description="Default lookback in days")
    sync_max_pages: int = Field(default=10, description="Max order pages per run")
    sync_max_orders: int = Field(default=2000, description="Max orders per run")
    sync_max_orders_with_items: int = Field(
        default=1000, description="Max orders whose line items are fetched"
    )
    finances_max_pages: int = Field(default=2, description="Max financial event pages per run")
    sync_page_size: int = Field(default=100, description="Upstream page size")
    sync_batch_size: int = Field(
        default=100, description="Financial events per write transaction"
    )
    item_fetch_concurrency: int = Field(
        default=1, description="Concurrent order-item fetches"
    )
    sync_timeout_seconds: Optional[float] = Field(
        default=None, description="Wall-clock budget for one sync run"
    )

    # API Server
    api_host: str = Field(default="0.0.0.0", description="API server host")
    api_port: int = Field(default=8000, description="API server port")
    enable_api_docs: bool = Field(default=True, description="Enable API documentation")

    @field_validator(
        "sp_api_marketplace_id",
        "sp_api_seller_id",
        "sp_api_client_id",
        "sp_api_client_secret",
        "sp_api_refresh_token",
        "lwa_client_id",
        "lwa_client_secret",
        "lwa_refresh_token",
        mode="before",
    )
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        """Treat empty or whitespace-only values as unset."""
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.app_env == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.app_env == "development"


@dataclass(frozen=True)
class SpApiConnectionConfig:
    """Resolved credentials and marketplace for one SP-API connection."""

    region: SpApiRegion
    marketplace_id: str
    client_id: str
    client_secret: str
    refresh_token: str
    user_agent: str = DEFAULT_USER_AGENT
    seller_id: Optional[str] = None


def _resolve_region(raw: Optional[str]) -> SpApiRegion:
    candidate = (raw or "").strip().lower()
    if not candidate:
        return "eu"
    if candidate not in ("na", "eu", "fe"):
        raise ConfigError("SP_API_REGION must be one of: na, eu, fe")
    return candidate  # type: ignore[return-value]


def resolve_connection_config(
    source: Settings,
    marketplace_id: Optional[str] = None,
) -> SpApiConnectionConfig:
    """
    Resolve the SP-API connection config, failing fast on missing values.

    Args:
        source: Settings to read from
        marketplace_id: Explicit marketplace override

    Returns:
        Immutable connection config

    Raises:
        ConfigError: If any required value is absent or the region is invalid
    """
    region = _resolve_region(source.sp_api_region)

    resolved_marketplace = (marketplace_id or "").strip() or source.sp_api_marketplace_id
    client_id = source.sp_api_client_id or source.lwa_client_id
    client_secret = source.sp_api_client_secret or source.lwa_client_secret
    refresh_token = source.sp_api_refresh_token or source.lwa_refresh_token

    missing = []
    if not resolved_marketplace:
        missing.append("SP_API_MARKETPLACE_ID")
    if not client_id:
        missing.append("SP_API_CLIENT_ID/LWA_CLIENT_ID")
    if not client_secret:
        missing.append("SP_API_CLIENT_SECRET/LWA_CLIENT_SECRET")
    if not refresh_token:
        missing.append("SP_API_REFRESH_TOKEN/LWA_REFRESH_TOKEN")

    if missing:
        raise ConfigError(f"Missing required SP-API config: {', '.join(missing)}")

    return SpApiConnectionConfig(
        region=region,
        marketplace_id=resolved_marketplace,
        client_id=client_id,
        client_secret=client_secret,
        refresh_token=refresh_token,
        user_agent=source.sp_api_user_agent,
        seller_id=source.sp_api_seller_id,
    )


# Global settings instance
settings = Settings()
