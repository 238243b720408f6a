"""
Seller Operations Backend
Centralized Configuration Management

This module provides configuration management using Pydantic settings with
environment variable support, validation, and type safety. Every tunable of
the sync engine (poll intervals, batch sizes, rate-limit waits, queue retry
policy) lives here so deployments can adjust them without code changes.
"""

from functools import lru_cache
from typing import Optional, List
from pydantic import Field, field_validator, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """PostgreSQL Database Configuration"""

    model_config = SettingsConfigDict(env_prefix="POSTGRES_", populate_by_name=True)

    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    db: str = Field(default="sellerops", alias="database", description="Database name")
    user: str = Field(default="sellerops", description="Database user")
    password: SecretStr = Field(default="secure_password", description="Database password")
    pool_size: int = Field(default=20, description="Connection pool size")
    echo: bool = Field(default=False, description="Echo SQL queries")
    url: Optional[str] = Field(default=None, alias="DATABASE_URL", description="Full async URL (overrides host/port)")

    @property
    def async_url(self) -> str:
        """Async database URL - uses DATABASE_URL if set, otherwise asyncpg from parts"""
        if self.url:
            return self.url
        return f"postgresql+asyncpg://{self.user}:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"


class RedisSettings(BaseSettings):
    """Redis Cache Configuration"""

    model_config = SettingsConfigDict(env_prefix="REDIS_", populate_by_name=True)

    host: str = Field(default="localhost", description="Redis host")
    port: int = Field(default=6379, description="Redis port")
    password: Optional[SecretStr] = Field(default=None, description="Redis password")
    db: int = Field(default=0, description="Redis database number")
    max_connections: int = Field(default=50, description="Max connections")
    socket_timeout: int = Field(default=5, description="Socket timeout in seconds")
    decode_responses: bool = Field(default=True, description="Decode responses to strings")
    url: Optional[str] = Field(default=None, alias="REDIS_URL", description="Redis URL (overrides host/port)")
    profit_cache_ttl: int = Field(default=900, description="TTL for cached profit rollups")

    def get_url(self) -> str:
        """Redis connection URL - uses REDIS_URL if set, otherwise builds from host/port"""
        if self.url:
            return self.url
        if self.password:
            return f"redis://:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"


class SpApiSettings(BaseSettings):
    """Amazon Selling Partner API Configuration"""

    model_config = SettingsConfigDict(env_prefix="SP_API_")

    client_id: Optional[str] = Field(default=None, description="LWA client id")
    client_secret: Optional[SecretStr] = Field(default=None, description="LWA client secret")
    refresh_token: Optional[SecretStr] = Field(default=None, description="LWA refresh token")
    seller_id: Optional[str] = Field(default=None, description="Merchant token / seller id")
    marketplace_id: str = Field(default="ATVPDKIKX0DER", description="Primary marketplace id")
    region: str = Field(default="na", description="Endpoint region: na, eu or fe")
    token_url: str = Field(default="https://api.amazon.com/auth/o2/token", description="LWA token endpoint")
    endpoint: Optional[str] = Field(default=None, description="Override for the regional API host")
    request_timeout: int = Field(default=30, description="HTTP timeout in seconds")

    @field_validator("region")
    @classmethod
    def validate_region(cls, v: str) -> str:
        """Validate region value"""
        allowed = ["na", "eu", "fe"]
        if v.lower() not in allowed:
            raise ValueError(f"Region must be one of: {allowed}")
        return v.lower()


class SyncSettings(BaseSettings):
    """Sync engine timings and limits"""

    model_config = SettingsConfigDict(env_prefix="SYNC_")

    # Report lifecycle
    report_poll_interval_seconds: float = Field(default=30, description="Delay between report status polls")
    report_max_poll_attempts: int = Field(default=120, description="Poll attempts for recurring syncs")
    historical_report_max_poll_attempts: int = Field(default=1440, description="Poll attempts for historical batches (12h)")
    report_create_max_attempts: int = Field(default=5, description="createReport attempts on 429")
    report_create_backoff_seconds: float = Field(default=120, description="Base wait per createReport 429 attempt")
    report_create_backoff_cap_seconds: float = Field(default=600, description="Cap for createReport backoff")
    status_rate_limit_wait_seconds: float = Field(default=60, description="Wait after a 429 while polling")

    # Historical orders
    batch_size_days: int = Field(default=7, description="Default batch window in days")
    max_history_days: int = Field(default=730, description="Maximum look-back for historical sync")
    inter_batch_delay_seconds: float = Field(default=240, description="Delay between batches")
    batch_error_delay_seconds: float = Field(default=300, description="Delay after a failed batch")
    order_chunk_size: int = Field(default=50, description="Orders per prefetch chunk")
    max_runtime_seconds: Optional[float] = Field(default=None, description="Wall-clock budget per invocation")
    recent_orders_days: int = Field(default=3, description="Look-back for the recurring orders sync")

    # Financial events
    finance_window_days: int = Field(default=7, description="Posted-date window size")
    finance_lookback_days: int = Field(default=30, description="Default look-back for recurring finance sync")
    finance_page_delay_seconds: float = Field(default=0.3, description="Delay between pages")
    finance_window_delay_seconds: float = Field(default=30, description="Delay between windows")
    finance_rate_limit_wait_seconds: float = Field(default=120, description="Wait after a 429 before restarting the window")
    finance_flush_threshold: int = Field(default=100, description="Flush after this many dirty order/SKU keys")
    finance_flush_every_page: bool = Field(default=True, description="Flush at the end of every page")
    finance_max_rate_limit_restarts: int = Field(default=5, description="Window restarts before giving up")

    # Misc
    fba_shipment_max_age_days: int = Field(default=180, description="Ignore older inbound shipments")
    fba_shipment_retention_days: int = Field(default=365, description="Retention for reconciled closed shipments")
    stale_report_hours: int = Field(default=24, description="Pending reports older than this are failed")
    report_reuse_tolerance_hours: float = Field(default=6, description="Window drift allowed when resuming a pending report")
    resync_order_delay_seconds: float = Field(default=0.2, description="Delay between order-item lookups")


class QueueSettings(BaseSettings):
    """Durable job queue configuration"""

    model_config = SettingsConfigDict(env_prefix="JOBS_")

    default_attempts: int = Field(default=3, description="Attempts before a job is failed")
    backoff_seconds: float = Field(default=5, description="Exponential backoff base")
    poll_interval_seconds: float = Field(default=5, description="Worker idle poll interval")
    cancel_check_interval_seconds: float = Field(default=5, description="How often running jobs re-read the cancel flag")
    worker_id: str = Field(default="worker-1", description="Identifier recorded on claimed jobs")


class MonitoringSettings(BaseSettings):
    """Monitoring and Observability Configuration"""

    model_config = SettingsConfigDict(env_prefix="", populate_by_name=True)

    prometheus_port: int = Field(default=9090, alias="PROMETHEUS_PORT", description="Prometheus port")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL", description="Logging level")
    log_format: str = Field(default="json", alias="LOG_FORMAT", description="Log format: json or text")


class Settings(BaseSettings):
    """
    Main Application Settings

    Aggregates all configuration sections and provides a single entry point
    for accessing application configuration.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Application
    app_name: str = Field(default="sellerops", alias="APP_NAME", description="Application name")
    app_env: str = Field(default="development", alias="APP_ENV", description="Environment")
    debug: bool = Field(default=False, alias="DEBUG", description="Debug mode")

    # API Server
    api_host: str = Field(default="0.0.0.0", alias="API_HOST", description="API host")
    api_port: int = Field(default=8000, alias="API_PORT", description="API port")
    cors_origins: List[str] = Field(default=["http://localhost:3000"], alias="CORS_ORIGINS", description="Allowed CORS origins")

    # Version
    version: str = Field(default="1.0.0", description="Application version")

    # Subsystem configurations
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    sp_api: SpApiSettings = Field(default_factory=SpApiSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        """Validate environment value"""
        allowed = ["development", "staging", "production", "testing"]
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()

    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.app_env == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Uses LRU cache to ensure settings are only loaded once.

    Returns:
        Settings: Application settings instance
    """
    return Settings()


# Convenience function for accessing settings
settings = get_settings()
