"""
Gateway Configuration
=====================
Environment-driven configuration with type-safe validation through
pydantic-settings. Every concern of the gateway (storage, cache, upstream
classifier, billing, analytics, HTTP surface) owns one settings class; the
master `Settings` composes them.

Values are read once per process and exposed through `get_settings()`.
"""

from functools import lru_cache
from typing import Dict, Literal, Optional
from urllib.parse import urlparse

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_MODEL = "gpt-3.5-turbo-0125"


class DatabaseSettings(BaseSettings):
    """Record store used by the balance ledger and the analytics recorder."""

    url: str = Field(default="sqlite+aiosqlite:///./sentiment_gateway.db", alias="DATABASE_URL")
    pool_size: int = Field(default=10, ge=1, le=50, alias="DB_POOL_SIZE")
    max_overflow: int = Field(default=20, ge=0, le=100, alias="DB_MAX_OVERFLOW")
    pool_timeout: int = Field(default=30, ge=1, le=120, alias="DB_POOL_TIMEOUT")
    pool_recycle: int = Field(default=3600, ge=300, alias="DB_POOL_RECYCLE")
    echo_sql: bool = Field(default=False, alias="DB_ECHO_SQL")

    model_config = SettingsConfigDict(case_sensitive=False, extra="ignore")

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    @property
    def host(self) -> str:
        return urlparse(self.url).hostname or ""


class RedisSettings(BaseSettings):
    """Redis configuration for the result cache and the rate limiter."""

    url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")
    max_connections: int = Field(default=50, ge=1, le=200, alias="REDIS_MAX_CONNECTIONS")
    socket_timeout: int = Field(default=5, ge=1, le=30, alias="REDIS_SOCKET_TIMEOUT")
    socket_connect_timeout: int = Field(
        default=5, ge=1, le=30, alias="REDIS_SOCKET_CONNECT_TIMEOUT"
    )
    cache_namespace: str = Field(default="analysis", alias="CACHE_NAMESPACE")
    cache_ttl: int = Field(default=86400, ge=1, alias="CACHE_TTL")

    model_config = SettingsConfigDict(case_sensitive=False, extra="ignore")


class UpstreamSettings(BaseSettings):
    """OpenAI-compatible text classification endpoint."""

    api_key: Optional[SecretStr] = Field(default=None, alias="UPSTREAM_API_KEY")
    base_url: str = Field(default="https://api.openai.com/v1", alias="UPSTREAM_BASE_URL")
    timeout: float = Field(default=30.0, ge=1.0, le=300.0, alias="UPSTREAM_TIMEOUT")
    default_model: str = Field(default=DEFAULT_MODEL, alias="DEFAULT_MODEL")

    model_config = SettingsConfigDict(case_sensitive=False, extra="ignore")


class BillingSettings(BaseSettings):
    """Prepaid balance metering."""

    enabled: bool = Field(default=True, alias="BILLING_ENABLED")
    markup: float = Field(default=0.25, ge=0.0, le=10.0, alias="BILLING_MARKUP")
    cache_hit_discount: float = Field(
        default=0.10, ge=0.0, le=1.0, alias="BILLING_CACHE_HIT_DISCOUNT"
    )
    unmetered_balance: float = Field(default=9999.0, ge=0.0, alias="BILLING_UNMETERED_BALANCE")
    model_pricing: Dict[str, Dict[str, float]] = Field(
        default={
            "gpt-3.5-turbo-0125": {"input": 0.0005, "output": 0.0015},
            "gpt-4-turbo": {"input": 0.01, "output": 0.03},
            "gpt-4": {"input": 0.03, "output": 0.06},
            "gpt-3.5-turbo": {"input": 0.0005, "output": 0.0015},
        },
        alias="BILLING_MODEL_PRICING",
    )

    model_config = SettingsConfigDict(case_sensitive=False, extra="ignore")

    @field_validator("model_pricing")
    @classmethod
    def validate_pricing(cls, v: Dict[str, Dict[str, float]]) -> Dict[str, Dict[str, float]]:
        for model, rates in v.items():
            if "input" not in rates or "output" not in rates:
                raise ValueError(f"Pricing for {model} must define 'input' and 'output'")
            if rates["input"] < 0 or rates["output"] < 0:
                raise ValueError(f"Pricing for {model} must be non-negative")
        return v


class AnalyticsSettings(BaseSettings):
    """Usage analytics aggregation."""

    enabled: bool = Field(default=True, alias="ANALYTICS_ENABLED")
    text_preview_length: int = Field(default=100, ge=0, le=1000, alias="ANALYTICS_TEXT_PREVIEW")
    hourly_window_days: int = Field(default=7, ge=1, le=90, alias="ANALYTICS_HOURLY_WINDOW_DAYS")
    daily_window_days: int = Field(default=30, ge=1, le=366, alias="ANALYTICS_DAILY_WINDOW_DAYS")

    model_config = SettingsConfigDict(case_sensitive=False, extra="ignore")


class ApiSettings(BaseSettings):
    """HTTP surface configuration."""

    batch_size_limit: int = Field(default=100, ge=1, le=1000, alias="BATCH_SIZE_LIMIT")
    rate_limit_times: int = Field(default=100, ge=1, alias="RATE_LIMIT_MAX")
    rate_limit_seconds: int = Field(default=900, ge=1, alias="RATE_LIMIT_WINDOW_SECONDS")
    admin_api_key: Optional[SecretStr] = Field(default=None, alias="ADMIN_API_KEY")
    cors_origins: list[str] = Field(default=["*"], alias="CORS_ORIGINS")

    model_config = SettingsConfigDict(case_sensitive=False, extra="ignore")


class MonitoringSettings(BaseSettings):
    """Observability configuration."""

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")
    enable_prometheus: bool = Field(default=True)

    model_config = SettingsConfigDict(
        env_prefix="MONITORING_", case_sensitive=False, extra="ignore"
    )


class Settings(BaseSettings):
    """
    Master configuration.

    Composes the per-concern settings and validates cross-cutting rules
    (the default model must be priced, production must be configured for
    real storage and an upstream key).
    """

    environment: Literal["development", "staging", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )
    debug: bool = Field(default=False, alias="DEBUG")

    app_name: str = Field(default="Sentiment Analysis Gateway")
    app_version: str = Field(default="1.0.0")

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    upstream: UpstreamSettings = Field(default_factory=UpstreamSettings)
    billing: BillingSettings = Field(default_factory=BillingSettings)
    analytics: AnalyticsSettings = Field(default_factory=AnalyticsSettings)
    api: ApiSettings = Field(default_factory=ApiSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("debug")
    @classmethod
    def validate_debug_mode(cls, v: bool, info) -> bool:
        """Ensure debug mode is disabled in production."""
        if info.data.get("environment") == "production" and v:
            raise ValueError("Debug mode must be disabled in production")
        return v

    @model_validator(mode="after")
    def validate_default_model_priced(self) -> "Settings":
        if self.upstream.default_model not in self.billing.model_pricing:
            raise ValueError(
                f"Default model {self.upstream.default_model} has no entry in the pricing table"
            )
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        return self.environment == "development"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Singleton factory for global settings access.

    Returns:
        Settings: Validated settings instance
    """
    return Settings()


settings = get_settings()

__all__ = [
    "DEFAULT_MODEL",
    "Settings",
    "DatabaseSettings",
    "RedisSettings",
    "UpstreamSettings",
    "BillingSettings",
    "AnalyticsSettings",
    "ApiSettings",
    "MonitoringSettings",
    "get_settings",
    "settings",
]
