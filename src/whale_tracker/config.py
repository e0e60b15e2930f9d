"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
Whale Tracker indexer, loading and validating environment variables
at startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from whale_tracker.errors import ConfigurationError
from whale_tracker.models import Chain, Thresholds

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


def _validate_http_url(v: str | None) -> str | None:
    if v is None:
        return v
    if not v.startswith(("http://", "https://")):
        raise ValueError("RPC URL must be an HTTP(S) endpoint")
    return v


class DatabaseSettings(BaseSettings):
    """Event store connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="sqlite+aiosqlite:///./data/whale-events.db",
        alias="DATABASE_URL",
        description="SQLite or PostgreSQL connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("sqlite", "postgresql://", "postgresql+asyncpg://")):
            raise ValueError("DATABASE_URL must be a SQLite or PostgreSQL connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings (optional block cache)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string; block caching is disabled when unset",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is not None and not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class ChainSettings(BaseSettings):
    """Per-chain RPC endpoints."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    eth_rpc_url: str = Field(
        default="https://eth.drpc.org",
        alias="ETH_RPC_URL",
        description="Primary Ethereum RPC endpoint",
    )
    eth_fallback_rpc_url: str | None = Field(
        default=None,
        alias="ETH_FALLBACK_RPC_URL",
        description="Fallback Ethereum RPC endpoint",
    )
    base_rpc_url: str = Field(
        default="https://mainnet.base.org",
        alias="BASE_RPC_URL",
        description="Primary Base RPC endpoint",
    )
    base_fallback_rpc_url: str | None = Field(
        default=None,
        alias="BASE_FALLBACK_RPC_URL",
        description="Fallback Base RPC endpoint",
    )
    solana_rpc_url: str | None = Field(
        default=None,
        alias="SOLANA_RPC_URL",
        description="Solana RPC endpoint (not supported by the EVM indexer)",
    )

    @field_validator(
        "eth_rpc_url",
        "eth_fallback_rpc_url",
        "base_rpc_url",
        "base_fallback_rpc_url",
        "solana_rpc_url",
    )
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        return _validate_http_url(v)

    def rpc_url_for(self, chain: Chain) -> str:
        """Resolve the primary RPC endpoint for a chain.

        Raises:
            ConfigurationError: If the chain has no usable endpoint.
        """
        if chain == Chain.ETHEREUM:
            return self.eth_rpc_url
        if chain == Chain.BASE:
            return self.base_rpc_url
        raise ConfigurationError(f"Chain {chain.value} has no supported RPC endpoint")

    def fallback_rpc_url_for(self, chain: Chain) -> str | None:
        if chain == Chain.ETHEREUM:
            return self.eth_fallback_rpc_url
        if chain == Chain.BASE:
            return self.base_fallback_rpc_url
        return None


class ThresholdSettings(BaseSettings):
    """USD thresholds for significance classification."""

    model_config = SettingsConfigDict(env_prefix="SIGNIFICANCE_", extra="ignore")

    high: float = Field(
        default=1_000_000.0,
        alias="SIGNIFICANCE_HIGH_USD",
        ge=0.0,
        description="Minimum USD value for 'high' significance",
    )
    medium: float = Field(
        default=100_000.0,
        alias="SIGNIFICANCE_MEDIUM_USD",
        ge=0.0,
        description="Minimum USD value for 'medium' significance",
    )
    low: float = Field(
        default=10_000.0,
        alias="SIGNIFICANCE_LOW_USD",
        ge=0.0,
        description="Minimum USD value for 'low' significance (admission bar)",
    )

    @model_validator(mode="after")
    def validate_ordering(self) -> ThresholdSettings:
        if not (self.low <= self.medium <= self.high):
            raise ValueError("significance thresholds must satisfy low <= medium <= high")
        return self

    def to_thresholds(self) -> Thresholds:
        return Thresholds(high=self.high, medium=self.medium, low=self.low)


class IndexerSettings(BaseSettings):
    """Indexer poll loop settings."""

    model_config = SettingsConfigDict(env_prefix="INDEXER_", extra="ignore")

    chain: Chain = Field(
        default=Chain.ETHEREUM,
        alias="INDEXER_CHAIN",
        description="Chain to index",
    )
    poll_interval_seconds: float = Field(
        default=15.0,
        alias="INDEXER_POLL_INTERVAL_SECONDS",
        gt=0.0,
        le=3600.0,
        description="Delay between poll iterations",
    )
    price_refresh_polls: int = Field(
        default=10,
        alias="INDEXER_PRICE_REFRESH_POLLS",
        ge=1,
        le=10_000,
        description="Refresh the native asset price every N polls",
    )
    min_value_usd: float | None = Field(
        default=None,
        alias="INDEXER_MIN_VALUE_USD",
        ge=0.0,
        description="Minimum transfer value to emit an event (defaults to the low threshold)",
    )
    native_price_fallback_usd: float | None = Field(
        default=None,
        alias="INDEXER_NATIVE_PRICE_FALLBACK_USD",
        gt=0.0,
        description="Native price to assume when no price has ever been fetched",
    )


class PriceSettings(BaseSettings):
    """Price oracle (CoinGecko) settings."""

    model_config = SettingsConfigDict(env_prefix="PRICE_", extra="ignore")

    coingecko_base_url: str = Field(
        default="https://api.coingecko.com/api/v3",
        alias="PRICE_COINGECKO_BASE_URL",
        description="CoinGecko API base URL",
    )
    cache_ttl_seconds: float = Field(
        default=60.0,
        alias="PRICE_CACHE_TTL_SECONDS",
        gt=0.0,
        le=86_400.0,
        description="How long a fetched price stays fresh",
    )
    request_timeout_seconds: float = Field(
        default=10.0,
        alias="PRICE_REQUEST_TIMEOUT_SECONDS",
        gt=0.0,
        le=300.0,
        description="HTTP timeout for price requests",
    )

    @field_validator("coingecko_base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("PRICE_COINGECKO_BASE_URL must be an HTTP(S) endpoint")
        return v.rstrip("/")


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from whale_tracker.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.indexer.chain)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    chains: ChainSettings = Field(
        default_factory=lambda: ChainSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    thresholds: ThresholdSettings = Field(
        default_factory=lambda: ThresholdSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    indexer: IndexerSettings = Field(
        default_factory=lambda: IndexerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    price: PriceSettings = Field(
        default_factory=lambda: PriceSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    # Application settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    seed_default_wallets: bool = Field(
        default=True,
        alias="SEED_DEFAULT_WALLETS",
        description="Seed the in-memory registry with well-known whale wallets",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    @property
    def min_value_usd(self) -> float:
        """Effective admission bar: explicit override or the low threshold."""
        if self.indexer.min_value_usd is not None:
            return self.indexer.min_value_usd
        return self.thresholds.low

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "chains": {
                "eth_rpc_url": self._redact_url(self.chains.eth_rpc_url),
                "eth_fallback_rpc_url": (
                    self._redact_url(self.chains.eth_fallback_rpc_url)
                    if self.chains.eth_fallback_rpc_url
                    else "(not set)"
                ),
                "base_rpc_url": self._redact_url(self.chains.base_rpc_url),
                "base_fallback_rpc_url": (
                    self._redact_url(self.chains.base_fallback_rpc_url)
                    if self.chains.base_fallback_rpc_url
                    else "(not set)"
                ),
            },
            "thresholds": {
                "high": str(self.thresholds.high),
                "medium": str(self.thresholds.medium),
                "low": str(self.thresholds.low),
            },
            "indexer": {
                "chain": self.indexer.chain.value,
                "poll_interval_seconds": str(self.indexer.poll_interval_seconds),
                "price_refresh_polls": str(self.indexer.price_refresh_polls),
                "min_value_usd": str(self.min_value_usd),
            },
            "price": {
                "coingecko_base_url": self.price.coingecko_base_url,
                "cache_ttl_seconds": str(self.price.cache_ttl_seconds),
            },
            "log_level": self.log_level,
            "seed_default_wallets": str(self.seed_default_wallets),
        }

    def validate_requirements(self) -> None:
        """Validate that the configured chain can actually be indexed.

        Raises:
            ConfigurationError: If the indexer must refuse to run.
        """
        self.chains.rpc_url_for(self.indexer.chain)

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            # URL has credentials - redact the password
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Uses LRU cache to ensure settings are loaded only once and
    reused across the application.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If environment variables have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
