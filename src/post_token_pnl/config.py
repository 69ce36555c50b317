"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
post token PnL analyzer, loading and validating environment variables
at startup.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from web3 import AsyncWeb3

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


def _validate_http_url(v: str | None) -> str | None:
    if v is None:
        return v
    if not v.startswith(("http://", "https://")):
        raise ValueError("URL must be an HTTP(S) endpoint")
    return v.rstrip("/")


def _validate_address(v: str) -> str:
    if not AsyncWeb3.is_address(v):
        raise ValueError(f"Invalid EVM address: {v}")
    return v


class ChainSettings(BaseSettings):
    """Base network JSON-RPC settings."""

    model_config = SettingsConfigDict(env_prefix="BASE_", extra="ignore")

    rpc_url: str = Field(
        default="https://mainnet.base.org",
        alias="BASE_RPC_URL",
        description="Primary Base RPC endpoint",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="BASE_FALLBACK_RPC_URL",
        description="Fallback Base RPC endpoint",
    )
    chain_id: int = Field(
        default=8453,
        alias="BASE_CHAIN_ID",
        description="Chain ID (Base mainnet=8453)",
    )
    max_requests_per_second: float = Field(
        default=25.0,
        alias="BASE_MAX_REQUESTS_PER_SECOND",
        gt=0.0,
        le=1000.0,
        description="Token-bucket rate limit for RPC calls",
    )
    max_retries: int = Field(
        default=3,
        alias="BASE_MAX_RETRIES",
        ge=1,
        le=10,
        description="Attempts per RPC endpoint before failing over",
    )
    retry_delay_seconds: float = Field(
        default=1.0,
        alias="BASE_RETRY_DELAY_SECONDS",
        ge=0.0,
        le=60.0,
        description="Initial backoff between RPC retries",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        alias="BASE_REQUEST_TIMEOUT_SECONDS",
        gt=0.0,
        le=300.0,
        description="HTTP timeout for a single RPC request",
    )

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        return _validate_http_url(v)


class PoolSettings(BaseSettings):
    """Uniswap v4 pool discovery settings."""

    model_config = SettingsConfigDict(env_prefix="POOL_", extra="ignore")

    pool_manager_address: str = Field(
        default="0xA5B4F34780D948b571E676C34aB709D3AcA0498D",
        alias="POOL_MANAGER_ADDRESS",
        description="Uniswap v4 PoolManager contract (emits Initialize events)",
    )
    state_view_address: str = Field(
        default="0x43F150e8e18cB95A0c1Fb2176A6531864d618C39",
        alias="POOL_STATE_VIEW_ADDRESS",
        description="Uniswap v4 StateView contract (getSlot0/getLiquidity)",
    )
    wrapped_native_address: str = Field(
        default="0x4200000000000000000000000000000000000006",
        alias="POOL_WRAPPED_NATIVE_ADDRESS",
        description="WETH on Base",
    )
    scan_window_blocks: int = Field(
        default=1_000_000,
        alias="POOL_SCAN_WINDOW_BLOCKS",
        ge=1000,
        le=50_000_000,
        description="How many recent blocks to scan for Initialize events",
    )
    logs_chunk_size_blocks: int = Field(
        default=50_000,
        alias="POOL_LOGS_CHUNK_SIZE_BLOCKS",
        ge=1000,
        le=500_000,
        description="Block chunk size for eth_getLogs scans",
    )

    @field_validator("pool_manager_address", "state_view_address", "wrapped_native_address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        return _validate_address(v)


class ProvenanceSettings(BaseSettings):
    """Platform-origin classification settings."""

    model_config = SettingsConfigDict(env_prefix="PROVENANCE_", extra="ignore")

    platform_referrer: str = Field(
        default="0x000000000000000000000000000000000000bA5e",
        alias="PROVENANCE_PLATFORM_REFERRER",
        description="platformReferrer() value stamped on platform-issued coins",
    )
    max_retries: int = Field(
        default=2,
        alias="PROVENANCE_MAX_RETRIES",
        ge=0,
        le=10,
        description="Retries for a failed bytecode read",
    )
    retry_base_delay_seconds: float = Field(
        default=1.0,
        alias="PROVENANCE_RETRY_BASE_DELAY_SECONDS",
        ge=0.0,
        le=30.0,
        description="Base delay for exponential backoff between bytecode retries",
    )
    batch_size: int = Field(
        default=5,
        alias="PROVENANCE_BATCH_SIZE",
        ge=1,
        le=100,
        description="Tokens classified concurrently per batch",
    )
    batch_delay_seconds: float = Field(
        default=0.2,
        alias="PROVENANCE_BATCH_DELAY_SECONDS",
        ge=0.0,
        le=30.0,
        description="Pause between classification batches",
    )
    bytecode_timeout_seconds: float = Field(
        default=10.0,
        alias="PROVENANCE_BYTECODE_TIMEOUT_SECONDS",
        gt=0.0,
        le=120.0,
        description="Per-token timeout for the bytecode check",
    )
    referrer_timeout_seconds: float = Field(
        default=5.0,
        alias="PROVENANCE_REFERRER_TIMEOUT_SECONDS",
        gt=0.0,
        le=120.0,
        description="Per-token timeout for the platformReferrer() read",
    )
    pool_timeout_seconds: float = Field(
        default=8.0,
        alias="PROVENANCE_POOL_TIMEOUT_SECONDS",
        gt=0.0,
        le=300.0,
        description="Per-token timeout for pool-based verification",
    )
    degraded_network: bool = Field(
        default=False,
        alias="PROVENANCE_DEGRADED_NETWORK",
        description="Use smaller batches and longer timeouts on slow links",
    )
    degraded_batch_size: int = Field(
        default=3,
        alias="PROVENANCE_DEGRADED_BATCH_SIZE",
        ge=1,
        le=100,
    )
    degraded_batch_delay_seconds: float = Field(
        default=0.5,
        alias="PROVENANCE_DEGRADED_BATCH_DELAY_SECONDS",
        ge=0.0,
        le=30.0,
    )
    degraded_bytecode_timeout_seconds: float = Field(
        default=15.0,
        alias="PROVENANCE_DEGRADED_BYTECODE_TIMEOUT_SECONDS",
        gt=0.0,
        le=120.0,
    )
    verify_matches: bool = Field(
        default=True,
        alias="PROVENANCE_VERIFY_MATCHES",
        description="Cross-check bytecode matches with platformReferrer() (log only)",
    )
    fallback_inconclusive_ratio: float = Field(
        default=0.5,
        alias="PROVENANCE_FALLBACK_INCONCLUSIVE_RATIO",
        ge=0.0,
        le=1.0,
        description="Run fallback tiers when this share of bytecode reads failed",
    )

    @field_validator("platform_referrer")
    @classmethod
    def validate_referrer(cls, v: str) -> str:
        return _validate_address(v)

    @property
    def effective_batch_size(self) -> int:
        return self.degraded_batch_size if self.degraded_network else self.batch_size

    @property
    def effective_batch_delay_seconds(self) -> float:
        if self.degraded_network:
            return self.degraded_batch_delay_seconds
        return self.batch_delay_seconds

    @property
    def effective_bytecode_timeout_seconds(self) -> float:
        if self.degraded_network:
            return self.degraded_bytecode_timeout_seconds
        return self.bytecode_timeout_seconds


class PriceSettings(BaseSettings):
    """Price source settings (aggregators and the native/USD rate)."""

    model_config = SettingsConfigDict(env_prefix="PRICE_", extra="ignore")

    dexscreener_base_url: str = Field(
        default="https://api.dexscreener.com",
        alias="PRICE_DEXSCREENER_BASE_URL",
        description="DexScreener API host",
    )
    dexscreener_chain_id: str = Field(
        default="base",
        alias="PRICE_DEXSCREENER_CHAIN_ID",
        description="DexScreener chain identifier",
    )
    dexscreener_batch_size: int = Field(
        default=10,
        alias="PRICE_DEXSCREENER_BATCH_SIZE",
        ge=1,
        le=30,
        description="Addresses per DexScreener batch request (API max 30)",
    )
    coingecko_base_url: str = Field(
        default="https://api.coingecko.com/api/v3",
        alias="PRICE_COINGECKO_BASE_URL",
        description="CoinGecko API base URL",
    )
    coingecko_api_key: SecretStr | None = Field(
        default=None,
        alias="PRICE_COINGECKO_API_KEY",
        description="Optional CoinGecko demo API key",
    )
    coingecko_platform: str = Field(
        default="base",
        alias="PRICE_COINGECKO_PLATFORM",
        description="CoinGecko asset platform id for token prices",
    )
    native_coin_id: str = Field(
        default="ethereum",
        alias="PRICE_NATIVE_COIN_ID",
        description="CoinGecko coin id of the native currency",
    )
    fallback_native_usd: Decimal = Field(
        default=Decimal("3000"),
        alias="PRICE_FALLBACK_NATIVE_USD",
        description="Native/USD rate used when the live rate is unavailable",
    )
    pool_timeout_seconds: float = Field(
        default=20.0,
        alias="PRICE_POOL_TIMEOUT_SECONDS",
        gt=0.0,
        le=300.0,
    )
    http_timeout_seconds: float = Field(
        default=10.0,
        alias="PRICE_HTTP_TIMEOUT_SECONDS",
        gt=0.0,
        le=120.0,
    )
    max_requests_per_second: float = Field(
        default=5.0,
        alias="PRICE_MAX_REQUESTS_PER_SECOND",
        gt=0.0,
        le=100.0,
        description="Rate limit shared by aggregator HTTP calls",
    )

    @field_validator("dexscreener_base_url", "coingecko_base_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate API URL format."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("Price API URL must be an HTTP(S) endpoint")
        return v.rstrip("/")

    @field_validator("fallback_native_usd")
    @classmethod
    def validate_fallback_native_usd(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("PRICE_FALLBACK_NATIVE_USD must be > 0")
        return v


class ReconstructionSettings(BaseSettings):
    """Matching windows for pairing token transfers with native payments."""

    model_config = SettingsConfigDict(env_prefix="RECONSTRUCTION_", extra="ignore")

    buy_block_offset: int = Field(
        default=3,
        alias="RECONSTRUCTION_BUY_BLOCK_OFFSET",
        ge=0,
        le=1000,
    )
    buy_time_window_seconds: int = Field(
        default=60,
        alias="RECONSTRUCTION_BUY_TIME_WINDOW_SECONDS",
        ge=0,
        le=86_400,
    )
    sell_block_offset: int = Field(
        default=5,
        alias="RECONSTRUCTION_SELL_BLOCK_OFFSET",
        ge=0,
        le=1000,
    )
    sell_time_window_seconds: int = Field(
        default=120,
        alias="RECONSTRUCTION_SELL_TIME_WINDOW_SECONDS",
        ge=0,
        le=86_400,
    )


class AnalysisSettings(BaseSettings):
    """Per-token analysis fan-out settings."""

    model_config = SettingsConfigDict(env_prefix="ANALYSIS_", extra="ignore")

    batch_size: int = Field(
        default=3,
        alias="ANALYSIS_BATCH_SIZE",
        ge=1,
        le=100,
        description="Tokens analyzed concurrently per batch",
    )
    batch_delay_seconds: float = Field(
        default=0.0,
        alias="ANALYSIS_BATCH_DELAY_SECONDS",
        ge=0.0,
        le=30.0,
    )
    price_batch_size: int = Field(
        default=10,
        alias="ANALYSIS_PRICE_BATCH_SIZE",
        ge=1,
        le=100,
        description="Tokens priced concurrently per batch",
    )

    # Degraded-network mode is switched on by PROVENANCE_DEGRADED_NETWORK and
    # also caps the per-token and pricing fan-out.
    def effective_batch_size(self, provenance: ProvenanceSettings) -> int:
        if provenance.degraded_network:
            return min(self.batch_size, provenance.degraded_batch_size)
        return self.batch_size

    def effective_batch_delay_seconds(self, provenance: ProvenanceSettings) -> float:
        if provenance.degraded_network:
            return max(self.batch_delay_seconds, provenance.degraded_batch_delay_seconds)
        return self.batch_delay_seconds

    def effective_price_batch_size(self, provenance: ProvenanceSettings) -> int:
        if provenance.degraded_network:
            return min(self.price_batch_size, provenance.degraded_batch_size)
        return self.price_batch_size


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files.

    Example:
        ```python
        from post_token_pnl.config import get_settings

        settings = get_settings()
        print(settings.chain.rpc_url)
        print(settings.log_level)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    chain: ChainSettings = Field(
        default_factory=lambda: ChainSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    pool: PoolSettings = Field(
        default_factory=lambda: PoolSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    provenance: ProvenanceSettings = Field(
        default_factory=lambda: ProvenanceSettings(
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
    reconstruction: ReconstructionSettings = Field(
        default_factory=lambda: ReconstructionSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    analysis: AnalysisSettings = Field(
        default_factory=lambda: AnalysisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted."""
        return {
            "chain": {
                "rpc_url": self.chain.rpc_url,
                "fallback_rpc_url": self.chain.fallback_rpc_url or "(not set)",
                "chain_id": str(self.chain.chain_id),
            },
            "pool": {
                "pool_manager_address": self.pool.pool_manager_address,
                "state_view_address": self.pool.state_view_address,
                "scan_window_blocks": str(self.pool.scan_window_blocks),
            },
            "provenance": {
                "platform_referrer": self.provenance.platform_referrer,
                "degraded_network": str(self.provenance.degraded_network),
            },
            "price": {
                "dexscreener_base_url": self.price.dexscreener_base_url,
                "coingecko_base_url": self.price.coingecko_base_url,
                "coingecko_api_key": "(set)" if self.price.coingecko_api_key else "(not set)",
                "fallback_native_usd": str(self.price.fallback_native_usd),
            },
            "log_level": self.log_level,
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

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
