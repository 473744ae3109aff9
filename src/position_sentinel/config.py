"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
Position Sentinel application, loading and validating environment
variables at startup.

Risk thresholds, the snapshot staleness window and the alert debounce
window carry no defaults: a process that starts without them fails with a
``ValidationError`` instead of silently running on guessed numbers.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from position_sentinel.risk.classifier import (
    LiquidationThresholds,
    LpRangeThresholds,
    RedemptionThresholds,
)
from position_sentinel.risk.models import Tier

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


class ConfigError(ValueError):
    """Raised for configuration values that cannot be interpreted."""


def parse_chain_map(raw: str) -> dict[str, str]:
    """Parse ``FLR=https://a,XDC=https://b`` into ``{"FLR": ..., "XDC": ...}``."""
    result: dict[str, str] = {}
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        if "=" not in part:
            raise ConfigError(f"Invalid chain mapping entry {part!r} (expected CHAIN=URL)")
        chain_id, url = part.split("=", 1)
        chain_id = chain_id.strip().upper()
        url = url.strip()
        if not chain_id or not url:
            raise ConfigError(f"Invalid chain mapping entry {part!r} (expected CHAIN=URL)")
        if not url.startswith(("http://", "https://")):
            raise ConfigError(f"RPC URL for {chain_id} must be an HTTP(S) endpoint")
        result[chain_id] = url
    return result


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL (or SQLite for local runs) connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings (RPC result cache)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string; caching is disabled when unset",
    )
    cache_ttl_seconds: int = Field(
        default=300,
        alias="REDIS_CACHE_TTL_SECONDS",
        ge=1,
        description="Default TTL for cached RPC results",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None:
            return v
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class ChainSettings(BaseSettings):
    """Per-chain JSON-RPC endpoints."""

    model_config = SettingsConfigDict(env_prefix="CHAIN_", extra="ignore")

    rpc_urls_raw: str = Field(
        alias="CHAIN_RPC_URLS",
        description="Comma separated CHAIN=URL pairs, e.g. FLR=https://...,XDC=https://...",
    )
    fallback_rpc_urls_raw: str = Field(
        default="",
        alias="CHAIN_FALLBACK_RPC_URLS",
        description="Optional comma separated CHAIN=URL fallback endpoints",
    )
    max_requests_per_second: float = Field(
        default=10.0,
        alias="CHAIN_MAX_REQUESTS_PER_SECOND",
        gt=0,
        description="Client-side rate limit per endpoint",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        alias="CHAIN_REQUEST_TIMEOUT_SECONDS",
        gt=0,
        description="HTTP timeout for a single RPC request",
    )

    @field_validator("rpc_urls_raw")
    @classmethod
    def validate_rpc_urls(cls, v: str) -> str:
        """At least one chain must be configured and every entry must parse."""
        if not parse_chain_map(v):
            raise ValueError("CHAIN_RPC_URLS must configure at least one chain")
        return v

    @field_validator("fallback_rpc_urls_raw")
    @classmethod
    def validate_fallback_urls(cls, v: str) -> str:
        parse_chain_map(v)
        return v

    @property
    def rpc_urls(self) -> dict[str, str]:
        return parse_chain_map(self.rpc_urls_raw)

    @property
    def fallback_rpc_urls(self) -> dict[str, str]:
        return parse_chain_map(self.fallback_rpc_urls_raw)


class IndexerSettings(BaseSettings):
    """Chain log indexer settings."""

    model_config = SettingsConfigDict(env_prefix="INDEXER_", extra="ignore")

    window_blocks: int = Field(
        default=5_000,
        alias="INDEXER_WINDOW_BLOCKS",
        ge=1,
        description="Block range requested per eth_getLogs call",
    )
    confirmations: int = Field(
        default=0,
        alias="INDEXER_CONFIRMATIONS",
        ge=0,
        description="Blocks kept behind the chain head when scanning",
    )
    retry_max_attempts: int = Field(
        default=6,
        alias="INDEXER_RETRY_MAX_ATTEMPTS",
        ge=1,
        description="Maximum attempts for a throttled RPC call",
    )
    retry_base_delay_seconds: float = Field(
        default=0.6,
        alias="INDEXER_RETRY_BASE_DELAY_SECONDS",
        gt=0,
        description="First backoff delay; doubles on every retry",
    )
    retry_max_delay_seconds: float = Field(
        default=10.0,
        alias="INDEXER_RETRY_MAX_DELAY_SECONDS",
        gt=0,
        description="Cap for a single backoff delay",
    )
    retry_max_total_delay_seconds: float = Field(
        default=60.0,
        alias="INDEXER_RETRY_MAX_TOTAL_DELAY_SECONDS",
        gt=0,
        description="Cap for the summed backoff of one call",
    )
    window_pause_seconds: float = Field(
        default=0.0,
        alias="INDEXER_WINDOW_PAUSE_SECONDS",
        ge=0,
        description="Pause between consecutive windows to stay under provider quotas",
    )
    vault_beacon_names_raw: str = Field(
        default="",
        alias="INDEXER_VAULT_BEACON_NAMES",
        description="Comma separated beacon names to accept from VaultCreated events (empty = all)",
    )

    @property
    def vault_beacon_names(self) -> frozenset[str]:
        return frozenset(n.strip() for n in self.vault_beacon_names_raw.split(",") if n.strip())


class LiquidationSettings(BaseSettings):
    """Liquidation buffer cutoffs (fraction of price above the liquidation price)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    low_frac: float = Field(alias="LIQ_BUFFER_LOW_FRAC", description="Buffer at or above which risk is LOW")
    medium_frac: float = Field(alias="LIQ_BUFFER_MEDIUM_FRAC", description="Buffer at or above which risk is MEDIUM")
    high_frac: float = Field(alias="LIQ_BUFFER_HIGH_FRAC", description="Buffer at or above which risk is HIGH")

    @model_validator(mode="after")
    def validate_order(self) -> LiquidationSettings:
        if not (self.low_frac > self.medium_frac > self.high_frac >= 0):
            raise ValueError("LIQ_BUFFER cutoffs must satisfy LOW > MEDIUM > HIGH >= 0")
        return self

    def thresholds(self) -> LiquidationThresholds:
        return LiquidationThresholds(low=self.low_frac, medium=self.medium_frac, high=self.high_frac)


class RedemptionSettings(BaseSettings):
    """Redemption debt-ahead cutoffs (fraction of total branch debt)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    low_frac: float = Field(alias="REDEMP_DEBT_AHEAD_LOW_FRAC", description="Debt ahead at or above which risk is LOW")
    medium_frac: float = Field(
        alias="REDEMP_DEBT_AHEAD_MEDIUM_FRAC", description="Debt ahead at or above which risk is MEDIUM"
    )
    high_frac: float = Field(alias="REDEMP_DEBT_AHEAD_HIGH_FRAC", description="Debt ahead at or above which risk is HIGH")

    @model_validator(mode="after")
    def validate_order(self) -> RedemptionSettings:
        if not (1 >= self.low_frac > self.medium_frac > self.high_frac >= 0):
            raise ValueError("REDEMP_DEBT_AHEAD cutoffs must satisfy 1 >= LOW > MEDIUM > HIGH >= 0")
        return self

    def thresholds(self) -> RedemptionThresholds:
        return RedemptionThresholds(low=self.low_frac, medium=self.medium_frac, high=self.high_frac)


class LpRangeSettings(BaseSettings):
    """Liquidity range cutoffs (fractions of the range width)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    edge_warn_frac: float = Field(alias="LP_EDGE_WARN_FRAC", description="In-range center distance for MEDIUM")
    edge_high_frac: float = Field(alias="LP_EDGE_HIGH_FRAC", description="In-range center distance for HIGH")
    out_warn_frac: float = Field(alias="LP_OUT_WARN_FRAC", description="Out-of-range distance still MEDIUM")
    out_high_frac: float = Field(alias="LP_OUT_HIGH_FRAC", description="Out-of-range distance still HIGH")

    @model_validator(mode="after")
    def validate_order(self) -> LpRangeSettings:
        if not (0.5 >= self.edge_warn_frac > self.edge_high_frac >= 0):
            raise ValueError("LP edge cutoffs must satisfy 0.5 >= LP_EDGE_WARN_FRAC > LP_EDGE_HIGH_FRAC >= 0")
        if not (0 <= self.out_warn_frac < self.out_high_frac):
            raise ValueError("LP out cutoffs must satisfy 0 <= LP_OUT_WARN_FRAC < LP_OUT_HIGH_FRAC")
        return self

    def thresholds(self) -> LpRangeThresholds:
        return LpRangeThresholds(
            edge_warn=self.edge_warn_frac,
            edge_high=self.edge_high_frac,
            out_warn=self.out_warn_frac,
            out_high=self.out_high_frac,
        )


class AlertSettings(BaseSettings):
    """Alert lifecycle settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    debounce_seconds: float = Field(
        alias="ALERT_DEBOUNCE_SECONDS",
        ge=0,
        description="Minimum age of the previous signature change before an UPDATED is emitted",
    )
    liquidation_min_tier: Tier = Field(
        default=Tier.HIGH,
        alias="LIQ_ALERT_MIN_TIER",
        description="Liquidation tier that opens a loan alert",
    )
    redemption_min_tier: Tier = Field(
        default=Tier.HIGH,
        alias="REDEMP_ALERT_MIN_TIER",
        description="Redemption tier that opens a loan alert",
    )
    lp_min_tier: Tier = Field(
        default=Tier.MEDIUM,
        alias="LP_ALERT_MIN_TIER",
        description="Range tier that opens an out-of-range alert",
    )
    notify_on_resolve: bool = Field(
        default=False,
        alias="ALERT_NOTIFY_ON_RESOLVE",
        description="Also push a notification when an alert resolves",
    )

    @field_validator("liquidation_min_tier", "redemption_min_tier", "lp_min_tier")
    @classmethod
    def validate_min_tier(cls, v: Tier) -> Tier:
        if v == Tier.UNKNOWN:
            raise ValueError("Alert minimum tier cannot be UNKNOWN")
        return v


class RefreshSettings(BaseSettings):
    """Snapshot staleness and cross-process lock settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    snapshot_stale_minutes: float = Field(
        alias="SNAPSHOT_STALE_MINUTES",
        gt=0,
        description="Maximum age of cached snapshots before a refresh is attempted",
    )
    lock_dir: str = Field(
        default="locks",
        alias="LOCK_DIR",
        description="Directory holding named lock marker files",
    )
    lock_stale_minutes: float = Field(
        default=30.0,
        alias="LOCK_STALE_MINUTES",
        gt=0,
        description="Age after which a lock marker is reclaimed even if its owner is alive",
    )
    debt_ahead_max_walk: int = Field(
        default=2_000,
        alias="LOAN_DEBT_AHEAD_MAX_WALK",
        ge=1,
        description="Maximum troves walked when computing redemption debt-ahead",
    )


class MonitorSettings(BaseSettings):
    """Periodic monitoring cycle settings."""

    model_config = SettingsConfigDict(env_prefix="MONITOR_", extra="ignore")

    interval_seconds: float = Field(
        default=300.0,
        alias="MONITOR_INTERVAL_SECONDS",
        gt=0,
        description="Seconds between scheduled cycles",
    )
    jitter_seconds: float = Field(
        default=60.0,
        alias="MONITOR_JITTER_SECONDS",
        ge=0,
        description="Upper bound of the random delay applied before each scheduled cycle",
    )


class HeartbeatSettings(BaseSettings):
    """Daily digest DM settings."""

    model_config = SettingsConfigDict(env_prefix="HEARTBEAT_", extra="ignore")

    enabled: bool = Field(
        default=False,
        alias="HEARTBEAT_ENABLED",
        description="Send the daily position digest while the monitor runs",
    )
    hour_utc: int = Field(
        default=9,
        alias="HEARTBEAT_HOUR_UTC",
        ge=0,
        le=23,
        description="Hour of the day (UTC) at which the digest is sent",
    )


class DiscordSettings(BaseSettings):
    """Discord direct-message delivery settings."""

    model_config = SettingsConfigDict(env_prefix="DISCORD_", extra="ignore")

    bot_token: SecretStr | None = Field(
        default=None,
        alias="DISCORD_BOT_TOKEN",
        description="Bot token used to open DM channels",
    )
    api_base_url: str = Field(
        default="https://discord.com/api/v10",
        alias="DISCORD_API_BASE_URL",
        description="Discord REST API base URL",
    )
    request_timeout_seconds: float = Field(
        default=10.0,
        alias="DISCORD_REQUEST_TIMEOUT_SECONDS",
        gt=0,
    )
    inter_message_delay_seconds: float = Field(
        default=0.35,
        alias="DISCORD_INTER_MESSAGE_DELAY_SECONDS",
        ge=0,
        description="Pause between chunks of one long message",
    )

    @property
    def enabled(self) -> bool:
        """Check if Discord delivery is configured."""
        return self.bot_token is not None


class Settings(BaseSettings):
    """Root application settings.

    Example:
        ```python
        settings = get_settings()
        print(settings.chain.rpc_urls)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

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
    chain: ChainSettings = Field(
        default_factory=lambda: ChainSettings(
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
    liquidation: LiquidationSettings = Field(
        default_factory=lambda: LiquidationSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redemption: RedemptionSettings = Field(
        default_factory=lambda: RedemptionSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    lp_range: LpRangeSettings = Field(
        default_factory=lambda: LpRangeSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    alerts: AlertSettings = Field(
        default_factory=lambda: AlertSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    refresh: RefreshSettings = Field(
        default_factory=lambda: RefreshSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    monitor: MonitorSettings = Field(
        default_factory=lambda: MonitorSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    heartbeat: HeartbeatSettings = Field(
        default_factory=lambda: HeartbeatSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    discord: DiscordSettings = Field(
        default_factory=lambda: DiscordSettings(
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
    dry_run: bool = Field(
        default=False,
        alias="DRY_RUN",
        description="Log notifications instead of delivering them",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "chains": {chain_id: self._redact_url(url) for chain_id, url in self.chain.rpc_urls.items()},
            "indexer": {
                "window_blocks": str(self.indexer.window_blocks),
                "retry_max_attempts": str(self.indexer.retry_max_attempts),
                "confirmations": str(self.indexer.confirmations),
            },
            "thresholds": {
                "liq_buffer": (
                    f"{self.liquidation.low_frac}/{self.liquidation.medium_frac}/{self.liquidation.high_frac}"
                ),
                "redemp_debt_ahead": (
                    f"{self.redemption.low_frac}/{self.redemption.medium_frac}/{self.redemption.high_frac}"
                ),
                "lp_edge": f"{self.lp_range.edge_warn_frac}/{self.lp_range.edge_high_frac}",
                "lp_out": f"{self.lp_range.out_warn_frac}/{self.lp_range.out_high_frac}",
            },
            "alerts": {
                "debounce_seconds": str(self.alerts.debounce_seconds),
                "liq_min_tier": self.alerts.liquidation_min_tier.value,
                "redemp_min_tier": self.alerts.redemption_min_tier.value,
                "lp_min_tier": self.alerts.lp_min_tier.value,
            },
            "snapshot_stale_minutes": str(self.refresh.snapshot_stale_minutes),
            "monitor_interval_seconds": str(self.monitor.interval_seconds),
            "heartbeat": (f"{self.heartbeat.hour_utc:02d}:00 UTC" if self.heartbeat.enabled else "disabled"),
            "discord_enabled": str(self.discord.enabled),
            "log_level": self.log_level,
            "dry_run": str(self.dry_run),
        }

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
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
