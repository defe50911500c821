"""Configuration system using pydantic-settings with environment variable loading."""

from decimal import Decimal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from rounds.models import RoundType


DEFAULT_BETTING_WINDOWS_MS: dict[RoundType, int] = {
    RoundType.ONE_MINUTE: 10 * 1000,
    RoundType.SIX_HOUR: 60 * 1000,
    RoundType.ONE_DAY: 10 * 60 * 1000,
}


class RoundSettings(BaseSettings):
    """Round cadence: default round type, start-hour grid and betting windows."""

    model_config = SettingsConfigDict(env_prefix="ROUND_")

    default_type: RoundType = RoundType.SIX_HOUR
    start_hours_utc: list[int] = [5, 11, 17, 23]  # 02/08/14/20 KST
    creation_lead_time_ms: int = 10 * 60 * 1000  # create 10 min before start
    betting_windows_ms: dict[RoundType, int] = dict(DEFAULT_BETTING_WINDOWS_MS)

    @field_validator("start_hours_utc")
    @classmethod
    def _sorted_hours(cls, value: list[int]) -> list[int]:
        if not value:
            raise ValueError("start_hours_utc must not be empty")
        if any(h < 0 or h > 23 for h in value):
            raise ValueError("start_hours_utc entries must be within 0..23")
        return sorted(set(value))

    @field_validator("betting_windows_ms")
    @classmethod
    def _merge_windows(cls, value: dict[RoundType, int]) -> dict[RoundType, int]:
        """Overrides may name only some round types; the rest keep their defaults."""
        if any(ms <= 0 for ms in value.values()):
            raise ValueError("betting windows must be positive")
        return {**DEFAULT_BETTING_WINDOWS_MS, **value}

    def betting_window_ms(self, round_type: RoundType) -> int:
        """Betting window for a round type (time after start during which lock falls)."""
        return self.betting_windows_ms[round_type]


class SettlementSettings(BaseSettings):
    """Settlement parameters."""

    model_config = SettingsConfigDict(env_prefix="SETTLEMENT_")

    platform_fee_rate: Decimal = Decimal("0.05")  # 5% of the total pool

    @field_validator("platform_fee_rate")
    @classmethod
    def _clamp_fee_rate(cls, value: Decimal) -> Decimal:
        return min(max(value, Decimal("0")), Decimal("1"))


class RecoverySettings(BaseSettings):
    """Stuck-round recovery thresholds.

    A CALCULATING round younger than retry_start_threshold_ms is left alone,
    one between the two thresholds is retried, and one older than
    alert_threshold_ms is escalated once and never retried again.
    """

    model_config = SettingsConfigDict(env_prefix="RECOVERY_")

    retry_start_threshold_ms: int = 10 * 60 * 1000
    alert_threshold_ms: int = 30 * 60 * 1000

    @model_validator(mode="after")
    def _ordered_thresholds(self) -> "RecoverySettings":
        if self.alert_threshold_ms < self.retry_start_threshold_ms:
            raise ValueError("alert_threshold_ms must be >= retry_start_threshold_ms")
        return self


class CronSettings(BaseSettings):
    """Job runner retry policy. The round engine itself never reads these."""

    model_config = SettingsConfigDict(env_prefix="CRON_")

    retry_count: int = 3
    retry_delay_ms: int = 5000


class PriceFeedSettings(BaseSettings):
    """Price snapshot source (ccxt exchange and symbols)."""

    model_config = SettingsConfigDict(env_prefix="PRICE_")

    exchange_id: str = "binance"
    gold_symbol: str = "PAXG/USDT"  # tokenized gold as the gold price proxy
    btc_symbol: str = "BTC/USDT"
    timeout_ms: int = 5000
    max_age_ms: int = 60 * 1000  # reject tickers older than this


class DatabaseSettings(BaseSettings):
    """SQLite storage location."""

    model_config = SettingsConfigDict(env_prefix="DATABASE_")

    path: str = "data/rounds.db"


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    log_format: str = "console"  # LOG_FORMAT=json for machine-readable lines
    rounds: RoundSettings = RoundSettings()
    settlement: SettlementSettings = SettlementSettings()
    recovery: RecoverySettings = RecoverySettings()
    cron: CronSettings = CronSettings()
    prices: PriceFeedSettings = PriceFeedSettings()
    database: DatabaseSettings = DatabaseSettings()
