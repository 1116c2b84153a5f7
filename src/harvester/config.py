"""Configuration system using pydantic-settings with environment variable loading."""

from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class ExchangeSettings(BaseSettings):
    """Binance USD-M futures connection settings."""

    model_config = SettingsConfigDict(env_prefix="BINANCE_")

    api_key: SecretStr = SecretStr("")
    base_url: str = "https://fapi.binance.com"
    timeout_seconds: float = Field(default=60.0, gt=0)


class IngestionSettings(BaseSettings):
    """Ingestion engine parameters.

    Page limits and the weight budget mirror Binance's documented maximums for
    /fapi/v1/klines (1500 rows), /fapi/v1/historicalTrades (1000 rows) and the
    per-IP request weight window (1200 per minute).
    All fields configurable via INGEST_ environment variable prefix.
    """

    model_config = SettingsConfigDict(env_prefix="INGEST_")

    symbols: list[str] = []
    kinds: list[Literal["candles", "trades"]] = ["candles"]

    candle_page_limit: int = Field(default=1500, ge=1, le=1500)
    trade_page_limit: int = Field(default=1000, ge=1, le=1000)

    # Budget governor
    max_weight: int = Field(default=1200, ge=1)
    pacing_delay: float = Field(default=0.5, ge=0)  # seconds between requests while weight is in use

    # Transient network retry
    max_retries: int = Field(default=5, ge=1)  # attempts, including the first
    retry_base_delay: float = Field(default=1.0, ge=0)

    # Where a symbol with no checkpoint starts
    start_time_ms: int = Field(default=0, ge=0)
    start_trade_id: int = Field(default=0, ge=0)

    # Runner
    poll_interval: float = Field(default=60.0, ge=0)
    ban_backoff_seconds: float = Field(default=300.0, ge=0)


class StorageSettings(BaseSettings):
    """SQLite storage location."""

    model_config = SettingsConfigDict(env_prefix="STORAGE_")

    db_path: str = "data/market.db"


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    exchange: ExchangeSettings = ExchangeSettings()
    ingestion: IngestionSettings = IngestionSettings()
    storage: StorageSettings = StorageSettings()
