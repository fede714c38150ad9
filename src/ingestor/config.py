"""Configuration system using pydantic-settings with environment variable loading."""

from datetime import date

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from ingestor.models import Granularity


class ExchangeSettings(BaseSettings):
    """Exchange connection settings passed through to ccxt."""

    model_config = SettingsConfigDict(env_prefix="EXCHANGE_")

    exchange_id: str = "coinbaseexchange"
    api_key: SecretStr = SecretStr("")
    api_secret: SecretStr = SecretStr("")
    passphrase: SecretStr = SecretStr("")
    sandbox: bool = False


class IngestSettings(BaseSettings):
    """Backfill and live ingestion parameters.

    Products and granularities are comma-separated strings so they can be
    set from plain environment variables (INGEST_PRODUCTS=ETH-USD,BTC-USD).
    """

    model_config = SettingsConfigDict(env_prefix="INGEST_")

    products: str = "ETH-USD"
    granularities: str = "60,300,900,3600,21600,86400"
    floor_date: date = date(2015, 1, 1)  # assumed to precede any listed product

    max_records: int = 300  # provider cap per candles call
    rate_limit_calls: int = 10
    rate_limit_interval: float = 1.0  # seconds

    max_fetch_attempts: int = 5
    retry_base_delay: float = 1.0
    max_discovery_attempts: int = 3

    reset_tables: bool = False
    live_enabled: bool = True
    live_settle_delay: float = 2.0  # seconds after a bucket closes before polling

    @property
    def product_list(self) -> list[str]:
        return [p.strip().upper() for p in self.products.split(",") if p.strip()]

    @property
    def granularity_list(self) -> list[Granularity]:
        return [Granularity(int(g)) for g in self.granularities.split(",") if g.strip()]


class DatabaseSettings(BaseSettings):
    """SQLite storage location."""

    model_config = SettingsConfigDict(env_prefix="DATABASE_")

    path: str = "data/candles.db"


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    exchange: ExchangeSettings = ExchangeSettings()
    ingest: IngestSettings = IngestSettings()
    database: DatabaseSettings = DatabaseSettings()
