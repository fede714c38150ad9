"""Candle client implementation via ccxt async.

Wraps a ccxt.async_support exchange (Coinbase Exchange by default) with
initialization, market loading and async cleanup. The pipeline's own
RateLimiter gates calls, so ccxt's built-in throttle is disabled to avoid
two independent throttles fighting over the same budget.
"""

import ccxt.async_support as ccxt_async

from ingestor.config import ExchangeSettings
from ingestor.exchange.client import ExchangeClient
from ingestor.logging import get_logger
from ingestor.models import Granularity

logger = get_logger(__name__)


class CcxtCandleClient(ExchangeClient):
    """Concrete candle client using ccxt async."""

    def __init__(self, settings: ExchangeSettings, max_records: int = 300) -> None:
        self._settings = settings
        self._max_records = max_records

        exchange_class = getattr(ccxt_async, settings.exchange_id, None)
        if exchange_class is None:
            raise ValueError(f"Unknown ccxt exchange id: {settings.exchange_id}")

        config: dict = {
            "apiKey": settings.api_key.get_secret_value(),
            "secret": settings.api_secret.get_secret_value(),
            "password": settings.passphrase.get_secret_value(),
            "enableRateLimit": False,
        }
        self._exchange = exchange_class(config)
        if settings.sandbox:
            self._exchange.set_sandbox_mode(True)

        self._markets: dict = {}

    @property
    def exchange(self) -> ccxt_async.Exchange:
        """Access the underlying ccxt exchange instance."""
        return self._exchange

    async def connect(self) -> None:
        """Initialize connection by loading markets."""
        logger.info("connecting_to_exchange", exchange=self._settings.exchange_id)
        self._markets = await self._exchange.load_markets()
        logger.info(
            "exchange_connected",
            exchange=self._settings.exchange_id,
            market_count=len(self._markets),
        )

    async def close(self) -> None:
        """Clean up ccxt async resources. CRITICAL: must be called to avoid resource leaks."""
        await self._exchange.close()
        logger.info("exchange_connection_closed", exchange=self._settings.exchange_id)

    async def fetch_candles(
        self,
        product: str,
        granularity: Granularity,
        start_ms: int,
        end_ms: int,
    ) -> list[list]:
        """Fetch one window of candles via ccxt fetch_ohlcv.

        `until` bounds the request on the provider side; `since` + `limit`
        alone would let ccxt derive its own end.
        """
        symbol = product.replace("-", "/")
        return await self._exchange.fetch_ohlcv(
            symbol,
            timeframe=granularity.timeframe,
            since=start_ms,
            limit=self._max_records,
            params={"until": end_ms},
        )
