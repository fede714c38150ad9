"""Abstract exchange client interface.

Defines the contract the ingestion pipeline needs from a market-data
provider. Backfill and live code depends only on this interface, keeping
provider-specific details isolated in the concrete implementation.
"""

from abc import ABC, abstractmethod

from ingestor.models import Granularity


class ExchangeClient(ABC):
    """Abstract base class for candle data providers."""

    @abstractmethod
    async def connect(self) -> None:
        """Initialize connection and load markets."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Clean up resources (CRITICAL for ccxt async)."""
        ...

    @abstractmethod
    async def fetch_candles(
        self,
        product: str,
        granularity: Granularity,
        start_ms: int,
        end_ms: int,
    ) -> list[list]:
        """Fetch candles whose open time falls between start_ms and end_ms.

        Returns ccxt-format rows [timestamp_ms, open, high, low, close, volume].
        The provider may treat end_ms as inclusive and may return rows in any
        order; callers filter and sort. Raises ccxt exceptions on failure.

        Exactly one API call. Pagination and rate limiting are NOT handled
        here -- callers plan windows and gate calls.
        """
        ...
