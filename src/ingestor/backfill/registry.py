"""Channel registry and first-candle discovery.

Resolves the configured (product, granularity) channels and their tables,
and locates the earliest day a product has candles when nothing is stored
for it yet.

Discovery is a binary search over whole UTC days between the configured
floor date and tomorrow. Each probe asks for one day of daily candles:
data at the midpoint means the first candle is at or before it (move the
right bound in), no data means it is after it (move the left bound up).
Discovered start dates are cached in the `products` table.
"""

import asyncio
from collections.abc import Callable
from datetime import datetime, time, timezone

from ingestor.backfill.fetcher import CandleFetcher
from ingestor.config import IngestSettings
from ingestor.data.store import CandleStore
from ingestor.exceptions import DiscoveryError, FetchError
from ingestor.logging import format_ms, get_logger
from ingestor.models import DAY_MS, Channel, FetchWindow, Granularity, align_down, now_ms

logger = get_logger(__name__)


class SeriesRegistry:
    """Knows which channels exist, where they live, and where their history starts."""

    def __init__(
        self,
        settings: IngestSettings,
        store: CandleStore,
        fetcher: CandleFetcher,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._settings = settings
        self._store = store
        self._fetcher = fetcher
        self._clock = clock
        self._discovery_locks: dict[str, asyncio.Lock] = {}

    def channels(self) -> list[Channel]:
        """All configured channels, products outermost, in configuration order."""
        return [
            Channel(product, granularity)
            for product in self._settings.product_list
            for granularity in self._settings.granularity_list
        ]

    async def prepare_storage(self) -> None:
        """Ensure every channel has a table cloned from the candle template.

        With reset_tables enabled, existing channel tables are dropped first
        and cached start dates are kept.
        """
        database = self._store.database
        for channel in self.channels():
            table = channel.table_name
            if await database.has_table(table):
                if not self._settings.reset_tables:
                    logger.info("table_exists", table=table)
                    continue
                await database.drop_table(table)
            await database.create_table_like(table)
            logger.info("table_created", table=table)

    async def find_earliest_available(self, product: str) -> int:
        """Return the open time (ms) of the product's first available candle.

        Uses the cached value when present; concurrent callers for the same
        product share one search.
        """
        lock = self._discovery_locks.setdefault(product, asyncio.Lock())
        async with lock:
            cached = await self._store.get_product_start(product)
            if cached is not None:
                logger.debug("product_start_cached", product=product, start=format_ms(cached))
                return cached

            start_ms = await self._search(product)
            await self._store.save_product_start(product, start_ms)
            logger.info("product_start_discovered", product=product, start=format_ms(start_ms))
            return start_ms

    async def _search(self, product: str) -> int:
        channel = Channel(product, Granularity.ONE_DAY)
        floor = self._settings.floor_date
        left = int(datetime.combine(floor, time(), tzinfo=timezone.utc).timestamp() * 1000)
        right = align_down(self._clock(), DAY_MS) + DAY_MS
        successful_probes = 0

        found, records = await self._probe(channel, left)
        successful_probes += found
        if records:
            logger.info("data_at_floor", product=product, floor=format_ms(left))
            return records[0].open_time_ms

        while right - left > DAY_MS:
            midpoint = left + ((right - left) // DAY_MS // 2) * DAY_MS
            logger.debug(
                "binary_search_step",
                product=product,
                left=format_ms(left),
                right=format_ms(right),
                days_apart=(right - left) // DAY_MS,
            )
            found, records = await self._probe(channel, midpoint)
            successful_probes += found
            if records:
                right = midpoint
            else:
                left = midpoint

        if successful_probes == 0:
            raise DiscoveryError(f"{product}: every discovery probe failed")
        return right

    async def _probe(self, channel: Channel, day_start_ms: int) -> tuple[bool, list]:
        """Query one day of daily candles.

        Returns (answered, records). A probe that fails on every attempt
        counts as empty so one bad day cannot abort the search.
        """
        window = FetchWindow(channel, day_start_ms, day_start_ms + DAY_MS)
        attempts = self._settings.max_discovery_attempts
        for attempt in range(1, attempts + 1):
            try:
                return True, await self._fetcher.fetch(window)
            except FetchError as e:
                logger.warning(
                    "discovery_probe_failed",
                    product=channel.product,
                    day=format_ms(day_start_ms),
                    attempt=attempt,
                    max_attempts=attempts,
                    error=str(e),
                )
                if not e.transient:
                    break
        return False, []
