"""Tests for SeriesRegistry: channel resolution, table setup and start discovery."""

import asyncio
from datetime import date
from unittest.mock import AsyncMock

import ccxt
import pytest

from ingestor.backfill.fetcher import CandleFetcher
from ingestor.backfill.rate_limiter import RateLimiter
from ingestor.backfill.registry import SeriesRegistry
from ingestor.config import IngestSettings
from ingestor.data.database import CandleDatabase
from ingestor.data.store import CandleStore
from ingestor.exceptions import DiscoveryError
from ingestor.models import Channel, Granularity

from fakes import SyntheticExchange, make_record, utc_ms

DATA_START = utc_ms(2020, 6, 1)
NOW = utc_ms(2020, 6, 3, 0, 7)


def _registry(
    settings: IngestSettings,
    store: CandleStore,
    exchange,
    limiter: RateLimiter,
) -> SeriesRegistry:
    return SeriesRegistry(settings, store, CandleFetcher(exchange, limiter), clock=lambda: NOW)


# ---------------------------------------------------------------------------
# Channels and tables
# ---------------------------------------------------------------------------


class TestChannels:
    def test_products_outermost(
        self, ingest_settings: IngestSettings, fast_limiter: RateLimiter
    ) -> None:
        store = AsyncMock(spec=CandleStore)
        settings = ingest_settings.model_copy(
            update={"products": "ETH-USD, btc-usd", "granularities": "60,3600"}
        )
        registry = _registry(settings, store, SyntheticExchange(DATA_START, NOW), fast_limiter)
        assert registry.channels() == [
            Channel("ETH-USD", Granularity.ONE_MINUTE),
            Channel("ETH-USD", Granularity.ONE_HOUR),
            Channel("BTC-USD", Granularity.ONE_MINUTE),
            Channel("BTC-USD", Granularity.ONE_HOUR),
        ]


class TestPrepareStorage:
    @pytest.mark.asyncio
    async def test_creates_missing_tables(
        self,
        ingest_settings: IngestSettings,
        database: CandleDatabase,
        fast_limiter: RateLimiter,
    ) -> None:
        settings = ingest_settings.model_copy(update={"granularities": "60,86400"})
        registry = _registry(
            settings, CandleStore(database), SyntheticExchange(DATA_START, NOW), fast_limiter
        )
        await registry.prepare_storage()
        assert await database.has_table("candle_eth_usd_60")
        assert await database.has_table("candle_eth_usd_86400")

    @pytest.mark.asyncio
    async def test_existing_rows_kept_by_default(
        self,
        ingest_settings: IngestSettings,
        store: CandleStore,
        channel: Channel,
        fast_limiter: RateLimiter,
    ) -> None:
        await store.insert_candles(channel, [make_record(DATA_START)])
        registry = _registry(ingest_settings, store, SyntheticExchange(DATA_START, NOW), fast_limiter)
        await registry.prepare_storage()
        assert await store.count(channel) == 1

    @pytest.mark.asyncio
    async def test_reset_recreates_tables(
        self,
        ingest_settings: IngestSettings,
        store: CandleStore,
        channel: Channel,
        fast_limiter: RateLimiter,
    ) -> None:
        await store.insert_candles(channel, [make_record(DATA_START)])
        await store.save_product_start("ETH-USD", DATA_START)
        settings = ingest_settings.model_copy(update={"reset_tables": True})
        registry = _registry(settings, store, SyntheticExchange(DATA_START, NOW), fast_limiter)

        await registry.prepare_storage()

        assert await store.count(channel) == 0
        assert await store.get_product_start("ETH-USD") == DATA_START


# ---------------------------------------------------------------------------
# Start discovery
# ---------------------------------------------------------------------------


class TestDiscovery:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "floor",
        [
            date(2015, 1, 1),
            date(2019, 1, 1),
            date(2020, 5, 17),
            date(2020, 5, 31),
            date(2020, 6, 1),
        ],
    )
    async def test_finds_first_day_with_data(
        self,
        ingest_settings: IngestSettings,
        store: CandleStore,
        fast_limiter: RateLimiter,
        floor: date,
    ) -> None:
        settings = ingest_settings.model_copy(update={"floor_date": floor})
        registry = _registry(settings, store, SyntheticExchange(DATA_START, NOW), fast_limiter)
        assert await registry.find_earliest_available("ETH-USD") == DATA_START

    @pytest.mark.asyncio
    async def test_data_before_floor_returns_floor(
        self,
        ingest_settings: IngestSettings,
        store: CandleStore,
        fast_limiter: RateLimiter,
    ) -> None:
        exchange = SyntheticExchange(utc_ms(2016, 3, 3), NOW)
        registry = _registry(ingest_settings, store, exchange, fast_limiter)

        assert await registry.find_earliest_available("ETH-USD") == utc_ms(2019, 1, 1)
        assert len(exchange.calls) == 1

    @pytest.mark.asyncio
    async def test_probes_use_single_daily_windows(
        self,
        ingest_settings: IngestSettings,
        store: CandleStore,
        fast_limiter: RateLimiter,
    ) -> None:
        exchange = SyntheticExchange(DATA_START, NOW)
        registry = _registry(ingest_settings, store, exchange, fast_limiter)
        await registry.find_earliest_available("ETH-USD")

        assert exchange.calls
        for _, granularity, start_ms, end_ms in exchange.calls:
            assert granularity is Granularity.ONE_DAY
            assert end_ms - start_ms == 86_400_000
            assert start_ms % 86_400_000 == 0

    @pytest.mark.asyncio
    async def test_result_cached(
        self,
        ingest_settings: IngestSettings,
        store: CandleStore,
        fast_limiter: RateLimiter,
    ) -> None:
        exchange = SyntheticExchange(DATA_START, NOW)
        registry = _registry(ingest_settings, store, exchange, fast_limiter)

        await registry.find_earliest_available("ETH-USD")
        probes = len(exchange.calls)
        assert await registry.find_earliest_available("ETH-USD") == DATA_START
        assert len(exchange.calls) == probes
        assert await store.get_product_start("ETH-USD") == DATA_START

    @pytest.mark.asyncio
    async def test_stored_start_skips_search(
        self,
        ingest_settings: IngestSettings,
        store: CandleStore,
        fast_limiter: RateLimiter,
    ) -> None:
        await store.save_product_start("ETH-USD", utc_ms(2017, 5, 5))
        exchange = SyntheticExchange(DATA_START, NOW)
        registry = _registry(ingest_settings, store, exchange, fast_limiter)

        assert await registry.find_earliest_available("ETH-USD") == utc_ms(2017, 5, 5)
        assert exchange.calls == []

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_search(
        self,
        ingest_settings: IngestSettings,
        store: CandleStore,
        fast_limiter: RateLimiter,
    ) -> None:
        exchange = SyntheticExchange(DATA_START, NOW)
        registry = _registry(ingest_settings, store, exchange, fast_limiter)

        first, second = await asyncio.gather(
            registry.find_earliest_available("ETH-USD"),
            registry.find_earliest_available("ETH-USD"),
        )

        assert first == second == DATA_START
        solo = SyntheticExchange(DATA_START, NOW)
        await _registry(
            ingest_settings, CandleStore(store.database), solo, fast_limiter
        )._search("ETH-USD")
        assert len(exchange.calls) == len(solo.calls)


class TestDiscoveryFailures:
    @pytest.mark.asyncio
    async def test_transient_probe_failure_retried(
        self,
        ingest_settings: IngestSettings,
        store: CandleStore,
        fast_limiter: RateLimiter,
    ) -> None:
        exchange = SyntheticExchange(
            DATA_START,
            NOW,
            failures={2: ccxt.NetworkError("reset")},
            fail_granularity=Granularity.ONE_DAY,
        )
        registry = _registry(ingest_settings, store, exchange, fast_limiter)
        assert await registry.find_earliest_available("ETH-USD") == DATA_START

    @pytest.mark.asyncio
    async def test_exhausted_probe_counts_as_empty(
        self,
        ingest_settings: IngestSettings,
        store: CandleStore,
        fast_limiter: RateLimiter,
    ) -> None:
        # Calls 2 and 3 are both attempts of the first midpoint probe, which
        # lies before the data start.
        exchange = SyntheticExchange(
            DATA_START,
            NOW,
            failures={2: ccxt.NetworkError("reset"), 3: ccxt.RequestTimeout("slow")},
            fail_granularity=Granularity.ONE_DAY,
        )
        registry = _registry(ingest_settings, store, exchange, fast_limiter)
        assert await registry.find_earliest_available("ETH-USD") == DATA_START

    @pytest.mark.asyncio
    async def test_all_probes_failing_raises(
        self,
        ingest_settings: IngestSettings,
        store: CandleStore,
        fast_limiter: RateLimiter,
    ) -> None:
        exchange = AsyncMock()
        exchange.fetch_candles = AsyncMock(side_effect=ccxt.NetworkError("down"))
        registry = _registry(ingest_settings, store, exchange, fast_limiter)

        with pytest.raises(DiscoveryError):
            await registry.find_earliest_available("ETH-USD")
        assert await store.get_product_start("ETH-USD") is None

    @pytest.mark.asyncio
    async def test_permanent_probe_error_not_retried(
        self,
        ingest_settings: IngestSettings,
        store: CandleStore,
        fast_limiter: RateLimiter,
    ) -> None:
        exchange = AsyncMock()
        exchange.fetch_candles = AsyncMock(side_effect=ccxt.BadSymbol("unknown product"))
        registry = _registry(ingest_settings, store, exchange, fast_limiter)

        with pytest.raises(DiscoveryError):
            await registry.find_earliest_available("XYZ-USD")

        # One attempt per probe: the floor probe plus one per halving step.
        probed_days = {call.args[2] for call in exchange.fetch_candles.await_args_list}
        assert exchange.fetch_candles.await_count == len(probed_days)
