"""Shared test fixtures for the candle ingestor."""

from collections.abc import AsyncIterator
from datetime import date

import pytest
import pytest_asyncio

from ingestor.backfill.rate_limiter import RateLimiter
from ingestor.backfill.reconciler import Reconciler
from ingestor.config import IngestSettings
from ingestor.data.database import CandleDatabase
from ingestor.data.store import CandleStore
from ingestor.models import Channel, Granularity


@pytest.fixture
def channel() -> Channel:
    return Channel("ETH-USD", Granularity.ONE_MINUTE)


@pytest.fixture
def ingest_settings() -> IngestSettings:
    """IngestSettings with instant retries and a generous rate budget."""
    return IngestSettings(
        products="ETH-USD",
        granularities="60",
        floor_date=date(2019, 1, 1),
        rate_limit_calls=1000,
        rate_limit_interval=1.0,
        max_fetch_attempts=3,
        retry_base_delay=0.0,
        max_discovery_attempts=2,
    )


@pytest.fixture
def fast_limiter() -> RateLimiter:
    return RateLimiter(max_calls=1000, interval=1.0)


@pytest_asyncio.fixture
async def database() -> AsyncIterator[CandleDatabase]:
    """Connected in-memory database."""
    async with CandleDatabase(":memory:") as db:
        yield db


@pytest_asyncio.fixture
async def store(database: CandleDatabase, channel: Channel) -> CandleStore:
    """Store with the default channel's table created."""
    await database.create_table_like(channel.table_name)
    return CandleStore(database)


@pytest.fixture
def reconciler(store: CandleStore) -> Reconciler:
    return Reconciler(store)
