"""Shared data models for the candle ingestor.

CRITICAL: All price and volume values use Decimal. Never use float for OHLCV fields.
All timestamps are UTC epoch milliseconds.
"""

import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum, IntEnum

DAY_MS = 86_400_000


class Granularity(IntEnum):
    """Candle bucket width in seconds, as accepted by the exchange."""

    ONE_MINUTE = 60
    FIVE_MINUTES = 300
    FIFTEEN_MINUTES = 900
    ONE_HOUR = 3600
    SIX_HOURS = 21600
    ONE_DAY = 86400

    @property
    def timeframe(self) -> str:
        """ccxt timeframe string."""
        return _TIMEFRAMES[self]

    @property
    def label(self) -> str:
        """Short label used in log output."""
        return _LABELS[self]

    @property
    def bucket_ms(self) -> int:
        return int(self) * 1000


_TIMEFRAMES = {
    Granularity.ONE_MINUTE: "1m",
    Granularity.FIVE_MINUTES: "5m",
    Granularity.FIFTEEN_MINUTES: "15m",
    Granularity.ONE_HOUR: "1h",
    Granularity.SIX_HOURS: "6h",
    Granularity.ONE_DAY: "1d",
}

_LABELS = {
    Granularity.ONE_MINUTE: "1m",
    Granularity.FIVE_MINUTES: "5m",
    Granularity.FIFTEEN_MINUTES: "15m",
    Granularity.ONE_HOUR: "1hr",
    Granularity.SIX_HOURS: "6hr",
    Granularity.ONE_DAY: "1d",
}


@dataclass(frozen=True)
class Channel:
    """One (product, granularity) ingestion unit with its own table."""

    product: str  # exchange product id, e.g. "ETH-USD"
    granularity: Granularity

    @property
    def symbol(self) -> str:
        """ccxt unified symbol, e.g. "ETH/USD"."""
        return self.product.replace("-", "/")

    @property
    def table_name(self) -> str:
        slug = self.product.lower().replace("-", "_")
        return f"candle_{slug}_{int(self.granularity)}"

    @property
    def bucket_ms(self) -> int:
        return self.granularity.bucket_ms

    def __str__(self) -> str:
        return f"{self.product}:{self.granularity.label}"


@dataclass
class CandleRecord:
    """A single OHLCV candle.

    open_time_ms is the dedup key: at most one record per open time per channel.
    """

    open_time_ms: int
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal

    @classmethod
    def from_ohlcv(cls, row: list) -> "CandleRecord":
        """Build from a ccxt-format row: [timestamp_ms, open, high, low, close, volume]."""
        return cls(
            open_time_ms=int(row[0]),
            open=Decimal(str(row[1])),
            high=Decimal(str(row[2])),
            low=Decimal(str(row[3])),
            close=Decimal(str(row[4])),
            volume=Decimal(str(row[5] if row[5] is not None else 0)),
        )


@dataclass(frozen=True)
class Cursor:
    """Contiguous range already persisted for a channel.

    covered_to_ms is exclusive: one bucket past the most recent stored open time.
    """

    covered_from_ms: int
    covered_to_ms: int


@dataclass(frozen=True)
class FetchWindow:
    """Half-open [start_ms, end_ms) range sized to fit one candles call."""

    channel: Channel
    start_ms: int
    end_ms: int

    @property
    def length_ms(self) -> int:
        return self.end_ms - self.start_ms


class ChannelState(str, Enum):
    """Backfill state of a single channel."""

    IDLE = "idle"
    DISCOVERING = "discovering"
    PLANNING = "planning"
    FETCHING = "fetching"
    WRITING = "writing"
    DONE = "done"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def terminal(self) -> bool:
        return self in (ChannelState.DONE, ChannelState.FAILED, ChannelState.STOPPED)


@dataclass
class ChannelReport:
    """Outcome of one channel's backfill, reported to the operator."""

    channel: Channel
    state: ChannelState = ChannelState.IDLE
    start_ms: int | None = None
    end_ms: int | None = None
    windows_planned: int = 0
    windows_completed: int = 0
    rows_written: int = 0
    failed_from_ms: int | None = None
    failed_to_ms: int | None = None
    error: str | None = None


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def align_down(timestamp_ms: int, step_ms: int) -> int:
    """Round a timestamp down to the start of its bucket."""
    return timestamp_ms - (timestamp_ms % step_ms)
