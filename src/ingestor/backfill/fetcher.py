"""Single-window candle fetch with rate gating and error translation.

One fetch() is exactly one provider call, gated by the shared RateLimiter
immediately before the call. Provider exceptions are translated into
TransientFetchError (retry the same window) or PermanentFetchError (abort
the channel). Retrying is the caller's job.
"""

import ccxt.async_support as ccxt_async

from ingestor.backfill.planner import DEFAULT_MAX_RECORDS, window_length_ms
from ingestor.backfill.rate_limiter import RateLimiter
from ingestor.exceptions import PermanentFetchError, TransientFetchError
from ingestor.exchange.client import ExchangeClient
from ingestor.logging import format_ms, get_logger
from ingestor.models import CandleRecord, FetchWindow

logger = get_logger(__name__)

# Checked in order: RateLimitExceeded is a NetworkError, BadSymbol a BadRequest.
_PERMANENT_ERRORS = (
    ccxt_async.BadSymbol,
    ccxt_async.BadRequest,
    ccxt_async.AuthenticationError,
    ccxt_async.NotSupported,
)


class CandleFetcher:
    """Executes windowed candle fetches against an ExchangeClient."""

    def __init__(
        self,
        exchange: ExchangeClient,
        rate_limiter: RateLimiter,
        max_records: int = DEFAULT_MAX_RECORDS,
    ) -> None:
        self._exchange = exchange
        self._rate_limiter = rate_limiter
        self._max_records = max_records

    async def fetch(self, window: FetchWindow) -> list[CandleRecord]:
        """Fetch the candles opening inside [window.start_ms, window.end_ms).

        Returns records ascending by open time, one per open time.
        """
        self._validate(window)
        channel = window.channel

        await self._rate_limiter.acquire()
        try:
            rows = await self._exchange.fetch_candles(
                channel.product,
                channel.granularity,
                window.start_ms,
                window.end_ms,
            )
        except (ccxt_async.RateLimitExceeded, ccxt_async.DDoSProtection) as e:
            raise TransientFetchError(str(e), rate_limited=True) from e
        except ccxt_async.NetworkError as e:
            raise TransientFetchError(str(e)) from e
        except _PERMANENT_ERRORS as e:
            raise PermanentFetchError(f"{channel}: {e}") from e
        except ccxt_async.BaseError as e:
            raise TransientFetchError(str(e)) from e
        except (OSError, TimeoutError) as e:
            raise TransientFetchError(repr(e)) from e

        by_open_time: dict[int, CandleRecord] = {}
        for row in rows or []:
            try:
                record = CandleRecord.from_ohlcv(row)
            except (TypeError, ValueError, IndexError, ArithmeticError):
                logger.warning("malformed_candle_row", row=row)
                continue
            # Providers may treat the end bound as inclusive; keep the window half-open.
            if window.start_ms <= record.open_time_ms < window.end_ms:
                by_open_time[record.open_time_ms] = record

        records = [by_open_time[t] for t in sorted(by_open_time)]
        logger.debug(
            "window_fetched",
            start=format_ms(window.start_ms),
            end=format_ms(window.end_ms),
            received=len(rows or []),
            kept=len(records),
        )
        return records

    def _validate(self, window: FetchWindow) -> None:
        if window.length_ms <= 0:
            raise PermanentFetchError(
                f"{window.channel}: empty window {window.start_ms}..{window.end_ms}"
            )
        cap = window_length_ms(window.channel.granularity, self._max_records)
        if window.length_ms > cap:
            raise PermanentFetchError(
                f"{window.channel}: window of {window.length_ms}ms exceeds cap {cap}ms"
            )
