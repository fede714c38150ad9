"""Live candle listener -- keeps backfilled channels current.

Candles are pulled by REST polling, one task per channel, through the
same rate-gated fetcher the backfill uses. After each bucket closes the
task fetches everything between the last stored candle and now and
forwards every record, one at a time, to the reconciler. Redelivered
candles land on the reconciler's no-op path.
"""

import asyncio
from collections.abc import Callable

import structlog

from ingestor.backfill.fetcher import CandleFetcher
from ingestor.backfill.planner import plan
from ingestor.backfill.reconciler import Reconciler
from ingestor.data.store import CandleStore
from ingestor.exceptions import PermanentFetchError, TransientFetchError, WriteError
from ingestor.logging import bind_channel, format_ms, get_logger
from ingestor.models import CandleRecord, Channel, align_down, now_ms

logger = get_logger(__name__)


class LiveListener:
    """Polls for newly closed candles per channel and writes them idempotently.

    Args:
        store: Candle storage, used to anchor each channel at its newest stored candle.
        fetcher: Rate-gated windowed fetcher.
        reconciler: Idempotent writer every record is forwarded to.
        max_records: Provider cap per call, for catch-up planning.
        settle_delay: Seconds to wait after a bucket closes before polling.
        clock: Returns "now" in epoch ms.
    """

    def __init__(
        self,
        store: CandleStore,
        fetcher: CandleFetcher,
        reconciler: Reconciler,
        max_records: int = 300,
        settle_delay: float = 2.0,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._fetcher = fetcher
        self._reconciler = reconciler
        self._max_records = max_records
        self._settle_delay = settle_delay
        self._clock = clock
        self._tasks: dict[Channel, asyncio.Task] = {}  # type: ignore[type-arg]
        self._running = False
        self._stop_requested = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def channels(self) -> list[Channel]:
        return list(self._tasks)

    async def start(self, channels: list[Channel]) -> None:
        """Start one polling task per channel. Channels must be fully backfilled."""
        if self._running:
            logger.warning("live_listener_already_running")
            return
        self._running = True
        self._stop_requested.clear()
        for channel in channels:
            logger.info("initializing_listener", channel=str(channel))
            self._tasks[channel] = asyncio.create_task(self._watch(channel))
        logger.info("live_listener_started", channels=len(channels))

    async def stop(self) -> None:
        """Stop polling and wait for every task to end.

        Sleeping tasks wake immediately; a poll already in flight finishes
        its fetch and writes before its task returns.
        """
        self._running = False
        self._stop_requested.set()
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()
        logger.info("live_listener_stopped")

    async def wait(self) -> None:
        """Block until every polling task has ended."""
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)

    async def on_record(self, channel: Channel, record: CandleRecord) -> int:
        """Forward one pushed candle to the reconciler."""
        return await self._reconciler.write(channel, [record])

    # ──────────────────────────────────────────────
    # Polling
    # ──────────────────────────────────────────────

    async def _watch(self, channel: Channel) -> None:
        structlog.contextvars.clear_contextvars()
        bind_channel(channel)

        try:
            newest = await self._store.select_extreme(channel, most_recent=True)
        except WriteError as e:
            logger.error("live_channel_stopped", error=str(e))
            return
        if newest is None:
            logger.error("listener_without_backfill")
            return
        last_ms = newest.open_time_ms
        logger.info("listening_from", anchor=format_ms(last_ms))

        while not await self._wait_for_close(channel):
            try:
                last_ms = await self._poll_once(channel, last_ms)
            except TransientFetchError as e:
                logger.warning("live_poll_error", error=str(e))
            except (PermanentFetchError, WriteError) as e:
                logger.error("live_channel_stopped", error=str(e))
                return
            except Exception as e:
                logger.error("live_channel_stopped", error=repr(e), exc_info=True)
                return
        logger.info("live_channel_finished", newest=format_ms(last_ms))

    async def _wait_for_close(self, channel: Channel) -> bool:
        """Sleep until the next bucket has closed and settled. True if stopped meanwhile."""
        try:
            await asyncio.wait_for(
                self._stop_requested.wait(),
                timeout=self._seconds_until_next_close(channel),
            )
        except TimeoutError:
            return False
        return True

    async def _poll_once(self, channel: Channel, last_ms: int) -> int:
        """Fetch and forward every closed candle after last_ms; return the new anchor."""
        start_ms = last_ms + channel.bucket_ms
        end_ms = align_down(self._clock(), channel.bucket_ms)

        for window in plan(channel, start_ms, end_ms, self._max_records):
            for record in await self._fetcher.fetch(window):
                await self.on_record(channel, record)
                last_ms = max(last_ms, record.open_time_ms)

        if end_ms > start_ms:
            logger.debug("live_poll", start=format_ms(start_ms), newest=format_ms(last_ms))
        return last_ms

    def _seconds_until_next_close(self, channel: Channel) -> float:
        now = self._clock()
        next_close = align_down(now, channel.bucket_ms) + channel.bucket_ms
        return (next_close - now) / 1000 + self._settle_delay
