"""Backfill coordinator -- drives every channel from its cursor to now.

Each channel runs as its own task through an explicit state machine:

    IDLE -> DISCOVERING (no stored data) -> PLANNING -> FETCHING -> WRITING
         -> FETCHING (next window) ... -> DONE

A fatal error moves the channel to FAILED and is reported with the time
range that was not covered; sibling channels keep going. A stop request
lets the in-flight window finish its fetch and write, then moves the
channel to STOPPED.

The live listener is armed only once every channel is terminal, and only
for channels that reached DONE, so a live candle can never be written
ahead of an unfilled historical gap.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

import structlog

from ingestor.backfill.fetcher import CandleFetcher
from ingestor.backfill.planner import plan
from ingestor.backfill.reconciler import Reconciler
from ingestor.backfill.registry import SeriesRegistry
from ingestor.config import IngestSettings
from ingestor.data.store import CandleStore
from ingestor.exceptions import IngestError, TransientFetchError
from ingestor.logging import bind_channel, format_ms, get_logger
from ingestor.models import (
    CandleRecord,
    Channel,
    ChannelReport,
    ChannelState,
    FetchWindow,
    align_down,
    now_ms,
)

if TYPE_CHECKING:
    from ingestor.live.listener import LiveListener

logger = get_logger(__name__)


class BackfillCoordinator:
    """Runs the backfill state machine for all channels and hands off to live.

    Args:
        settings: Ingestion settings (retry bounds, record cap).
        registry: Channel registry and start-date discovery.
        store: Candle storage, used to derive each channel's cursor.
        fetcher: Rate-gated windowed fetcher.
        reconciler: Idempotent batch writer.
        listener: Live listener to arm after backfill, or None to skip live.
        clock: Returns "now" in epoch ms.
    """

    def __init__(
        self,
        settings: IngestSettings,
        registry: SeriesRegistry,
        store: CandleStore,
        fetcher: CandleFetcher,
        reconciler: Reconciler,
        listener: LiveListener | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._settings = settings
        self._registry = registry
        self._store = store
        self._fetcher = fetcher
        self._reconciler = reconciler
        self._listener = listener
        self._clock = clock
        self._stop_requested = asyncio.Event()
        self._reports: dict[Channel, ChannelReport] = {}

    @property
    def reports(self) -> dict[Channel, ChannelReport]:
        return dict(self._reports)

    def stop(self) -> None:
        """Request a graceful stop; in-flight windows still complete."""
        if not self._stop_requested.is_set():
            logger.info("backfill_stop_requested")
            self._stop_requested.set()

    async def run(self, channels: list[Channel] | None = None) -> dict[Channel, ChannelReport]:
        """Backfill every channel concurrently, then arm live updates for the completed ones."""
        if channels is None:
            channels = self._registry.channels()

        start_time = time.monotonic()
        logger.info("backfill_started", channels=len(channels))

        reports = await asyncio.gather(*(self._run_channel(c) for c in channels))
        self._reports = {report.channel: report for report in reports}

        done = [r.channel for r in reports if r.state is ChannelState.DONE]
        logger.info(
            "backfill_finished",
            done=len(done),
            failed=sum(1 for r in reports if r.state is ChannelState.FAILED),
            stopped=sum(1 for r in reports if r.state is ChannelState.STOPPED),
            rows_written=sum(r.rows_written for r in reports),
            duration_seconds=round(time.monotonic() - start_time, 1),
        )

        if self._listener is not None and done and not self._stop_requested.is_set():
            await self._listener.start(done)

        return self._reports

    # ──────────────────────────────────────────────
    # Per-channel state machine
    # ──────────────────────────────────────────────

    async def _run_channel(self, channel: Channel) -> ChannelReport:
        """Drive one channel to a terminal state. Only cancellation propagates."""
        # gather() runs each coroutine in its own task, so context stays per channel.
        structlog.contextvars.clear_contextvars()
        bind_channel(channel)
        report = ChannelReport(channel=channel)
        self._reports[channel] = report
        window: FetchWindow | None = None

        try:
            # IDLE: derive the start from storage, never from memory.
            cursor = await self._store.cursor(channel)
            if cursor is not None:
                start_ms = cursor.covered_to_ms
                logger.info("resuming_from_cursor", most_recent=format_ms(start_ms - channel.bucket_ms))
            else:
                self._transition(report, ChannelState.DISCOVERING)
                start_ms = await self._registry.find_earliest_available(channel.product)

            self._transition(report, ChannelState.PLANNING)
            end_ms = align_down(self._clock(), channel.bucket_ms)
            windows = plan(channel, start_ms, end_ms, self._settings.max_records)
            report.start_ms, report.end_ms = start_ms, end_ms
            report.windows_planned = len(windows)
            logger.info(
                "backfill_planned",
                start=format_ms(start_ms),
                end=format_ms(end_ms),
                windows=len(windows),
            )

            for window in windows:
                if self._stop_requested.is_set():
                    self._transition(report, ChannelState.STOPPED)
                    logger.info("channel_backfill_stopped", resume_from=format_ms(window.start_ms))
                    return report

                self._transition(report, ChannelState.FETCHING)
                records = await self._fetch_with_retry(window)

                self._transition(report, ChannelState.WRITING)
                report.rows_written += await self._reconciler.write(channel, records)
                report.windows_completed += 1

            window = None
            self._transition(report, ChannelState.DONE)
            logger.info(
                "channel_backfill_done",
                windows=report.windows_completed,
                rows_written=report.rows_written,
            )
        except IngestError as e:
            self._fail(report, window, e)
        except Exception as e:
            # Anything unexpected is still this channel's failure alone.
            self._fail(report, window, e, exc_info=True)
        return report

    @staticmethod
    def _fail(
        report: ChannelReport,
        window: FetchWindow | None,
        error: Exception,
        exc_info: bool = False,
    ) -> None:
        report.state = ChannelState.FAILED
        report.error = f"{type(error).__name__}: {error}"
        report.failed_from_ms = window.start_ms if window is not None else report.start_ms
        report.failed_to_ms = report.end_ms
        logger.error(
            "channel_backfill_failed",
            error=report.error,
            failed_from=format_ms(report.failed_from_ms),
            failed_to=format_ms(report.failed_to_ms),
            windows_completed=report.windows_completed,
            exc_info=exc_info,
        )

    async def _fetch_with_retry(self, window: FetchWindow) -> list[CandleRecord]:
        """Fetch one window, retrying transient failures with exponential backoff.

        Delays are retry_base_delay * 2**attempt, tripled for rate-limit
        rejections. Re-raises on the final attempt and on permanent errors.
        """
        max_attempts = self._settings.max_fetch_attempts
        base_delay = self._settings.retry_base_delay

        for attempt in range(max_attempts):
            try:
                return await self._fetcher.fetch(window)
            except TransientFetchError as e:
                if attempt == max_attempts - 1:
                    logger.error(
                        "fetch_failed_permanently",
                        window_start=format_ms(window.start_ms),
                        attempts=max_attempts,
                        error=str(e),
                    )
                    raise

                delay = base_delay * (2**attempt)
                if e.rate_limited:
                    delay *= 3
                logger.warning(
                    "fetch_retry",
                    window_start=format_ms(window.start_ms),
                    attempt=attempt + 1,
                    max_attempts=max_attempts,
                    delay=delay,
                    rate_limited=e.rate_limited,
                    error=str(e),
                )
                await asyncio.sleep(delay)

        return []  # Unreachable, but satisfies type checker

    @staticmethod
    def _transition(report: ChannelReport, state: ChannelState) -> None:
        logger.debug("channel_state", previous=report.state.value, state=state.value)
        report.state = state
