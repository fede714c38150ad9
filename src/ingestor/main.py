"""Entry point for the candle ingestor.

Wires all components together, backfills every configured channel, then
keeps the completed channels current until the process is stopped.

Handles SIGINT/SIGTERM for graceful shutdown: in-flight windows finish
their fetch and write before the process exits.

Component wiring order (in _build_components):
1. AppSettings (configuration)
2. Logging setup
3. CandleDatabase + CandleStore (storage)
4. ExchangeClient (ccxt)
5. RateLimiter (global request budget)
6. CandleFetcher (gated windowed fetch)
7. Reconciler (idempotent writes)
8. SeriesRegistry (channels, tables, start discovery)
9. LiveListener (post-backfill polling)
10. BackfillCoordinator (per-channel state machine)
"""

import asyncio
import signal
from typing import Any

from ingestor.backfill.coordinator import BackfillCoordinator
from ingestor.backfill.fetcher import CandleFetcher
from ingestor.backfill.rate_limiter import RateLimiter
from ingestor.backfill.reconciler import Reconciler
from ingestor.backfill.registry import SeriesRegistry
from ingestor.config import AppSettings
from ingestor.data.database import CandleDatabase
from ingestor.data.store import CandleStore
from ingestor.exchange.ccxt_client import CcxtCandleClient
from ingestor.live.listener import LiveListener
from ingestor.logging import format_ms, get_logger, setup_logging
from ingestor.models import ChannelState


def _build_components(settings: AppSettings) -> dict[str, Any]:
    """Build all ingestor components from settings.

    Note: Does NOT connect the database or exchange -- that happens in run().

    Args:
        settings: Application-wide settings.

    Returns:
        Dict mapping component names to instances.
    """
    ingest = settings.ingest

    database = CandleDatabase(settings.database.path)
    store = CandleStore(database)

    exchange_client = CcxtCandleClient(settings.exchange, max_records=ingest.max_records)

    rate_limiter = RateLimiter(ingest.rate_limit_calls, ingest.rate_limit_interval)
    fetcher = CandleFetcher(exchange_client, rate_limiter, max_records=ingest.max_records)
    reconciler = Reconciler(store)
    registry = SeriesRegistry(ingest, store, fetcher)

    listener = None
    if ingest.live_enabled:
        listener = LiveListener(
            store,
            fetcher,
            reconciler,
            max_records=ingest.max_records,
            settle_delay=ingest.live_settle_delay,
        )

    coordinator = BackfillCoordinator(
        settings=ingest,
        registry=registry,
        store=store,
        fetcher=fetcher,
        reconciler=reconciler,
        listener=listener,
    )

    return {
        "database": database,
        "store": store,
        "exchange_client": exchange_client,
        "rate_limiter": rate_limiter,
        "fetcher": fetcher,
        "reconciler": reconciler,
        "registry": registry,
        "listener": listener,
        "coordinator": coordinator,
    }


def _setup_signal_handlers(
    coordinator: BackfillCoordinator, listener: LiveListener | None
) -> None:
    """Register SIGINT/SIGTERM to stop backfill between windows and end the live phase.

    Must be called after the asyncio event loop is running.
    """
    logger = get_logger("ingestor.main")
    loop = asyncio.get_running_loop()

    def _graceful_handler() -> None:
        logger.info("graceful_shutdown_signal")
        coordinator.stop()
        if listener is not None:
            asyncio.create_task(listener.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _graceful_handler)


def _log_summary(coordinator: BackfillCoordinator) -> None:
    """Report every channel's outcome so failed ranges can be re-run."""
    logger = get_logger("ingestor.main")
    for channel, report in coordinator.reports.items():
        if report.state is ChannelState.DONE:
            logger.info(
                "channel_summary",
                channel=str(channel),
                state=report.state.value,
                rows_written=report.rows_written,
                covered_to=format_ms(report.end_ms),
            )
        else:
            logger.warning(
                "channel_summary",
                channel=str(channel),
                state=report.state.value,
                failed_from=format_ms(report.failed_from_ms),
                failed_to=format_ms(report.failed_to_ms),
                error=report.error,
            )


async def run() -> None:
    """Run backfill, then the live phase until a shutdown signal."""
    settings = AppSettings()

    setup_logging(settings.log_level)
    logger = get_logger("ingestor.main")

    components = _build_components(settings)
    database: CandleDatabase = components["database"]
    exchange_client: CcxtCandleClient = components["exchange_client"]
    coordinator: BackfillCoordinator = components["coordinator"]
    listener: LiveListener | None = components["listener"]

    _setup_signal_handlers(coordinator, listener)

    logger.info(
        "ingestor_starting",
        products=settings.ingest.product_list,
        granularities=[g.label for g in settings.ingest.granularity_list],
        rate_limit=f"{settings.ingest.rate_limit_calls}/{settings.ingest.rate_limit_interval}s",
    )

    try:
        await database.connect()
        await exchange_client.connect()
        await components["registry"].prepare_storage()

        await coordinator.run()
        _log_summary(coordinator)

        if listener is not None and listener.running:
            await listener.wait()
    finally:
        if listener is not None and listener.running:
            await listener.stop()
        await exchange_client.close()
        await database.close()
        logger.info("ingestor_stopped")


def main() -> None:
    """Synchronous entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
