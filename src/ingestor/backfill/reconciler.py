"""Idempotent candle writes.

A batch is written with one plain insert. When it collides with rows
already stored (a re-fetched window, a live redelivery, a second process),
the stored rows covering the batch's time span are loaded, the batch is
reduced to the open times that are missing, and only that subset is
retried. A batch that is entirely present is a successful no-op.
"""

from ingestor.data.store import CandleStore
from ingestor.exceptions import UniqueViolation, WriteError
from ingestor.logging import format_ms, get_logger
from ingestor.models import CandleRecord, Channel

logger = get_logger(__name__)


class Reconciler:
    """Writes candle batches to a channel's table without creating duplicates."""

    def __init__(self, store: CandleStore) -> None:
        self._store = store

    async def write(self, channel: Channel, records: list[CandleRecord]) -> int:
        """Persist `records` (ascending by open time); return the number of new rows.

        Raises WriteError for any storage failure other than a unique violation.
        """
        if not records:
            return 0

        batch = _dedupe(records)
        first_ms = batch[0].open_time_ms
        last_ms = batch[-1].open_time_ms

        try:
            inserted = await self._store.insert_candles(channel, batch)
        except UniqueViolation:
            logger.debug(
                "handling_unique_violation",
                start=format_ms(first_ms),
                end=format_ms(last_ms),
                batch=len(batch),
            )
        else:
            logger.info(
                "candles_inserted",
                count=inserted,
                start=format_ms(first_ms),
                end=format_ms(last_ms),
            )
            return inserted

        existing = await self._store.select_range(channel, first_ms, last_ms)
        stored_times = {row.open_time_ms for row in existing}
        missing = [r for r in batch if r.open_time_ms not in stored_times]

        if not missing:
            logger.info(
                "candles_already_exist",
                start=format_ms(first_ms),
                end=format_ms(last_ms),
                count=len(batch),
            )
            return 0

        if len(missing) == len(batch):
            # Nothing in the span is stored yet the insert still collided.
            raise WriteError(
                f"{channel.table_name}: unique violation with no stored rows between "
                f"{first_ms} and {last_ms}"
            )

        logger.info(
            "retrying_missing_candles",
            missing=len(missing),
            existing=len(existing),
            batch=len(batch),
        )
        return await self.write(channel, missing)


def _dedupe(records: list[CandleRecord]) -> list[CandleRecord]:
    """Collapse repeated open times (last one wins) and sort ascending."""
    by_open_time = {r.open_time_ms: r for r in records}
    return [by_open_time[t] for t in sorted(by_open_time)]
