"""Typed SQLite read/write abstraction for candle tables.

Provides CandleStore with typed methods for batch inserts, ordered range
queries, extreme lookups and the product start-date cache. All SQL is
isolated behind this interface.

CRITICAL: All price/volume values stored as TEXT in SQLite, restored as Decimal on read.
CRITICAL: Inserts are plain INSERTs. A collision on open_time_ms raises
UniqueViolation so the reconciler can diff and retry; nothing is silently ignored.
"""

import asyncio
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from decimal import Decimal

from ingestor.data.database import CandleDatabase, quote_identifier
from ingestor.exceptions import UniqueViolation, WriteError
from ingestor.logging import get_logger
from ingestor.models import CandleRecord, Channel, Cursor

logger = get_logger(__name__)

_COLUMNS = "open_time_ms, open, high, low, close, volume"


def _is_unique_violation(exc: sqlite3.IntegrityError) -> bool:
    return "UNIQUE constraint failed" in str(exc)


@contextmanager
def _storage_errors(context: str) -> Iterator[None]:
    """Re-raise sqlite3 failures from reads and cache writes as WriteError."""
    try:
        yield
    except sqlite3.Error as e:
        raise WriteError(f"{context}: {e}") from e


class CandleStore:
    """Async SQLite store for per-channel candle tables.

    Wraps CandleDatabase with typed read/write methods. All SQL access
    goes through self._database.db (the aiosqlite Connection).

    Usage:
        async with CandleDatabase("data/candles.db") as database:
            store = CandleStore(database)
            count = await store.insert_candles(channel, records)
    """

    def __init__(self, database: CandleDatabase) -> None:
        self._database = database
        # Channels share one connection; a batch's insert..commit/rollback
        # must not interleave with another channel's transaction.
        self._write_lock = asyncio.Lock()

    @property
    def database(self) -> CandleDatabase:
        return self._database

    # ──────────────────────────────────────────────
    # Write methods
    # ──────────────────────────────────────────────

    async def insert_candles(self, channel: Channel, records: list[CandleRecord]) -> int:
        """Insert a batch atomically.

        Raises UniqueViolation if any open time already exists (nothing from the
        batch is committed) and WriteError for any other storage failure.
        Returns the number of inserted rows.
        """
        if not records:
            return 0

        data = [
            (
                r.open_time_ms,
                str(r.open),
                str(r.high),
                str(r.low),
                str(r.close),
                str(r.volume),
            )
            for r in records
        ]

        db = self._database.db
        async with self._write_lock:
            try:
                await db.executemany(
                    f"INSERT INTO {quote_identifier(channel.table_name)} ({_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    data,
                )
                await db.commit()
            except sqlite3.IntegrityError as e:
                await db.rollback()
                if _is_unique_violation(e):
                    raise UniqueViolation(str(e)) from e
                raise WriteError(f"{channel.table_name}: {e}") from e
            except sqlite3.Error as e:
                await db.rollback()
                raise WriteError(f"{channel.table_name}: {e}") from e
            except asyncio.CancelledError:
                # Leave no open transaction on the shared connection.
                await db.rollback()
                raise

        logger.debug("inserted_candles", table=channel.table_name, inserted=len(data))
        return len(data)

    async def save_product_start(self, product: str, start_ms: int) -> None:
        """Cache the discovered first-candle time for a product."""
        now_ms = int(time.time() * 1000)
        db = self._database.db
        async with self._write_lock:
            try:
                await db.execute(
                    "INSERT OR REPLACE INTO products (product, start_ms, discovered_at) "
                    "VALUES (?, ?, ?)",
                    (product, start_ms, now_ms),
                )
                await db.commit()
            except sqlite3.Error as e:
                await db.rollback()
                raise WriteError(f"products: {e}") from e

    # ──────────────────────────────────────────────
    # Read methods
    # ──────────────────────────────────────────────

    async def select_range(
        self, channel: Channel, since_ms: int, until_ms: int
    ) -> list[CandleRecord]:
        """Return stored candles with since_ms <= open_time_ms <= until_ms, ascending."""
        with _storage_errors(channel.table_name):
            cursor = await self._database.db.execute(
                f"SELECT {_COLUMNS} FROM {quote_identifier(channel.table_name)} "
                "WHERE open_time_ms BETWEEN ? AND ? ORDER BY open_time_ms ASC",
                (since_ms, until_ms),
            )
            rows = await cursor.fetchall()
        return [self._to_record(row) for row in rows]

    async def select_extreme(
        self, channel: Channel, most_recent: bool
    ) -> CandleRecord | None:
        """Return the newest (most_recent=True) or oldest stored candle, or None."""
        order = "DESC" if most_recent else "ASC"
        with _storage_errors(channel.table_name):
            cursor = await self._database.db.execute(
                f"SELECT {_COLUMNS} FROM {quote_identifier(channel.table_name)} "
                f"ORDER BY open_time_ms {order} LIMIT 1"
            )
            row = await cursor.fetchone()
        return self._to_record(row) if row is not None else None

    async def cursor(self, channel: Channel) -> Cursor | None:
        """Derive the persisted range from the table itself. None when empty."""
        with _storage_errors(channel.table_name):
            cursor = await self._database.db.execute(
                f"SELECT MIN(open_time_ms), MAX(open_time_ms) FROM {quote_identifier(channel.table_name)}"
            )
            first, last = await cursor.fetchone()
        if first is None:
            return None
        return Cursor(covered_from_ms=first, covered_to_ms=last + channel.bucket_ms)

    async def count(self, channel: Channel) -> int:
        with _storage_errors(channel.table_name):
            cursor = await self._database.db.execute(
                f"SELECT COUNT(*) FROM {quote_identifier(channel.table_name)}"
            )
            return (await cursor.fetchone())[0]

    async def get_product_start(self, product: str) -> int | None:
        with _storage_errors("products"):
            cursor = await self._database.db.execute(
                "SELECT start_ms FROM products WHERE product = ?",
                (product,),
            )
            row = await cursor.fetchone()
        return row[0] if row is not None else None

    @staticmethod
    def _to_record(row: tuple) -> CandleRecord:
        return CandleRecord(
            open_time_ms=row[0],
            open=Decimal(row[1]),
            high=Decimal(row[2]),
            low=Decimal(row[3]),
            close=Decimal(row[4]),
            volume=Decimal(row[5]),
        )
