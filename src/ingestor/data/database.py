"""Async SQLite database manager for candle persistence.

Uses aiosqlite for non-blocking database operations with WAL mode
for concurrent read/write performance. Per-channel candle tables are
created from the `candle` template table so every channel shares one
schema and one uniqueness rule on open_time_ms.
"""

import os
from typing import Self

import aiosqlite

from ingestor.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1

TEMPLATE_TABLE = "candle"

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS candle (
    open_time_ms INTEGER NOT NULL UNIQUE,
    open TEXT NOT NULL,
    high TEXT NOT NULL,
    low TEXT NOT NULL,
    close TEXT NOT NULL,
    volume TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS products (
    product TEXT PRIMARY KEY,
    start_ms INTEGER NOT NULL,
    discovered_at INTEGER NOT NULL
);
"""


def quote_identifier(name: str) -> str:
    """Quote an identifier for interpolation into DDL."""
    return '"' + name.replace('"', '""') + '"'


class CandleDatabase:
    """Async SQLite connection manager for candle storage.

    Manages database lifecycle including schema creation, WAL mode
    configuration, table DDL and clean resource cleanup.

    Usage:
        async with CandleDatabase("data/candles.db") as database:
            await database.create_table_like("candle_eth_usd_60")
    """

    def __init__(self, db_path: str = "data/candles.db") -> None:
        self._db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    @property
    def db(self) -> aiosqlite.Connection:
        """Access the raw aiosqlite connection.

        Raises RuntimeError if not connected.
        """
        if self._connection is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._connection

    async def connect(self) -> None:
        """Open database connection, configure pragmas, and create base schema."""
        db_dir = os.path.dirname(self._db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        self._connection = await aiosqlite.connect(self._db_path)

        await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.execute("PRAGMA synchronous=NORMAL")

        await self._connection.executescript(_CREATE_TABLES_SQL)
        await self._connection.commit()
        await self._ensure_schema_version()

        logger.info("candle_db_connected", db_path=self._db_path)

    async def close(self) -> None:
        """Close the database connection if open."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("candle_db_closed", db_path=self._db_path)

    # ──────────────────────────────────────────────
    # Table DDL
    # ──────────────────────────────────────────────

    async def has_table(self, name: str) -> bool:
        cursor = await self.db.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
            (name,),
        )
        return await cursor.fetchone() is not None

    async def create_table_like(self, name: str, template: str = TEMPLATE_TABLE) -> None:
        """Create `name` with the exact schema (constraints included) of `template`.

        No-op when the table already exists.
        """
        cursor = await self.db.execute(
            "SELECT sql FROM sqlite_master WHERE type = 'table' AND name = ?",
            (template,),
        )
        row = await cursor.fetchone()
        if row is None:
            raise RuntimeError(f"Template table {template} does not exist")

        # sqlite_master keeps the original statement; only the name changes.
        columns = row[0][row[0].index("(") :]
        await self.db.execute(f"CREATE TABLE IF NOT EXISTS {quote_identifier(name)} {columns}")
        await self.db.commit()
        logger.debug("table_created", table=name, template=template)

    async def drop_table(self, name: str) -> None:
        await self.db.execute(f"DROP TABLE IF EXISTS {quote_identifier(name)}")
        await self.db.commit()
        logger.info("table_dropped", table=name)

    async def _ensure_schema_version(self) -> None:
        """Insert schema version if not already set."""
        cursor = await self.db.execute("SELECT version FROM schema_version LIMIT 1")
        row = await cursor.fetchone()
        if row is None:
            await self.db.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            await self.db.commit()
            logger.info("schema_version_set", version=SCHEMA_VERSION)

    async def __aenter__(self) -> Self:
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        """Async context manager exit."""
        await self.close()
