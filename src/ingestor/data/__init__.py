"""Candle persistence layer.

Provides SQLite database management with per-channel tables cloned from a
template, and a typed read/write store for candles and product start dates.
"""

from ingestor.data.database import CandleDatabase
from ingestor.data.store import CandleStore

__all__ = [
    "CandleDatabase",
    "CandleStore",
]
