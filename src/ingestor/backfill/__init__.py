"""Backfill pipeline.

Window planning, the shared rate limiter, windowed fetching, idempotent
writes, channel registry with start-date discovery, and the per-channel
coordinator that ties them together.
"""

from ingestor.backfill.coordinator import BackfillCoordinator
from ingestor.backfill.fetcher import CandleFetcher
from ingestor.backfill.planner import plan, window_length_ms
from ingestor.backfill.rate_limiter import RateLimiter
from ingestor.backfill.reconciler import Reconciler
from ingestor.backfill.registry import SeriesRegistry

__all__ = [
    "BackfillCoordinator",
    "CandleFetcher",
    "RateLimiter",
    "Reconciler",
    "SeriesRegistry",
    "plan",
    "window_length_ms",
]
