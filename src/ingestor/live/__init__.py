"""Live update phase -- keeps backfilled channels current."""

from ingestor.live.listener import LiveListener

__all__ = ["LiveListener"]
