"""Custom exceptions for the candle ingestor.

Fetch, write and discovery failures live here to avoid circular imports
between the exchange, storage and backfill layers.
"""


class IngestError(Exception):
    """Base exception for all ingestor errors."""


class FetchError(IngestError):
    """Raised when a windowed candle fetch fails."""

    transient: bool = False


class TransientFetchError(FetchError):
    """Network error or provider rejection; the same window may be retried."""

    transient = True

    def __init__(self, message: str, rate_limited: bool = False) -> None:
        super().__init__(message)
        self.rate_limited = rate_limited


class PermanentFetchError(FetchError):
    """Malformed window or unknown product; retrying cannot succeed."""


class UniqueViolation(IngestError):
    """Raised by storage when an insert collides with an existing open time."""


class WriteError(IngestError):
    """Raised for any storage failure (read or write) other than a unique violation."""


class DiscoveryError(IngestError):
    """Raised when the earliest available candle for a product cannot be located."""
