"""Fetch window planning.

Splits a [start, end) range into consecutive windows that each fit inside
one candles call. The provider caps a call at `max_records` candles; windows
are sized for max_records - 1 so a boundary candle can never be truncated.

Windows are always produced oldest-first. The reconciler diffs by contiguous
time range and the coordinator's resume cursor is "newest stored candle",
so every producer of windows must use this one order.
"""

from ingestor.models import Channel, FetchWindow, Granularity

DEFAULT_MAX_RECORDS = 300


def window_length_ms(granularity: Granularity, max_records: int = DEFAULT_MAX_RECORDS) -> int:
    """Longest window (ms) that fits in one call at this granularity."""
    if max_records < 2:
        raise ValueError(f"max_records must be at least 2, got {max_records}")
    return (max_records - 1) * granularity.bucket_ms


def plan(
    channel: Channel,
    start_ms: int,
    end_ms: int,
    max_records: int = DEFAULT_MAX_RECORDS,
) -> list[FetchWindow]:
    """Partition [start_ms, end_ms) into ordered, non-overlapping fetch windows.

    Emits floor(total / length) full windows followed by one remainder
    window when the range is not an exact multiple. An empty or inverted
    range yields no windows.
    """
    if end_ms <= start_ms:
        return []

    length = window_length_ms(channel.granularity, max_records)
    full_windows, remaining = divmod(end_ms - start_ms, length)

    windows = [
        FetchWindow(channel, start_ms + i * length, start_ms + (i + 1) * length)
        for i in range(full_windows)
    ]
    if remaining:
        tail_start = start_ms + full_windows * length
        windows.append(FetchWindow(channel, tail_start, tail_start + remaining))
    return windows
