"""Window clipping and hour-bucket math for activity intervals.

Every report in this package works on millisecond epoch values. Intervals are
half-open ``[start, end)``; an interval with no ``ended_at`` is still open and
its effective end is ``start + (seconds_active + idle_seconds)``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Iterator, Mapping, NamedTuple

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS
WEEK_MS = 7 * DAY_MS

DEFAULT_DAY_START_HOUR = 4

TIMESTAMP_FMT = "%Y-%m-%dT%H:%M:%SZ"


class AnalyticsError(Exception):
    """Base exception for analytics errors."""

    pass


class MalformedTimestampError(AnalyticsError, ValueError):
    """Raised when a stored timestamp cannot be parsed."""

    def __init__(self, value: object) -> None:
        self.value = value
        super().__init__(f"Malformed timestamp: {value!r}")


@dataclass(frozen=True, slots=True)
class ClippedContribution:
    """One interval intersected with one query window.

    ``active_seconds`` and ``idle_seconds`` are the raw values scaled by
    ``overlap / interval duration``.
    """

    start_ms: int
    end_ms: int
    overlap_start_ms: int
    overlap_end_ms: int
    active_seconds: float
    idle_seconds: float

    @property
    def overlap_ms(self) -> int:
        return self.overlap_end_ms - self.overlap_start_ms


class BucketSlice(NamedTuple):
    """Share of a clipped contribution that falls in one bucket."""

    bucket_start_ms: int
    fraction: float
    active_seconds: float
    idle_seconds: float


def parse_timestamp_ms(value: Any) -> int:
    """Parse an ISO 8601 timestamp to epoch milliseconds.

    Naive timestamps are read as UTC.

    Raises:
        MalformedTimestampError: If the value is not a parseable timestamp.
    """
    if not isinstance(value, str) or not value:
        raise MalformedTimestampError(value)
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise MalformedTimestampError(value) from None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return round(dt.timestamp() * 1000)


def format_timestamp(ms: int) -> str:
    """Format epoch milliseconds as a UTC ISO 8601 string ending in ``Z``."""
    dt = datetime.fromtimestamp(ms / 1000, timezone.utc)
    if ms % 1000 == 0:
        return dt.strftime(TIMESTAMP_FMT)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ms % 1000:03d}Z"


def to_ms(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return round(dt.timestamp() * 1000)


def overlap_ms(a_start: int, a_end: int, b_start: int, b_end: int) -> int:
    """Length of the intersection of ``[a_start, a_end)`` and ``[b_start, b_end)``."""
    return max(0, min(a_end, b_end) - max(a_start, b_start))


def interval_bounds(interval: Mapping[str, Any]) -> tuple[int, int]:
    """Return ``(start_ms, end_ms)`` for an activity row.

    Raises:
        MalformedTimestampError: If ``started_at`` or a present ``ended_at``
            cannot be parsed.
    """
    start_ms = parse_timestamp_ms(interval.get("started_at"))
    ended_at = interval.get("ended_at")
    if ended_at is None:
        total = non_negative(interval.get("seconds_active")) + non_negative(
            interval.get("idle_seconds")
        )
        return start_ms, start_ms + round(total * 1000)
    return start_ms, parse_timestamp_ms(ended_at)


def clip_interval(
    interval: Mapping[str, Any], range_start_ms: int, range_end_ms: int
) -> ClippedContribution | None:
    """Clip an activity row to ``[range_start_ms, range_end_ms)``.

    Returns None when the interval carries no seconds or does not intersect
    the range.

    Raises:
        MalformedTimestampError: If the row's timestamps cannot be parsed.
    """
    start_ms, end_ms = interval_bounds(interval)
    active_raw = non_negative(interval.get("seconds_active"))
    idle_raw = non_negative(interval.get("idle_seconds"))
    if active_raw + idle_raw <= 0:
        return None

    overlap = overlap_ms(start_ms, end_ms, range_start_ms, range_end_ms)
    if overlap <= 0:
        return None

    ratio = min(1.0, overlap / max(1, end_ms - start_ms))
    return ClippedContribution(
        start_ms=start_ms,
        end_ms=end_ms,
        overlap_start_ms=max(start_ms, range_start_ms),
        overlap_end_ms=min(end_ms, range_end_ms),
        active_seconds=active_raw * ratio,
        idle_seconds=idle_raw * ratio,
    )


def distribute_across_hours(clip: ClippedContribution, tz: tzinfo) -> Iterator[BucketSlice]:
    """Spread a clipped contribution over the local clock hours it touches.

    Fractions across the yielded slices sum to 1.
    """
    span = clip.overlap_ms
    if span <= 0:
        return
    hour_start = floor_to_hour_ms(clip.overlap_start_ms, tz)
    last_hour_start = floor_to_hour_ms(clip.overlap_end_ms - 1, tz)
    while hour_start <= last_hour_start:
        bucket_overlap = overlap_ms(
            clip.overlap_start_ms, clip.overlap_end_ms, hour_start, hour_start + HOUR_MS
        )
        if bucket_overlap > 0:
            fraction = bucket_overlap / span
            yield BucketSlice(
                hour_start,
                fraction,
                clip.active_seconds * fraction,
                clip.idle_seconds * fraction,
            )
        hour_start += HOUR_MS


def distribute_across_buckets(
    clip: ClippedContribution,
    range_start_ms: int,
    bucket_ms: int,
    bucket_count: int,
) -> Iterator[tuple[int, BucketSlice]]:
    """Spread a clipped contribution over fixed-width buckets from ``range_start_ms``.

    Yields ``(bucket_index, slice)`` pairs; portions outside the bucket grid
    are dropped.
    """
    span = clip.overlap_ms
    if span <= 0 or bucket_count <= 0:
        return
    first = max(0, (clip.overlap_start_ms - range_start_ms) // bucket_ms)
    last = min(bucket_count - 1, (clip.overlap_end_ms - 1 - range_start_ms) // bucket_ms)
    for index in range(first, last + 1):
        bucket_start = range_start_ms + index * bucket_ms
        bucket_overlap = overlap_ms(
            clip.overlap_start_ms, clip.overlap_end_ms, bucket_start, bucket_start + bucket_ms
        )
        if bucket_overlap <= 0:
            continue
        fraction = bucket_overlap / span
        yield index, BucketSlice(
            bucket_start,
            fraction,
            clip.active_seconds * fraction,
            clip.idle_seconds * fraction,
        )


def floor_to_hour_ms(ms: int, tz: tzinfo) -> int:
    """Start of the local clock hour containing ``ms``."""
    dt = datetime.fromtimestamp(ms / 1000, tz).replace(minute=0, second=0, microsecond=0)
    return to_ms(dt)


def hour_of_day(ms: int, tz: tzinfo) -> int:
    return datetime.fromtimestamp(ms / 1000, tz).hour


def shift_hour(hour: int, day_start_hour: int = DEFAULT_DAY_START_HOUR) -> int:
    """Map a clock hour to its position in a day starting at ``day_start_hour``."""
    return ((hour - day_start_hour) % 24 + 24) % 24


def unshift_hour(shifted: int, day_start_hour: int = DEFAULT_DAY_START_HOUR) -> int:
    """Inverse of :func:`shift_hour`."""
    return (shifted + day_start_hour) % 24


def local_day_start_ms(
    reference_ms: int, day_start_hour: int = DEFAULT_DAY_START_HOUR, tz: tzinfo = timezone.utc
) -> int:
    """Start of the shifted local day containing ``reference_ms``.

    With the default day start of 4, 02:00 belongs to the previous day.
    """
    dt = datetime.fromtimestamp(reference_ms / 1000, tz)
    if dt.hour < day_start_hour:
        dt -= timedelta(days=1)
    return to_ms(dt.replace(hour=day_start_hour, minute=0, second=0, microsecond=0))


def day_key(ms: int, tz: tzinfo) -> str:
    return datetime.fromtimestamp(ms / 1000, tz).strftime("%Y-%m-%d")


def round_half_up(value: float, digits: int = 0) -> float:
    """Round like a calculator: 0.5 goes up, unlike :func:`round`."""
    factor = 10**digits
    return math.floor(value * factor + 0.5) / factor


def non_negative(value: Any) -> float:
    """Coerce a stored seconds value to a finite float >= 0; junk becomes 0."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number):
        return 0.0
    return max(0.0, number)


MIN_WINDOW_HOURS = 1
MAX_WINDOW_HOURS = 168
MAX_REPORT_DAYS = 365


def clamp_window_hours(window_hours: float | None, default: int = 24) -> int:
    """Round and clamp a window length to ``[MIN_WINDOW_HOURS, MAX_WINDOW_HOURS]``."""
    return clamp_int(window_hours, default, MIN_WINDOW_HOURS, MAX_WINDOW_HOURS)


def clamp_days(days: float | None, default: int = 7) -> int:
    """Round and clamp a report length in days to ``[1, MAX_REPORT_DAYS]``."""
    return clamp_int(days, default, 1, MAX_REPORT_DAYS)


def clamp_int(value: Any, default: int, low: int, high: int) -> int:
    """Round half-up and clamp to ``[low, high]``; non-numbers take ``default``."""
    number = _finite_or(value, default)
    return min(max(int(round_half_up(number)), low), high)


def _finite_or(value: Any, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default
