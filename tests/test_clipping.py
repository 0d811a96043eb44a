"""Tests for window clipping and hour-bucket math."""

import math
from datetime import timezone

import pytest

from tws_analytics.clipping import (
    HOUR_MS,
    MalformedTimestampError,
    clamp_days,
    clamp_window_hours,
    clip_interval,
    distribute_across_buckets,
    distribute_across_hours,
    format_timestamp,
    interval_bounds,
    local_day_start_ms,
    overlap_ms,
    parse_timestamp_ms,
    round_half_up,
    shift_hour,
    unshift_hour,
)


def ms(iso: str) -> int:
    return parse_timestamp_ms(iso)


def make_row(
    started_at: str = "2025-01-25T09:00:00Z",
    ended_at: str | None = "2025-01-25T10:00:00Z",
    seconds_active: float = 3600,
    idle_seconds: float = 0,
) -> dict:
    return {
        "id": 1,
        "started_at": started_at,
        "ended_at": ended_at,
        "seconds_active": seconds_active,
        "idle_seconds": idle_seconds,
    }


class TestTimestamps:
    """Tests for timestamp parsing and formatting."""

    def test_parse_utc_z(self):
        assert parse_timestamp_ms("1970-01-01T00:00:01Z") == 1000

    def test_parse_with_milliseconds(self):
        assert parse_timestamp_ms("1970-01-01T00:00:01.250Z") == 1250

    def test_parse_naive_is_utc(self):
        assert parse_timestamp_ms("1970-01-01T01:00:00") == HOUR_MS

    def test_parse_with_offset(self):
        assert parse_timestamp_ms("1970-01-01T02:00:00+01:00") == HOUR_MS

    @pytest.mark.parametrize("value", ["", "not a date", "2025-01-25T99:00:00Z", None, 12])
    def test_parse_malformed_raises(self, value):
        with pytest.raises(MalformedTimestampError):
            parse_timestamp_ms(value)

    def test_malformed_is_value_error(self):
        """Callers that only know about ValueError still catch it."""
        with pytest.raises(ValueError):
            parse_timestamp_ms("garbage")

    def test_format_whole_seconds(self):
        assert format_timestamp(ms("2025-01-25T10:00:00Z")) == "2025-01-25T10:00:00Z"

    def test_format_keeps_milliseconds(self):
        assert format_timestamp(ms("2025-01-25T10:00:00.042Z")) == "2025-01-25T10:00:00.042Z"


class TestOverlap:
    """Tests for the overlap primitive."""

    def test_disjoint(self):
        assert overlap_ms(0, 10, 20, 30) == 0

    def test_touching_is_empty(self):
        """Intervals are half-open, so sharing an endpoint is no overlap."""
        assert overlap_ms(0, 10, 10, 20) == 0

    def test_contained(self):
        assert overlap_ms(5, 8, 0, 10) == 3

    @pytest.mark.parametrize(
        "a_start,a_end,b_start,b_end",
        [(0, 100, 50, 60), (0, 10, 5, 500), (30, 40, 0, 35), (0, 0, 0, 10), (10, 20, 0, 5)],
    )
    def test_bounded_by_both_durations(self, a_start, a_end, b_start, b_end):
        result = overlap_ms(a_start, a_end, b_start, b_end)
        assert 0 <= result <= min(a_end - a_start, b_end - b_start)


class TestIntervalBounds:
    """Tests for effective interval ends."""

    def test_closed_interval(self):
        start, end = interval_bounds(make_row())
        assert end - start == HOUR_MS

    def test_open_interval_uses_seconds(self):
        """An open interval ends after its active plus idle seconds."""
        row = make_row(ended_at=None, seconds_active=2700, idle_seconds=300)
        start, end = interval_bounds(row)
        assert end - start == 3000 * 1000

    def test_malformed_end_raises(self):
        with pytest.raises(MalformedTimestampError):
            interval_bounds(make_row(ended_at="yesterday"))


class TestClipInterval:
    """Tests for clipping an interval to a window."""

    def test_fully_inside(self):
        clip = clip_interval(make_row(idle_seconds=600), ms("2025-01-25T00:00:00Z"), ms("2025-01-26T00:00:00Z"))
        assert clip is not None
        assert clip.active_seconds == 3600
        assert clip.idle_seconds == 600

    def test_half_overlap_scales_seconds(self):
        clip = clip_interval(
            make_row(seconds_active=3000, idle_seconds=600),
            ms("2025-01-25T09:30:00Z"),
            ms("2025-01-26T00:00:00Z"),
        )
        assert clip is not None
        assert clip.active_seconds == pytest.approx(1500)
        assert clip.idle_seconds == pytest.approx(300)
        assert clip.overlap_start_ms == ms("2025-01-25T09:30:00Z")
        assert clip.overlap_end_ms == ms("2025-01-25T10:00:00Z")

    def test_no_overlap_is_none(self):
        assert clip_interval(make_row(), ms("2025-01-25T10:00:00Z"), ms("2025-01-25T11:00:00Z")) is None

    def test_zero_seconds_is_none(self):
        row = make_row(seconds_active=0, idle_seconds=0)
        assert clip_interval(row, ms("2025-01-25T00:00:00Z"), ms("2025-01-26T00:00:00Z")) is None

    def test_negative_seconds_treated_as_zero(self):
        row = make_row(seconds_active=-50, idle_seconds=0)
        assert clip_interval(row, ms("2025-01-25T00:00:00Z"), ms("2025-01-26T00:00:00Z")) is None

    def test_malformed_start_raises(self):
        with pytest.raises(MalformedTimestampError):
            clip_interval(make_row(started_at="bad"), 0, HOUR_MS)


class TestDistributeAcrossHours:
    """Tests for splitting a clipped contribution over clock hours."""

    def test_fractions_sum_to_one(self):
        row = make_row(
            started_at="2025-01-25T09:20:00Z",
            ended_at="2025-01-25T12:05:00Z",
            seconds_active=7000,
            idle_seconds=2900,
        )
        clip = clip_interval(row, ms("2025-01-25T00:00:00Z"), ms("2025-01-26T00:00:00Z"))
        parts = list(distribute_across_hours(clip, timezone.utc))

        assert len(parts) == 4
        assert math.isclose(sum(p.fraction for p in parts), 1.0, abs_tol=1e-9)
        assert sum(p.active_seconds for p in parts) == pytest.approx(clip.active_seconds)
        assert sum(p.idle_seconds for p in parts) == pytest.approx(clip.idle_seconds)

    def test_split_across_midnight(self):
        row = make_row(
            started_at="2025-01-25T23:30:00Z",
            ended_at="2025-01-26T00:30:00Z",
            seconds_active=3600,
        )
        clip = clip_interval(row, ms("2025-01-25T00:00:00Z"), ms("2025-01-27T00:00:00Z"))
        parts = list(distribute_across_hours(clip, timezone.utc))

        assert [format_timestamp(p.bucket_start_ms) for p in parts] == [
            "2025-01-25T23:00:00Z",
            "2025-01-26T00:00:00Z",
        ]
        assert [p.active_seconds for p in parts] == [pytest.approx(1800), pytest.approx(1800)]

    def test_ends_exactly_on_hour(self):
        """An interval ending at 10:00 does not touch the 10:00 bucket."""
        clip = clip_interval(make_row(), ms("2025-01-25T00:00:00Z"), ms("2025-01-26T00:00:00Z"))
        parts = list(distribute_across_hours(clip, timezone.utc))
        assert len(parts) == 1
        assert parts[0].fraction == 1.0


class TestDistributeAcrossBuckets:
    """Tests for fixed-width bucket distribution."""

    def test_drops_portions_outside_grid(self):
        row = make_row(started_at="2025-01-25T01:30:00Z", ended_at="2025-01-25T03:30:00Z", seconds_active=7200)
        range_start = ms("2025-01-25T00:00:00Z")
        clip = clip_interval(row, range_start, ms("2025-01-26T00:00:00Z"))
        parts = dict(distribute_across_buckets(clip, range_start, HOUR_MS, 3))

        assert sorted(parts) == [1, 2]
        assert parts[1].active_seconds == pytest.approx(1800)
        assert parts[2].active_seconds == pytest.approx(3600)


class TestDayStartShift:
    """Tests for the configurable day-start hour."""

    def test_shift_unshift_are_inverses(self):
        for day_start in range(24):
            for hour in range(24):
                assert unshift_hour(shift_hour(hour, day_start), day_start) == hour

    def test_default_day_start(self):
        assert shift_hour(4) == 0
        assert shift_hour(23) == 19
        assert shift_hour(0) == 20

    def test_early_morning_belongs_to_previous_day(self):
        start = local_day_start_ms(ms("2025-01-26T02:00:00Z"), 4, timezone.utc)
        assert format_timestamp(start) == "2025-01-25T04:00:00Z"

    def test_after_day_start(self):
        start = local_day_start_ms(ms("2025-01-26T05:00:00Z"), 4, timezone.utc)
        assert format_timestamp(start) == "2025-01-26T04:00:00Z"


class TestRounding:
    """Tests for rounding and clamping helpers."""

    def test_half_rounds_up(self):
        assert round_half_up(2.5) == 3
        assert round_half_up(3.5) == 4

    def test_one_decimal(self):
        assert round_half_up(1.25, 1) == pytest.approx(1.3)

    @pytest.mark.parametrize(
        "value,expected", [(0, 1), (-5, 1), (24, 24), (500, 168), (float("nan"), 24), (None, 24)]
    )
    def test_clamp_window_hours(self, value, expected):
        assert clamp_window_hours(value) == expected

    def test_clamp_days(self):
        assert clamp_days(0) == 1
        assert clamp_days(10_000) == 365
        assert clamp_days(float("inf")) == 7
