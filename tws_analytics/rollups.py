"""Hourly activity rollups for sync hand-off."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime

from pydantic import BaseModel

from tws_analytics.clipping import (
    HOUR_MS,
    MalformedTimestampError,
    clamp_window_hours,
    floor_to_hour_ms,
    format_timestamp,
    non_negative,
    parse_timestamp_ms,
    round_half_up,
)
from tws_analytics.context import AnalyticsContext, SkipCounter
from tws_analytics.db import ActivityRollup
from tws_analytics.settings import should_suppress

ROLLUP_CATEGORIES = ("productive", "neutral", "frivolity")

logger = logging.getLogger(__name__)


class SummarySlot(BaseModel):
    start: str
    hour: str
    productive: float = 0
    neutral: float = 0
    frivolity: float = 0
    idle: float = 0
    dominant: str = "idle"


class ActivitySummary(BaseModel):
    window_hours: int
    sample_count: int
    total_seconds: float
    totals_by_category: dict[str, float]
    timeline: list[SummarySlot]


class RollupAccumulator:
    """Turns raw intervals into per-device hourly totals and stores them."""

    def __init__(self, context: AnalyticsContext) -> None:
        self._ctx = context

    def generate_local_rollups(
        self, device_id: str, start_iso: str, end_iso: str
    ) -> list[ActivityRollup]:
        """Bucket intervals started in ``[start_iso, end_iso)`` by their start hour.

        Intervals are not clipped: each lands whole in the hour it started.
        Suppressed, uncategorized, draining and emergency time counts as
        neutral; idle seconds go to ``idle``.
        """
        start_ms = parse_timestamp_ms(start_iso)
        end_ms = parse_timestamp_ms(end_iso)
        keywords = self._ctx.settings().excluded_keywords
        updated_at = format_timestamp(self._ctx.now_ms())
        skipped = SkipCounter("generate_local_rollups")

        buckets: dict[int, ActivityRollup] = {}
        for row in self._ctx.store.get_activities_started_between(start_ms, end_ms):
            try:
                started_ms = parse_timestamp_ms(row["started_at"])
            except MalformedTimestampError as e:
                skipped.skip(row, e)
                continue
            if not start_ms <= started_ms < end_ms:
                continue

            hour_start = floor_to_hour_ms(started_ms, self._ctx.tz)
            bucket = buckets.get(hour_start)
            if bucket is None:
                bucket = ActivityRollup(
                    device_id=device_id,
                    hour_start=format_timestamp(hour_start),
                    updated_at=updated_at,
                )
                buckets[hour_start] = bucket

            active = round_half_up(non_negative(row["seconds_active"]))
            idle = round_half_up(non_negative(row["idle_seconds"]))
            category = row["category"]
            if should_suppress(row["domain"], row["app_name"], keywords):
                category = "neutral"
            if category not in ROLLUP_CATEGORIES:
                category = "neutral"
            setattr(bucket, category, getattr(bucket, category) + active)
            bucket.idle += idle

        skipped.report()
        return [buckets[key] for key in sorted(buckets)]

    def upsert_rollups(self, rollups: Iterable[ActivityRollup]) -> int:
        """Store rollups, replacing any existing row for the same device and hour."""
        count = self._ctx.store.upsert_activity_rollups(rollups)
        logger.info("Upserted %d activity rollups", count)
        return count

    def list_since(self, device_id: str, updated_after_iso: str) -> list[ActivityRollup]:
        """Rollups for ``device_id`` written at or after ``updated_after_iso``."""
        updated_after = format_timestamp(parse_timestamp_ms(updated_after_iso))
        return self._ctx.store.list_activity_rollups_since(device_id, updated_after)

    def get_summary(self, device_id: str | None = None, window_hours: float = 24) -> ActivitySummary:
        """Summarize stored rollups over the last ``window_hours`` clock hours.

        Args:
            device_id: One device, or None for all devices.
            window_hours: Clamped to 1..168; the current hour is the last slot.
        """
        hours = clamp_window_hours(window_hours)
        window_start = floor_to_hour_ms(self._ctx.now_ms(), self._ctx.tz) - (hours - 1) * HOUR_MS
        rows = self._ctx.store.list_activity_rollups_for_window(
            format_timestamp(window_start), device_id=device_id
        )

        timeline = [
            SummarySlot(
                start=format_timestamp(window_start + i * HOUR_MS),
                hour=datetime.fromtimestamp((window_start + i * HOUR_MS) / 1000, self._ctx.tz).strftime(
                    "%H:%M"
                ),
            )
            for i in range(hours)
        ]
        totals = {"productive": 0.0, "neutral": 0.0, "frivolity": 0.0, "idle": 0.0, "uncategorised": 0.0}
        total_seconds = 0.0

        for row in rows:
            totals["productive"] += row.productive
            totals["neutral"] += row.neutral
            totals["frivolity"] += row.frivolity
            totals["idle"] += row.idle
            total_seconds += row.productive + row.neutral + row.frivolity

            try:
                index = (parse_timestamp_ms(row.hour_start) - window_start) // HOUR_MS
            except MalformedTimestampError:
                continue
            if 0 <= index < hours:
                slot = timeline[index]
                slot.productive += row.productive
                slot.neutral += row.neutral
                slot.frivolity += row.frivolity
                slot.idle += row.idle

        for slot in timeline:
            slot.dominant = _dominant(
                [
                    ("productive", slot.productive),
                    ("neutral", slot.neutral),
                    ("frivolity", slot.frivolity),
                    ("idle", slot.idle),
                ]
            )

        return ActivitySummary(
            window_hours=hours,
            sample_count=len(rows),
            total_seconds=total_seconds,
            totals_by_category=totals,
            timeline=timeline,
        )


def _dominant(values: list[tuple[str, float]]) -> str:
    """First key with the largest positive value, or ``idle`` if all are zero."""
    best_key, best_value = "idle", 0.0
    for key, value in values:
        if value > best_value:
            best_key, best_value = key, value
    return best_key
