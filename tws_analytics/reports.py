"""On-demand aggregate reports over activity intervals.

Reports are read-only and computed fresh on every call. Each one picks a
window ending now, pulls the intervals overlapping it, clips them, applies
keyword suppression and folds the result into buckets. Reading and writing
time always counts as productive. Hourly rollups place it in clock hours;
the overview takes its writing total from the daily rollups.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from collections.abc import Iterator
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from tws_analytics.clipping import (
    DAY_MS,
    HOUR_MS,
    WEEK_MS,
    MalformedTimestampError,
    clamp_days,
    clip_interval,
    day_key,
    distribute_across_buckets,
    distribute_across_hours,
    hour_of_day,
    local_day_start_ms,
    non_negative,
    overlap_ms,
    parse_timestamp_ms,
    round_half_up,
    shift_hour,
    unshift_hour,
)
from tws_analytics.context import AnalyticsContext, SkipCounter
from tws_analytics.settings import should_suppress

FocusTrend = Literal["improving", "stable", "declining"]
Granularity = Literal["hour", "day", "week"]

CATEGORY_ORDER = ("productive", "neutral", "frivolity", "draining", "emergency")

# (bucket width, bucket count)
TREND_SHAPES: dict[str, tuple[int, int]] = {
    "hour": (HOUR_MS, 24),
    "day": (DAY_MS, 30),
    "week": (WEEK_MS, 12),
}

NEUTRAL_SCORE = 50
DEFAULT_PEAK_HOUR = 9
DEFAULT_RISK_HOUR = 15
IMPROVING_RATIO = 1.1
DECLINING_RATIO = 0.9
# Cap on pattern-derived insight lines. Reading and writing lines come on top.
MAX_GENERATED_INSIGHTS = 5

logger = logging.getLogger(__name__)


class AnalyticsOverview(BaseModel):
    period_days: int
    total_active_hours: float
    productivity_score: int
    deep_work_seconds: int
    top_engagement_domain: str | None
    focus_trend: FocusTrend
    peak_productive_hour: int
    risk_hour: int
    avg_session_length: int
    total_sessions: int
    category_breakdown: dict[str, float]
    insights: list[str] = Field(default_factory=list)
    skipped_intervals: int = 0


class TimeOfDayStats(BaseModel):
    """Totals for one clock hour, positioned by the configured day start."""

    hour: int
    productive: float = 0
    neutral: float = 0
    frivolity: float = 0
    draining: float = 0
    emergency: float = 0
    idle: float = 0
    avg_engagement: int = 0
    dominant_category: str = "idle"
    dominant_domain: str | None = None
    sample_count: int = 0


class TrendPoint(BaseModel):
    timestamp: str
    label: str
    productive: float = 0
    neutral: float = 0
    frivolity: float = 0
    emergency: float = 0
    idle: float = 0
    deep_work: int = 0
    engagement: int = 0
    quality_score: int = 0


def empty_breakdown() -> dict[str, float]:
    return {category: 0.0 for category in (*CATEGORY_ORDER, "idle")}


def format_hour(hour: int) -> str:
    """Format a clock hour as '9AM' / '3PM'."""
    suffix = "PM" if hour >= 12 else "AM"
    return f"{hour % 12 or 12}{suffix}"


def argmax_hour(values: list[float], default: int) -> int:
    """Hour with the largest positive total; the lowest hour wins ties."""
    best_hour, best_value = default, 0.0
    for hour, value in enumerate(values):
        if value > best_value:
            best_hour, best_value = hour, value
    return best_hour


def top_key(totals: dict[str, float]) -> str | None:
    """Key with the most seconds; alphabetical order breaks ties."""
    candidates = [(key, value) for key, value in totals.items() if value > 0]
    if not candidates:
        return None
    return min(candidates, key=lambda item: (-item[1], item[0]))[0]


def dominant_category(bucket: TimeOfDayStats) -> str:
    best, best_value = "idle", 0.0
    for category in (*CATEGORY_ORDER, "idle"):
        value = getattr(bucket, category)
        if value > best_value:
            best, best_value = category, value
    return best


class ReportBuilder:
    """Builds the overview, time-of-day and trend reports."""

    def __init__(self, context: AnalyticsContext) -> None:
        self._ctx = context

    def _classify(self, row: dict[str, Any], keywords: list[str]) -> tuple[str, str | None]:
        """Return ``(category, domain)`` after suppression.

        Suppressed rows become neutral and lose their domain so they never
        show up in rankings.
        """
        if should_suppress(row.get("domain"), row.get("app_name"), keywords):
            return "neutral", None
        category = row.get("category") or "neutral"
        if category not in CATEGORY_ORDER:
            category = "neutral"
        return category, row.get("domain") or row.get("app_name") or "Unknown"

    def _auxiliary_hours(self, start_ms: int, end_ms: int) -> Iterator[tuple[str, int, float]]:
        """Yield ``(stream, hour_start_ms, active_seconds)`` for reading and writing.

        Only hours starting inside ``[start_ms, end_ms)`` are included.
        """
        store = self._ctx.store
        for stream, rows in (
            ("reading", store.get_reading_hourly(start_ms, end_ms)),
            ("writing", store.get_writing_hourly(start_ms, end_ms)),
        ):
            for row in rows:
                try:
                    hour_start = parse_timestamp_ms(row["hour_start"])
                except MalformedTimestampError:
                    logger.warning("Skipping %s rollup with bad hour_start %r", stream, row["hour_start"])
                    continue
                if start_ms <= hour_start < end_ms:
                    yield stream, hour_start, non_negative(row["active_seconds"])

    def _focus_spans(self, start_ms: int, end_ms: int) -> Iterator[tuple[int, int]]:
        """Yield clipped ``(start, end)`` spans of pomodoro sessions.

        A session counts until the earliest of its planned end, its actual
        end (now, if still running) and the window end.
        """
        now_ms = self._ctx.now_ms()
        for row in self._ctx.store.get_focus_sessions_in_range(start_ms, end_ms):
            try:
                started = parse_timestamp_ms(row["started_at"])
                actual_end = parse_timestamp_ms(row["ended_at"]) if row["ended_at"] else now_ms
            except MalformedTimestampError as e:
                logger.warning("Skipping focus session %s: %s", row.get("id"), e)
                continue
            planned_end = started + max(0, row["planned_duration_sec"] or 0) * 1000
            span_start = max(started, start_ms)
            span_end = max(span_start, min(planned_end, actual_end, end_ms))
            if span_end > span_start:
                yield span_start, span_end

    def _writing_daily_seconds(self, start_ms: int, end_ms: int, day_start_hour: int) -> float:
        """Writing seconds from the daily rollups of every shifted day the window touches."""
        tz = self._ctx.tz
        first_day = day_key(local_day_start_ms(start_ms, day_start_hour, tz), tz)
        last_day = day_key(local_day_start_ms(end_ms, day_start_hour, tz), tz)
        rows = self._ctx.store.get_writing_daily(first_day, last_day)
        return sum(non_negative(row["active_seconds"]) for row in rows)

    def deep_work_seconds(self, start_ms: int, end_ms: int) -> int:
        return sum(
            int(round_half_up((span_end - span_start) / 1000))
            for span_start, span_end in self._focus_spans(start_ms, end_ms)
        )

    def get_overview(self, days: float = 7) -> AnalyticsOverview:
        """Summarize the last ``days`` days."""
        days = clamp_days(days)
        settings = self._ctx.settings()
        keywords = settings.excluded_keywords
        tz = self._ctx.tz
        end_ms = self._ctx.now_ms()
        start_ms = end_ms - days * DAY_MS

        totals = empty_breakdown()
        domain_totals: defaultdict[str, float] = defaultdict(float)
        hourly_productive = [0.0] * 24
        hourly_distraction = [0.0] * 24
        total_active = 0.0
        sessions: list[tuple[int, dict[str, Any], str]] = []
        skipped = SkipCounter("overview")

        for row in self._ctx.store.get_activities_in_range(start_ms, end_ms):
            try:
                clip = clip_interval(row, start_ms, end_ms)
            except MalformedTimestampError as e:
                skipped.skip(row, e)
                continue
            if clip is None:
                continue

            category, domain = self._classify(row, keywords)
            sessions.append((clip.start_ms, row, category))
            total_active += clip.active_seconds
            totals[category] += clip.active_seconds
            totals["idle"] += clip.idle_seconds
            if domain is not None:
                domain_totals[domain] += clip.active_seconds

            for part in distribute_across_hours(clip, tz):
                hour = hour_of_day(part.bucket_start_ms, tz)
                if category == "productive":
                    hourly_productive[hour] += part.active_seconds
                elif category in ("frivolity", "draining"):
                    hourly_distraction[hour] += part.active_seconds

        auxiliary = {"reading": 0.0, "writing": 0.0}
        for stream, hour_start, active in self._auxiliary_hours(start_ms, end_ms):
            if stream == "reading":
                auxiliary["reading"] += active
            hourly_productive[hour_of_day(hour_start, tz)] += active
        auxiliary["writing"] = self._writing_daily_seconds(start_ms, end_ms, settings.day_start_hour)
        for seconds in auxiliary.values():
            total_active += seconds
            totals["productive"] += seconds

        peak_hour = argmax_hour(hourly_productive, DEFAULT_PEAK_HOUR)
        risk_hour = argmax_hour(hourly_distraction, DEFAULT_RISK_HOUR)

        categorized = sum(totals[category] for category in CATEGORY_ORDER)
        productivity_score = (
            int(round_half_up(totals["productive"] / categorized * 100))
            if categorized > 0
            else NEUTRAL_SCORE
        )
        focus_trend = self._focus_trend(sessions)

        insights = self._insights(totals, peak_hour, risk_hour, focus_trend)
        if auxiliary["reading"] > 0:
            minutes = int(round_half_up(auxiliary["reading"] / 60))
            insights.insert(0, f"Reading contributed {minutes}m of productive time in this window")
        if auxiliary["writing"] > 0:
            minutes = int(round_half_up(auxiliary["writing"] / 60))
            insights.insert(0, f"Writing contributed {minutes}m of productive time in this window")

        return AnalyticsOverview(
            period_days=days,
            total_active_hours=round_half_up(total_active / 3600, 1),
            productivity_score=productivity_score,
            deep_work_seconds=self.deep_work_seconds(start_ms, end_ms),
            top_engagement_domain=top_key(domain_totals),
            focus_trend=focus_trend,
            peak_productive_hour=peak_hour,
            risk_hour=risk_hour,
            avg_session_length=int(round_half_up(total_active / len(sessions))) if sessions else 0,
            total_sessions=len(sessions),
            category_breakdown=totals,
            insights=insights,
            skipped_intervals=skipped.report(),
        )

    @staticmethod
    def _focus_trend(sessions: list[tuple[int, dict[str, Any], str]]) -> FocusTrend:
        """Compare productive seconds in the newer half of intervals to the older half.

        With an odd count the extra interval goes to the older half.
        """
        ordered = sorted(sessions, key=lambda item: item[0])
        split = len(ordered) - len(ordered) // 2

        def productive_seconds(items: list[tuple[int, dict[str, Any], str]]) -> float:
            return sum(
                non_negative(row["seconds_active"])
                for _, row, category in items
                if category == "productive"
            )

        older = productive_seconds(ordered[:split])
        recent = productive_seconds(ordered[split:])
        if recent > older * IMPROVING_RATIO:
            return "improving"
        if recent < older * DECLINING_RATIO:
            return "declining"
        return "stable"

    @staticmethod
    def _insights(
        totals: dict[str, float], peak_hour: int, risk_hour: int, trend: FocusTrend
    ) -> list[str]:
        insights = [f"Your peak focus hour is {format_hour(peak_hour)}, schedule deep work there"]

        distraction = totals["frivolity"] + totals["draining"]
        if distraction > totals["productive"] * 0.3:
            insights.append(f"{format_hour(risk_hour)} is your highest risk hour for distraction")

        if trend == "improving":
            insights.append("Your focus has been improving, keep it up")
        elif trend == "declining":
            insights.append("Focus is trending down, consider a reset tomorrow")

        active = sum(totals[category] for category in CATEGORY_ORDER)
        tracked = active + totals["idle"]
        if tracked > 0 and totals["idle"] / tracked > 0.3:
            percent = int(round_half_up(totals["idle"] / tracked * 100))
            insights.append(f"{percent}% idle time detected, are you stepping away often?")

        distraction_ratio = distraction / max(1.0, active)
        percent = int(round_half_up(distraction_ratio * 100))
        if distraction_ratio > 0.25:
            insights.append(f"{percent}% distraction (frivolous + draining), higher than average")
        elif distraction_ratio < 0.1:
            insights.append(f"Only {percent}% distraction, excellent discipline")

        return insights[:MAX_GENERATED_INSIGHTS]

    def get_time_of_day_analysis(self, days: float = 7) -> list[TimeOfDayStats]:
        """Return 24 buckets, the first one starting at the configured day-start hour."""
        days = clamp_days(days)
        settings = self._ctx.settings()
        keywords = settings.excluded_keywords
        day_start = settings.day_start_hour
        tz = self._ctx.tz
        end_ms = self._ctx.now_ms()
        start_ms = end_ms - days * DAY_MS

        buckets = [TimeOfDayStats(hour=unshift_hour(index, day_start)) for index in range(24)]
        domain_seconds: list[defaultdict[str, float]] = [defaultdict(float) for _ in range(24)]
        skipped = SkipCounter("time_of_day")

        for row in self._ctx.store.get_activities_in_range(start_ms, end_ms):
            try:
                clip = clip_interval(row, start_ms, end_ms)
            except MalformedTimestampError as e:
                skipped.skip(row, e)
                continue
            if clip is None:
                continue

            category, domain = self._classify(row, keywords)
            for part in distribute_across_hours(clip, tz):
                index = shift_hour(hour_of_day(part.bucket_start_ms, tz), day_start)
                bucket = buckets[index]
                bucket.sample_count += 1
                bucket.idle += part.idle_seconds
                setattr(bucket, category, getattr(bucket, category) + part.active_seconds)
                if domain is not None:
                    domain_seconds[index][domain] += part.active_seconds

        for _, hour_start, active in self._auxiliary_hours(start_ms, end_ms):
            bucket = buckets[shift_hour(hour_of_day(hour_start, tz), day_start)]
            bucket.productive += active
            bucket.sample_count += 1

        for index, bucket in enumerate(buckets):
            bucket.dominant_category = dominant_category(bucket)
            bucket.dominant_domain = top_key(domain_seconds[index])
            active = sum(getattr(bucket, category) for category in CATEGORY_ORDER)
            tracked = active + bucket.idle
            bucket.avg_engagement = int(round_half_up(active / tracked * 100)) if tracked > 0 else 0

        skipped.report()
        return buckets

    def get_trends(self, granularity: Granularity = "day") -> list[TrendPoint]:
        """Return fixed-width buckets ending now: 24 hours, 30 days or 12 weeks.

        Daily buckets are aligned to the configured day-start hour.

        Raises:
            ValueError: If ``granularity`` is not hour, day or week.
        """
        if granularity not in TREND_SHAPES:
            raise ValueError(f"Unknown granularity: {granularity!r}")
        bucket_ms, bucket_count = TREND_SHAPES[granularity]
        settings = self._ctx.settings()
        keywords = settings.excluded_keywords
        tz = self._ctx.tz
        end_ms = self._ctx.now_ms()
        if granularity == "day":
            start_ms = (
                local_day_start_ms(end_ms, settings.day_start_hour, tz)
                - (bucket_count - 1) * bucket_ms
            )
        else:
            start_ms = end_ms - bucket_count * bucket_ms

        points = [
            TrendPoint(
                timestamp=datetime.fromtimestamp((start_ms + i * bucket_ms) / 1000, tz).isoformat(),
                label=self._trend_label(granularity, start_ms + i * bucket_ms, end_ms),
            )
            for i in range(bucket_count)
        ]
        skipped = SkipCounter("trends")

        for row in self._ctx.store.get_activities_in_range(start_ms, end_ms):
            try:
                clip = clip_interval(row, start_ms, end_ms)
            except MalformedTimestampError as e:
                skipped.skip(row, e)
                continue
            if clip is None:
                continue

            category, _ = self._classify(row, keywords)
            if category == "draining":
                category = "frivolity"
            for index, part in distribute_across_buckets(clip, start_ms, bucket_ms, bucket_count):
                point = points[index]
                setattr(point, category, getattr(point, category) + part.active_seconds)
                point.idle += part.idle_seconds

        for _, hour_start, active in self._auxiliary_hours(start_ms, end_ms):
            index = (hour_start - start_ms) // bucket_ms
            if 0 <= index < bucket_count:
                points[index].productive += active

        for span_start, span_end in self._focus_spans(start_ms, end_ms):
            first = (span_start - start_ms) // bucket_ms
            last = min(bucket_count - 1, (span_end - 1 - start_ms) // bucket_ms)
            for index in range(max(0, first), last + 1):
                bucket_start = start_ms + index * bucket_ms
                overlap = overlap_ms(span_start, span_end, bucket_start, bucket_start + bucket_ms)
                if overlap > 0:
                    points[index].deep_work += int(round_half_up(overlap / 1000))

        for point in points:
            active = point.productive + point.neutral + point.frivolity + point.emergency
            tracked = active + point.idle
            point.engagement = int(round_half_up(active / tracked * 100)) if tracked > 0 else 0
            point.quality_score = (
                int(round_half_up(point.productive / active * 100)) if active > 0 else NEUTRAL_SCORE
            )

        skipped.report()
        return points

    def _trend_label(self, granularity: str, bucket_start_ms: int, now_ms: int) -> str:
        moment = datetime.fromtimestamp(bucket_start_ms / 1000, self._ctx.tz)
        if granularity == "hour":
            return moment.strftime("%H:%M")
        if granularity == "day":
            return f"{moment.strftime('%b')} {moment.day}"
        return f"Week {math.ceil((now_ms - bucket_start_ms) / WEEK_MS)}"
