"""Mining of "what follows what" transitions between consecutive activities."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from tws_analytics.clipping import (
    DAY_MS,
    HOUR_MS,
    MalformedTimestampError,
    clamp_days,
    format_timestamp,
    hour_of_day,
    non_negative,
    parse_timestamp_ms,
)
from tws_analytics.context import AnalyticsContext, SkipCounter
from tws_analytics.settings import should_suppress

# Patterns older than this are recomputed on the next read.
PATTERN_STALE_MS = HOUR_MS
MAX_PATTERNS = 50
# Transition count at which correlation strength saturates at 1.0.
TRANSITION_SATURATION_COUNT = 10

logger = logging.getLogger(__name__)

TransitionKey = tuple[str | None, str | None, str | None, str | None]


class PatternContext(BaseModel):
    category: str | None
    domain: str | None


class BehavioralPattern(BaseModel):
    id: int | None = None
    from_context: PatternContext
    to_context: PatternContext
    frequency: int
    avg_duration_before_seconds: float
    correlation_strength: float
    dominant_hour_of_day: int
    computed_at: str


@dataclass
class _TransitionStats:
    count: int = 0
    total_duration_before: float = 0.0
    hours: Counter[int] = field(default_factory=Counter)


@dataclass
class PatternCache:
    """Freshness of the stored pattern table, owned by one miner."""

    computed_at_ms: int | None = None

    def is_stale(self, now_ms: int) -> bool:
        return self.computed_at_ms is None or now_ms - self.computed_at_ms > PATTERN_STALE_MS


def correlation_strength(count: int) -> float:
    """Linear strength in [0, 1], nondecreasing in ``count``.

    This is a saturating frequency normalization, not a statistical
    correlation.
    """
    if count <= 0:
        return 0.0
    return min(1.0, count / TRANSITION_SATURATION_COUNT)


def dominant_hour(hours: Counter[int]) -> int:
    """Most frequent hour; the lowest hour wins ties."""
    if not hours:
        return 0
    return min(hours.items(), key=lambda item: (-item[1], item[0]))[0]


class TransitionMiner:
    """Builds and caches the first-order transition table.

    Two callers may both see a stale cache and both recompute. That only
    wastes work: each recompute replaces the table in one transaction.
    """

    def __init__(self, context: AnalyticsContext) -> None:
        self._ctx = context
        self.cache = PatternCache()

    def _context_of(self, row: dict[str, Any], keywords: list[str]) -> tuple[str | None, str | None]:
        if should_suppress(row.get("domain"), row.get("app_name"), keywords):
            return "neutral", None
        return row.get("category"), row.get("domain") or row.get("app_name")

    def compute_transition_patterns(self, days: float = 30) -> int:
        """Rebuild the pattern table from the last ``days`` days.

        Returns the number of distinct transitions stored.
        """
        days = clamp_days(days, default=30)
        keywords = self._ctx.settings().excluded_keywords
        now_ms = self._ctx.now_ms()
        start_ms = now_ms - days * DAY_MS
        skipped = SkipCounter("compute_transition_patterns")

        timeline: list[tuple[int, int, dict[str, Any]]] = []
        for row in self._ctx.store.get_activities_in_range(start_ms, now_ms):
            try:
                timeline.append((parse_timestamp_ms(row["started_at"]), row["id"], row))
            except MalformedTimestampError as e:
                skipped.skip(row, e)
        timeline.sort(key=lambda item: (item[0], item[1]))

        transitions: dict[TransitionKey, _TransitionStats] = {}
        for (_, _, prev), (cur_start, _, cur) in zip(timeline, timeline[1:]):
            key = (*self._context_of(prev, keywords), *self._context_of(cur, keywords))
            stats = transitions.setdefault(key, _TransitionStats())
            stats.count += 1
            stats.total_duration_before += non_negative(prev["seconds_active"])
            stats.hours[hour_of_day(cur_start, self._ctx.tz)] += 1

        computed_at = format_timestamp(now_ms)
        rows = [
            {
                "computed_at": computed_at,
                "from_category": key[0],
                "from_domain": key[1],
                "to_category": key[2],
                "to_domain": key[3],
                "transition_count": stats.count,
                "avg_duration_before": stats.total_duration_before / stats.count,
                "correlation_strength": correlation_strength(stats.count),
                "time_of_day_bucket": dominant_hour(stats.hours),
            }
            for key, stats in transitions.items()
        ]
        self._ctx.store.replace_patterns(rows)
        self.cache.computed_at_ms = now_ms
        skipped.report()
        logger.info("Computed %d behavioral patterns", len(rows))
        return len(rows)

    def _freshest_computed_at(self) -> int | None:
        if self.cache.computed_at_ms is not None:
            return self.cache.computed_at_ms
        stored = self._ctx.store.latest_pattern_computed_at()
        if stored is None:
            return None
        try:
            return parse_timestamp_ms(stored)
        except MalformedTimestampError:
            return None

    def get_behavioral_patterns(self, days: float = 30) -> list[BehavioralPattern]:
        """Return up to 50 patterns by frequency, recomputing them if stale."""
        self.cache.computed_at_ms = self._freshest_computed_at()
        if self.cache.is_stale(self._ctx.now_ms()):
            self.compute_transition_patterns(days)

        return [
            BehavioralPattern(
                id=row["id"],
                from_context=PatternContext(category=row["from_category"], domain=row["from_domain"]),
                to_context=PatternContext(category=row["to_category"], domain=row["to_domain"]),
                frequency=row["transition_count"],
                avg_duration_before_seconds=row["avg_duration_before"],
                correlation_strength=row["correlation_strength"],
                dominant_hour_of_day=row["time_of_day_bucket"],
                computed_at=row["computed_at"],
            )
            for row in self._ctx.store.get_top_patterns(MAX_PATTERNS)
        ]
