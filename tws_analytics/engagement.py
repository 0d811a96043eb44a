"""Per-domain engagement and fixation metrics."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Literal

from pydantic import BaseModel

from tws_analytics.clipping import (
    DAY_MS,
    MalformedTimestampError,
    clamp_days,
    clip_interval,
    parse_timestamp_ms,
    round_half_up,
)
from tws_analytics.context import AnalyticsContext, SkipCounter
from tws_analytics.db import BehaviorEvent

EngagementLevel = Literal["intense", "high", "moderate", "passive", "low"]

# Fixation score weights: clicks count more than keystrokes, and fast
# scrolling discounts both.
CLICK_WEIGHT = 5
KEYSTROKE_WEIGHT = 2
SCROLL_VELOCITY_DAMPING = 1000
MAX_FIXATION_SCORE = 100

# Lower bound of each level, checked in order.
ENGAGEMENT_THRESHOLDS: tuple[tuple[int, EngagementLevel], ...] = (
    (80, "intense"),
    (60, "high"),
    (40, "moderate"),
    (20, "passive"),
)

logger = logging.getLogger(__name__)


class EngagementMetrics(BaseModel):
    domain: str
    total_seconds: float
    avg_scroll_depth: float
    avg_scroll_velocity: float
    avg_clicks_per_minute: float
    avg_keystrokes_per_minute: float
    fixation_score: int
    engagement_level: EngagementLevel
    session_count: int


def fixation_score(clicks_per_minute: float, keystrokes_per_minute: float, scroll_velocity: float) -> int:
    """Score in [0, 100]: many clicks and keystrokes with slow scrolling is deep focus."""
    raw = (clicks_per_minute * CLICK_WEIGHT + keystrokes_per_minute * KEYSTROKE_WEIGHT) * (
        1 - scroll_velocity / SCROLL_VELOCITY_DAMPING
    )
    return int(min(MAX_FIXATION_SCORE, max(0, round_half_up(raw))))


def engagement_level(score: int) -> EngagementLevel:
    for threshold, level in ENGAGEMENT_THRESHOLDS:
        if score >= threshold:
            return level
    return "low"


class EngagementScorer:
    def __init__(self, context: AnalyticsContext) -> None:
        self._ctx = context

    def get_engagement_metrics(self, domain: str, days: float = 7) -> EngagementMetrics:
        """Combine clipped interval time with behavior events for one domain.

        Rates are per minute of active time, with at least one minute in the
        denominator so a domain with events but no tracked time stays finite.
        """
        days = clamp_days(days)
        now_ms = self._ctx.now_ms()
        start_ms = now_ms - days * DAY_MS
        skipped = SkipCounter("get_engagement_metrics")

        session_count = 0
        total_seconds = 0.0
        for row in self._ctx.store.get_domain_activities_in_range(domain, start_ms, now_ms):
            try:
                clip = clip_interval(row, start_ms, now_ms)
            except MalformedTimestampError as e:
                skipped.skip(row, e)
                continue
            if clip is None:
                continue
            session_count += 1
            total_seconds += clip.active_seconds

        scroll_depths: list[int] = []
        scroll_velocities: list[float] = []
        clicks = 0
        keystrokes = 0
        for event in self._ctx.store.get_behavior_events_in_range(start_ms, now_ms, domain=domain):
            try:
                event_ms = parse_timestamp_ms(event["timestamp"])
            except MalformedTimestampError as e:
                skipped.skip(event, e)
                continue
            if not start_ms <= event_ms <= now_ms:
                continue
            kind = event["event_type"]
            if kind == "scroll":
                if event["value_int"] is not None:
                    scroll_depths.append(event["value_int"])
                if event["value_float"] is not None:
                    scroll_velocities.append(event["value_float"])
            elif kind == "click":
                clicks += event["value_int"] if event["value_int"] is not None else 1
            elif kind == "keystroke":
                keystrokes += event["value_int"] if event["value_int"] is not None else 1

        skipped.report()

        avg_depth = round_half_up(sum(scroll_depths) / len(scroll_depths)) if scroll_depths else 0
        avg_velocity = (
            round_half_up(sum(scroll_velocities) / len(scroll_velocities)) if scroll_velocities else 0
        )
        minutes = max(1.0, total_seconds / 60)
        clicks_per_minute = round_half_up(clicks / minutes, 1)
        keystrokes_per_minute = round_half_up(keystrokes / minutes, 1)
        score = fixation_score(clicks_per_minute, keystrokes_per_minute, avg_velocity)

        return EngagementMetrics(
            domain=domain,
            total_seconds=total_seconds,
            avg_scroll_depth=avg_depth,
            avg_scroll_velocity=avg_velocity,
            avg_clicks_per_minute=clicks_per_minute,
            avg_keystrokes_per_minute=keystrokes_per_minute,
            fixation_score=score,
            engagement_level=engagement_level(score),
            session_count=session_count,
        )

    def ingest_behavior_events(self, events: Iterable[BehaviorEvent]) -> int:
        """Store a batch of behavior events. Returns the count stored."""
        count = self._ctx.store.insert_behavior_events(events)
        logger.info("Ingested %d behavior events", count)
        return count
