"""Single entry point wiring the analytics components to one store."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime, tzinfo

from tws_analytics.clipping import (
    day_key,
    floor_to_hour_ms,
    format_timestamp,
    local_day_start_ms,
    parse_timestamp_ms,
)
from tws_analytics.context import AnalyticsContext, local_zone, utc_now
from tws_analytics.db import ActivityRollup, AnalyticsStore, BehaviorEvent, ProgressDelta
from tws_analytics.engagement import EngagementMetrics, EngagementScorer
from tws_analytics.episodes import BehaviorEpisodeMap, EpisodeBuilder
from tws_analytics.patterns import BehavioralPattern, TransitionMiner
from tws_analytics.reports import (
    AnalyticsOverview,
    Granularity,
    ReportBuilder,
    TimeOfDayStats,
    TrendPoint,
)
from tws_analytics.rollups import ActivitySummary, RollupAccumulator
from tws_analytics.settings import AnalyticsSettings, SettingsGetter, load_settings


class AnalyticsEngine:
    """Reports, transition patterns, engagement metrics and rollups over one store.

    Args:
        store: Interval store to read from and write rollups/patterns to.
        settings_getter: Source of suppression keywords and day start. Defaults
            to the store's settings table. Failures fall back to defaults.
        clock: Returns the current time. Reports end "now" by this clock.
        tz: Zone used to decide which clock hour an instant belongs to.
    """

    def __init__(
        self,
        store: AnalyticsStore,
        settings_getter: SettingsGetter | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
        tz: tzinfo | None = None,
    ) -> None:
        if settings_getter is None:

            def settings_getter() -> AnalyticsSettings:
                return load_settings(store)

        self.context = AnalyticsContext(
            store=store,
            settings_getter=settings_getter,
            clock=clock,
            tz=tz if tz is not None else local_zone(),
        )
        self.reports = ReportBuilder(self.context)
        self.patterns = TransitionMiner(self.context)
        self.engagement = EngagementScorer(self.context)
        self.rollups = RollupAccumulator(self.context)
        self.episodes = EpisodeBuilder(self.context)

    @property
    def store(self) -> AnalyticsStore:
        return self.context.store

    # -- reports ------------------------------------------------------------

    def get_overview(self, days: float = 7) -> AnalyticsOverview:
        return self.reports.get_overview(days)

    def get_time_of_day_analysis(self, days: float = 7) -> list[TimeOfDayStats]:
        return self.reports.get_time_of_day_analysis(days)

    def get_trends(self, granularity: Granularity = "day") -> list[TrendPoint]:
        return self.reports.get_trends(granularity)

    # -- episodes -----------------------------------------------------------

    def get_behavior_episodes(
        self,
        hours: float = 24,
        start: str | None = None,
        end: str | None = None,
        gap_minutes: float = 8,
        bin_seconds: float = 30,
        max_episodes: float = 100,
    ) -> BehaviorEpisodeMap:
        return self.episodes.get_behavior_episodes(hours, start, end, gap_minutes, bin_seconds, max_episodes)

    # -- patterns -----------------------------------------------------------

    def compute_transition_patterns(self, days: float = 30) -> int:
        return self.patterns.compute_transition_patterns(days)

    def get_behavioral_patterns(self, days: float = 30) -> list[BehavioralPattern]:
        return self.patterns.get_behavioral_patterns(days)

    # -- engagement ---------------------------------------------------------

    def get_engagement_metrics(self, domain: str, days: float = 7) -> EngagementMetrics:
        return self.engagement.get_engagement_metrics(domain, days)

    def ingest_behavior_events(self, events: Iterable[BehaviorEvent]) -> int:
        return self.engagement.ingest_behavior_events(events)

    # -- rollups ------------------------------------------------------------

    def generate_local_rollups(self, device_id: str, start_iso: str, end_iso: str) -> list[ActivityRollup]:
        return self.rollups.generate_local_rollups(device_id, start_iso, end_iso)

    def upsert_rollups(self, rollups: Iterable[ActivityRollup]) -> int:
        return self.rollups.upsert_rollups(rollups)

    def list_since(self, device_id: str, updated_after_iso: str) -> list[ActivityRollup]:
        return self.rollups.list_since(device_id, updated_after_iso)

    def get_summary(self, device_id: str | None = None, window_hours: float = 24) -> ActivitySummary:
        return self.rollups.get_summary(device_id, window_hours)

    # -- reading / writing progress -----------------------------------------

    def record_reading_progress(self, delta: ProgressDelta) -> None:
        """Add a reading delta to the rollup for the hour it occurred in."""
        occurred_ms = parse_timestamp_ms(delta.occurred_at)
        hour_start = format_timestamp(floor_to_hour_ms(occurred_ms, self.context.tz))
        self.store.record_reading_progress(delta, hour_start)

    def record_writing_progress(self, delta: ProgressDelta) -> None:
        """Add a writing delta to its hourly and daily rollups.

        The daily key is the day-start-shifted local day, so writing at 02:00
        with the default day start counts toward the previous day.
        """
        tz = self.context.tz
        occurred_ms = parse_timestamp_ms(delta.occurred_at)
        hour_start = format_timestamp(floor_to_hour_ms(occurred_ms, tz))
        day_start = local_day_start_ms(occurred_ms, self.context.settings().day_start_hour, tz)
        self.store.record_writing_progress(delta, hour_start, day_key(day_start, tz))
