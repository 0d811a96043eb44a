"""Tests for transition pattern mining."""

from collections import Counter
from datetime import datetime, timedelta, timezone

import pytest

from tws_analytics.db import ActivityInterval, AnalyticsStore
from tws_analytics.engine import AnalyticsEngine
from tws_analytics.patterns import MAX_PATTERNS, correlation_strength, dominant_hour
from tws_analytics.settings import AnalyticsSettings


class MutableClock:
    """Clock whose time can be advanced between calls."""

    def __init__(self, iso: str) -> None:
        self.now = datetime.fromisoformat(iso.replace("Z", "+00:00"))

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_engine(store: AnalyticsStore, clock=None, keywords=()) -> AnalyticsEngine:
    settings = AnalyticsSettings(excluded_keywords=list(keywords))
    return AnalyticsEngine(
        store,
        lambda: settings,
        clock=clock or MutableClock("2025-01-26T00:00:00Z"),
        tz=timezone.utc,
    )


def add(store: AnalyticsStore, started_at: str, category: str, domain: str, seconds: float) -> None:
    store.insert_activity(
        ActivityInterval(started_at=started_at, category=category, domain=domain, seconds_active=seconds)
    )


def seed_switching(store: AnalyticsStore) -> None:
    """github -> youtube twice, youtube -> github once."""
    add(store, "2025-01-25T09:00:00Z", "productive", "github.com", 600)
    add(store, "2025-01-25T09:10:00Z", "frivolity", "youtube.com", 300)
    add(store, "2025-01-25T09:15:00Z", "productive", "github.com", 600)
    add(store, "2025-01-25T10:25:00Z", "frivolity", "youtube.com", 300)


class TestCorrelationStrength:
    """Tests for the saturating strength normalization."""

    @pytest.mark.parametrize("count,expected", [(0, 0.0), (1, 0.1), (5, 0.5), (10, 1.0), (20, 1.0)])
    def test_values(self, count, expected):
        assert correlation_strength(count) == pytest.approx(expected)

    def test_nondecreasing(self):
        values = [correlation_strength(count) for count in range(30)]
        assert values == sorted(values)
        assert all(0.0 <= value <= 1.0 for value in values)


class TestDominantHour:
    """Tests for picking the most common hour."""

    def test_most_frequent(self):
        assert dominant_hour(Counter({9: 1, 14: 3})) == 14

    def test_tie_picks_lowest(self):
        assert dominant_hour(Counter({14: 2, 9: 2})) == 9

    def test_empty(self):
        assert dominant_hour(Counter()) == 0


class TestComputeTransitionPatterns:
    """Tests for building the transition table."""

    def test_counts_consecutive_pairs(self):
        store = AnalyticsStore.open_in_memory()
        seed_switching(store)
        engine = make_engine(store)

        assert engine.compute_transition_patterns() == 2
        patterns = engine.get_behavioral_patterns()

        top = patterns[0]
        assert top.from_context.category == "productive"
        assert top.from_context.domain == "github.com"
        assert top.to_context.category == "frivolity"
        assert top.to_context.domain == "youtube.com"
        assert top.frequency == 2
        assert top.avg_duration_before_seconds == pytest.approx(600)
        assert top.correlation_strength == pytest.approx(0.2)
        # One transition at 09:10, one at 10:25: the tie goes to the earlier hour.
        assert top.dominant_hour_of_day == 9
        assert top.computed_at == "2025-01-26T00:00:00Z"

        back = patterns[1]
        assert back.frequency == 1
        assert back.avg_duration_before_seconds == pytest.approx(300)

    def test_sorted_by_start_not_insert_order(self):
        store = AnalyticsStore.open_in_memory()
        add(store, "2025-01-25T10:00:00Z", "frivolity", "youtube.com", 300)
        add(store, "2025-01-25T09:00:00Z", "productive", "github.com", 600)
        engine = make_engine(store)

        [pattern] = engine.get_behavioral_patterns()

        assert pattern.from_context.domain == "github.com"
        assert pattern.to_context.domain == "youtube.com"

    def test_suppressed_context(self):
        store = AnalyticsStore.open_in_memory()
        seed_switching(store)
        engine = make_engine(store, keywords=["youtube"])

        patterns = engine.get_behavioral_patterns()

        assert patterns[0].to_context.category == "neutral"
        assert patterns[0].to_context.domain is None

    def test_app_name_used_when_no_domain(self):
        store = AnalyticsStore.open_in_memory()
        store.insert_activity(
            ActivityInterval(started_at="2025-01-25T09:00:00Z", source="app", app_name="Code", category="productive", seconds_active=60)
        )
        add(store, "2025-01-25T09:01:00Z", "frivolity", "youtube.com", 60)
        engine = make_engine(store)

        [pattern] = engine.get_behavioral_patterns()

        assert pattern.from_context.domain == "Code"

    def test_malformed_row_skipped(self):
        store = AnalyticsStore.open_in_memory()
        seed_switching(store)
        store._conn.execute(
            "INSERT INTO activities (started_at, domain, category, seconds_active) VALUES (?, ?, ?, ?)",
            ("2025-01-25T09:99:00Z", "broken.com", "neutral", 100),
        )
        engine = make_engine(store)

        assert engine.compute_transition_patterns() == 2

    def test_recompute_replaces_table(self):
        store = AnalyticsStore.open_in_memory()
        seed_switching(store)
        engine = make_engine(store)
        engine.compute_transition_patterns()
        engine.compute_transition_patterns()

        assert sum(p.frequency for p in engine.get_behavioral_patterns()) == 3

    def test_capped_at_max_patterns(self):
        store = AnalyticsStore.open_in_memory()
        base = datetime(2025, 1, 24, tzinfo=timezone.utc)
        for i in range(MAX_PATTERNS + 20):
            started = (base + timedelta(minutes=i)).strftime("%Y-%m-%dT%H:%M:%SZ")
            add(store, started, "neutral", f"site{i}.com", 30)
        engine = make_engine(store)

        assert len(engine.get_behavioral_patterns()) == MAX_PATTERNS


class TestPatternFreshness:
    """Tests for recompute-on-read."""

    def test_same_hour_reuses_patterns(self):
        store = AnalyticsStore.open_in_memory()
        seed_switching(store)
        clock = MutableClock("2025-01-26T00:00:00Z")
        engine = make_engine(store, clock=clock)

        first = engine.get_behavioral_patterns()
        clock.advance(minutes=30)
        second = engine.get_behavioral_patterns()

        assert first[0].computed_at == second[0].computed_at == "2025-01-26T00:00:00Z"

    def test_stale_after_an_hour(self):
        store = AnalyticsStore.open_in_memory()
        seed_switching(store)
        clock = MutableClock("2025-01-26T00:00:00Z")
        engine = make_engine(store, clock=clock)

        first = engine.get_behavioral_patterns()
        clock.advance(hours=1, minutes=1)
        second = engine.get_behavioral_patterns()

        assert first[0].computed_at == "2025-01-26T00:00:00Z"
        assert second[0].computed_at == "2025-01-26T01:01:00Z"

    def test_fresh_table_shared_across_engines(self):
        """A new engine trusts a fresh table written by another one."""
        store = AnalyticsStore.open_in_memory()
        seed_switching(store)
        make_engine(store, clock=MutableClock("2025-01-26T00:00:00Z")).compute_transition_patterns()

        later = make_engine(store, clock=MutableClock("2025-01-26T00:20:00Z"))
        patterns = later.get_behavioral_patterns()

        assert patterns[0].computed_at == "2025-01-26T00:00:00Z"
        assert later.patterns.cache.computed_at_ms is not None

    def test_empty_store(self):
        engine = make_engine(AnalyticsStore.open_in_memory())
        assert engine.get_behavioral_patterns() == []
        assert engine.patterns.cache.computed_at_ms is not None
