"""Behavior episodes: runs of activity separated by idle gaps.

An episode is a maximal run of clipped activity slices where no gap between
one slice's end and the next slice's start exceeds ``gap_minutes``. Each
episode carries its category breakdown, top domains and apps, behavior-event
counts and rates, and a fixed-width timeline of bins.
"""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from collections.abc import Iterator
from typing import Any

from pydantic import BaseModel, Field

from tws_analytics.clipping import (
    HOUR_MS,
    MalformedTimestampError,
    clamp_int,
    clip_interval,
    format_timestamp,
    overlap_ms,
    parse_timestamp_ms,
    round_half_up,
)
from tws_analytics.context import AnalyticsContext, SkipCounter
from tws_analytics.reports import CATEGORY_ORDER, empty_breakdown, top_key
from tws_analytics.settings import should_suppress

DEFAULT_EPISODE_HOURS = 24
MAX_EPISODE_HOURS = 24 * 14
DEFAULT_GAP_MINUTES = 8
MAX_GAP_MINUTES = 120
DEFAULT_BIN_SECONDS = 30
MIN_BIN_SECONDS = 5
MAX_BIN_SECONDS = 300
DEFAULT_MAX_EPISODES = 100
MAX_EPISODES = 500

TOP_DOMAINS_PER_EPISODE = 8
TOP_DOMAINS_IN_SUMMARY = 12
MAX_CONTENT_SNAPSHOTS = 120

# Event types counted per episode and per bin. Anything else is ignored.
EPISODE_EVENT_TYPES = ("scroll", "click", "keystroke", "focus", "blur", "idle_start", "idle_end", "visibility")

logger = logging.getLogger(__name__)


class EpisodeEventCounts(BaseModel):
    scroll: int = 0
    click: int = 0
    keystroke: int = 0
    focus: int = 0
    blur: int = 0
    idle_start: int = 0
    idle_end: int = 0
    visibility: int = 0


class EpisodeRates(BaseModel):
    """Per-minute event rates over the whole episode, one decimal."""

    actions_per_minute: float
    scrolls_per_minute: float
    clicks_per_minute: float
    keystrokes_per_minute: float
    focus_events_per_minute: float


class NamedSeconds(BaseModel):
    name: str
    active_seconds: int


class ContextSlice(BaseModel):
    """One clipped activity inside an episode.

    Suppressed slices keep their timing but lose domain and app name.
    """

    activity_id: int | None
    start: str
    end: str
    app_name: str | None
    domain: str | None
    category: str
    active_seconds: float
    idle_seconds: float


class ContentSnapshot(BaseModel):
    timestamp: str
    domain: str | None
    url: str | None
    title: str | None


class TimelineBin(BaseModel):
    start: str
    end: str
    active_seconds: float
    idle_seconds: float
    category_breakdown: dict[str, float]
    event_counts: EpisodeEventCounts
    top_domain: str | None = None
    top_title: str | None = None


class BehaviorEpisode(BaseModel):
    id: str
    start: str
    end: str
    duration_seconds: int
    active_seconds: int
    idle_seconds: int
    category_breakdown: dict[str, int]
    dominant_category: str
    top_domains: list[NamedSeconds]
    top_apps: list[NamedSeconds]
    event_counts: EpisodeEventCounts
    rates: EpisodeRates
    domain_switches: int
    context_slices: list[ContextSlice]
    content_snapshots: list[ContentSnapshot]
    timeline_bins: list[TimelineBin]
    has_behavior_events: bool


class EpisodeQuery(BaseModel):
    """The query after defaults and clamping were applied."""

    start: str
    end: str
    hours: int
    gap_minutes: int
    bin_seconds: int
    max_episodes: int


class EpisodeSummary(BaseModel):
    total_episodes: int
    total_duration_seconds: int
    total_active_seconds: int
    total_idle_seconds: int
    total_content_snapshots: int
    top_domains: list[NamedSeconds] = Field(default_factory=list)


class BehaviorEpisodeMap(BaseModel):
    generated_at: str
    query: EpisodeQuery
    summary: EpisodeSummary
    episodes: list[BehaviorEpisode]


class _Slice:
    __slots__ = ("activity_id", "start_ms", "end_ms", "domain", "app_name", "category", "suppressed", "active", "idle")

    def __init__(
        self,
        row: dict[str, Any],
        start_ms: int,
        end_ms: int,
        active: float,
        idle: float,
        keywords: list[str],
    ) -> None:
        self.activity_id = row.get("id")
        self.start_ms = start_ms
        self.end_ms = end_ms
        self.suppressed = should_suppress(row.get("domain"), row.get("app_name"), keywords)
        category = row.get("category") or "neutral"
        self.category = "neutral" if self.suppressed or category not in CATEGORY_ORDER else category
        self.domain = None if self.suppressed else row.get("domain")
        self.app_name = None if self.suppressed else row.get("app_name")
        self.active = active
        self.idle = idle

    @property
    def key(self) -> str | None:
        if self.suppressed:
            return None
        return self.domain or self.app_name or "unknown"


class _Event:
    __slots__ = ("ts_ms", "timestamp", "domain", "kind", "increment", "title", "url")

    def __init__(self, row: dict[str, Any], ts_ms: int, suppressed: bool) -> None:
        self.ts_ms = ts_ms
        self.timestamp = row["timestamp"]
        self.domain = row["domain"]
        self.kind = row["event_type"] if row["event_type"] in EPISODE_EVENT_TYPES else None
        value = row["value_int"]
        self.increment = max(1, int(round_half_up(value))) if value is not None else 1
        metadata = {} if suppressed else _parse_metadata(row["metadata"])
        self.title = metadata.get("title") if isinstance(metadata.get("title"), str) else None
        self.url = metadata.get("url") if isinstance(metadata.get("url"), str) else None


def _parse_metadata(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return value if isinstance(value, dict) else {}


def _parse_optional(value: str | None, name: str) -> int | None:
    if value is None:
        return None
    try:
        return parse_timestamp_ms(value)
    except MalformedTimestampError:
        logger.warning("Ignoring unparseable %s %r", name, value)
        return None


def _ranked(totals: dict[str, float], limit: int) -> list[NamedSeconds]:
    ordered = sorted(totals.items(), key=lambda item: (-item[1], item[0]))
    return [NamedSeconds(name=name, active_seconds=int(round_half_up(seconds))) for name, seconds in ordered[:limit]]


def _rate(count: int, minutes: float) -> float:
    return round_half_up(count / minutes, 1)


def _dominant(breakdown: dict[str, float]) -> str:
    best, best_value = "idle", 0.0
    for category in (*CATEGORY_ORDER, "idle"):
        if breakdown[category] > best_value:
            best, best_value = category, breakdown[category]
    return best


class EpisodeBuilder:
    """Builds the behavior episode map over activities and behavior events."""

    def __init__(self, context: AnalyticsContext) -> None:
        self._ctx = context

    def get_behavior_episodes(
        self,
        hours: float = DEFAULT_EPISODE_HOURS,
        start: str | None = None,
        end: str | None = None,
        gap_minutes: float = DEFAULT_GAP_MINUTES,
        bin_seconds: float = DEFAULT_BIN_SECONDS,
        max_episodes: float = DEFAULT_MAX_EPISODES,
    ) -> BehaviorEpisodeMap:
        """Group activity in a window into episodes.

        Args:
            hours: Window length when ``start`` is not given, 1..336.
            start: ISO start; defaults to ``end - hours``.
            end: ISO end; defaults to now. Swapped with ``start`` if earlier.
            gap_minutes: Largest gap inside one episode, 1..120.
            bin_seconds: Timeline bin width, 5..300.
            max_episodes: Keep only the most recent episodes, 1..500.
        """
        hours = clamp_int(hours, DEFAULT_EPISODE_HOURS, 1, MAX_EPISODE_HOURS)
        gap_minutes = clamp_int(gap_minutes, DEFAULT_GAP_MINUTES, 1, MAX_GAP_MINUTES)
        bin_seconds = clamp_int(bin_seconds, DEFAULT_BIN_SECONDS, MIN_BIN_SECONDS, MAX_BIN_SECONDS)
        max_episodes = clamp_int(max_episodes, DEFAULT_MAX_EPISODES, 1, MAX_EPISODES)

        now_ms = self._ctx.now_ms()
        parsed_end = _parse_optional(end, "end")
        range_end = parsed_end if parsed_end is not None else now_ms
        parsed_start = _parse_optional(start, "start")
        range_start = parsed_start if parsed_start is not None else range_end - hours * HOUR_MS
        start_ms, end_ms = min(range_start, range_end), max(range_start, range_end)

        keywords = self._ctx.settings().excluded_keywords
        skipped = SkipCounter("behavior_episodes")

        slices: list[_Slice] = []
        for row in self._ctx.store.get_activities_in_range(start_ms, end_ms):
            try:
                clip = clip_interval(row, start_ms, end_ms)
            except MalformedTimestampError as e:
                skipped.skip(row, e)
                continue
            if clip is None:
                continue
            slices.append(
                _Slice(row, clip.overlap_start_ms, clip.overlap_end_ms, clip.active_seconds, clip.idle_seconds, keywords)
            )
        slices.sort(key=lambda s: (s.start_ms, s.activity_id or 0))

        events: list[_Event] = []
        for row in self._ctx.store.get_behavior_events_in_range(start_ms, end_ms):
            try:
                ts_ms = parse_timestamp_ms(row["timestamp"])
            except MalformedTimestampError as e:
                skipped.skip(row, e)
                continue
            if start_ms <= ts_ms <= end_ms:
                events.append(_Event(row, ts_ms, should_suppress(row["domain"], None, keywords)))
        skipped.report()

        groups: list[list[_Slice]] = []
        group_end = 0
        gap_ms = gap_minutes * 60_000
        for item in slices:
            if not groups or item.start_ms - group_end > gap_ms:
                groups.append([item])
                group_end = item.end_ms
            else:
                groups[-1].append(item)
                group_end = max(group_end, item.end_ms)

        episodes = [
            self._build_episode(group, index, events, bin_seconds * 1000)
            for index, group in enumerate(groups[-max_episodes:])
        ]

        domain_totals: defaultdict[str, float] = defaultdict(float)
        for episode in episodes:
            for entry in episode.top_domains:
                domain_totals[entry.name] += entry.active_seconds

        return BehaviorEpisodeMap(
            generated_at=format_timestamp(now_ms),
            query=EpisodeQuery(
                start=format_timestamp(start_ms),
                end=format_timestamp(end_ms),
                hours=hours,
                gap_minutes=gap_minutes,
                bin_seconds=bin_seconds,
                max_episodes=max_episodes,
            ),
            summary=EpisodeSummary(
                total_episodes=len(episodes),
                total_duration_seconds=sum(e.duration_seconds for e in episodes),
                total_active_seconds=sum(e.active_seconds for e in episodes),
                total_idle_seconds=sum(e.idle_seconds for e in episodes),
                total_content_snapshots=sum(len(e.content_snapshots) for e in episodes),
                top_domains=_ranked(domain_totals, TOP_DOMAINS_IN_SUMMARY),
            ),
            episodes=episodes,
        )

    def _build_episode(
        self, group: list[_Slice], index: int, all_events: list[_Event], bin_ms: int
    ) -> BehaviorEpisode:
        start_ms = group[0].start_ms
        end_ms = max(item.end_ms for item in group)
        duration = max(1, int(round_half_up((end_ms - start_ms) / 1000)))

        breakdown = empty_breakdown()
        domains: defaultdict[str, float] = defaultdict(float)
        apps: defaultdict[str, float] = defaultdict(float)
        switches = 0
        previous: str | None = None
        context_slices: list[ContextSlice] = []
        for item in group:
            breakdown[item.category] += item.active
            breakdown["idle"] += item.idle
            key = item.key
            if key is not None:
                domains[key] += item.active
                if previous is not None and previous != key:
                    switches += 1
                previous = key
            if item.app_name:
                apps[item.app_name] += item.active
            context_slices.append(
                ContextSlice(
                    activity_id=item.activity_id,
                    start=format_timestamp(item.start_ms),
                    end=format_timestamp(item.end_ms),
                    app_name=item.app_name,
                    domain=item.domain,
                    category=item.category,
                    active_seconds=item.active,
                    idle_seconds=item.idle,
                )
            )

        events = [event for event in all_events if start_ms <= event.ts_ms <= end_ms]
        counts = EpisodeEventCounts()
        for event in events:
            if event.kind is not None:
                setattr(counts, event.kind, getattr(counts, event.kind) + event.increment)

        minutes = duration / 60
        actions = counts.scroll + counts.click + counts.keystroke
        rates = EpisodeRates(
            actions_per_minute=_rate(actions, minutes),
            scrolls_per_minute=_rate(counts.scroll, minutes),
            clicks_per_minute=_rate(counts.click, minutes),
            keystrokes_per_minute=_rate(counts.keystroke, minutes),
            focus_events_per_minute=_rate(counts.focus + counts.blur, minutes),
        )

        return BehaviorEpisode(
            id=f"ep-{start_ms}-{index + 1}",
            start=format_timestamp(start_ms),
            end=format_timestamp(end_ms),
            duration_seconds=duration,
            active_seconds=int(round_half_up(sum(item.active for item in group))),
            idle_seconds=int(round_half_up(sum(item.idle for item in group))),
            category_breakdown={key: int(round_half_up(value)) for key, value in breakdown.items()},
            dominant_category=_dominant(breakdown),
            top_domains=_ranked(domains, TOP_DOMAINS_PER_EPISODE),
            top_apps=_ranked(apps, TOP_DOMAINS_PER_EPISODE),
            event_counts=counts,
            rates=rates,
            domain_switches=switches,
            context_slices=context_slices,
            content_snapshots=_content_snapshots(events),
            timeline_bins=list(_timeline(group, events, start_ms, end_ms, bin_ms)),
            has_behavior_events=bool(events),
        )


def _content_snapshots(events: list[_Event]) -> list[ContentSnapshot]:
    """Title/url snapshots from event metadata, consecutive repeats collapsed."""
    snapshots: list[ContentSnapshot] = []
    last_key: tuple[str | None, str | None, str | None] | None = None
    for event in sorted(events, key=lambda e: e.ts_ms):
        if not event.title and not event.url:
            continue
        key = (event.domain, event.url, event.title)
        if key == last_key:
            continue
        last_key = key
        snapshots.append(ContentSnapshot(timestamp=event.timestamp, domain=event.domain, url=event.url, title=event.title))
        if len(snapshots) >= MAX_CONTENT_SNAPSHOTS:
            break
    return snapshots


def _timeline(
    group: list[_Slice], events: list[_Event], start_ms: int, end_ms: int, bin_ms: int
) -> Iterator[TimelineBin]:
    bin_start = start_ms
    while bin_start < end_ms:
        bin_end = min(end_ms, bin_start + bin_ms)
        breakdown = empty_breakdown()
        domains: defaultdict[str, float] = defaultdict(float)
        titles: defaultdict[str, float] = defaultdict(float)
        counts = EpisodeEventCounts()

        for item in group:
            overlap = overlap_ms(item.start_ms, item.end_ms, bin_start, bin_end)
            if overlap <= 0:
                continue
            fraction = overlap / max(1, item.end_ms - item.start_ms)
            breakdown[item.category] += item.active * fraction
            breakdown["idle"] += item.idle * fraction
            if item.key is not None:
                domains[item.key] += item.active * fraction

        for event in events:
            if not bin_start <= event.ts_ms < bin_end or event.kind is None:
                continue
            setattr(counts, event.kind, getattr(counts, event.kind) + event.increment)
            if event.title:
                titles[event.title] += 1

        yield TimelineBin(
            start=format_timestamp(bin_start),
            end=format_timestamp(bin_end),
            active_seconds=sum(breakdown[category] for category in CATEGORY_ORDER),
            idle_seconds=breakdown["idle"],
            category_breakdown=breakdown,
            event_counts=counts,
            top_domain=top_key(domains),
            top_title=top_key(titles),
        )
        bin_start = bin_end
