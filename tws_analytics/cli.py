"""CLI entry point for TimeWellSpent analytics."""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import click
from pydantic import BaseModel, ValidationError

from tws_analytics.db import ActivityInterval, AnalyticsStore, BehaviorEvent
from tws_analytics.engine import AnalyticsEngine
from tws_analytics.reports import TREND_SHAPES, format_hour

DEFAULT_DB_PATH = Path.home() / ".local" / "share" / "tws" / "analytics.db"


def format_duration(seconds: float) -> str:
    """Format seconds as 'Xh Ym', 'Ym', or '<1m'.

    Args:
        seconds: Duration in seconds.

    Returns:
        Formatted duration string.
    """
    if seconds < 60:
        return "<1m" if seconds > 0 else "0m"
    total_minutes = int(seconds // 60)
    hours = total_minutes // 60
    minutes = total_minutes % 60
    if hours > 0:
        return f"{hours}h {minutes:2d}m"
    return f"{minutes}m"


def make_progress_bar(value: float, max_value: float, width: int = 16) -> str:
    """Create ASCII progress bar.

    Args:
        value: Current value.
        max_value: Maximum value (100%).
        width: Total width of bar (default: 16).

    Returns:
        Progress bar string like '████████░░░░░░░░'.
    """
    if max_value <= 0 or value <= 0:
        return "░" * width
    filled = max(1, min(width, round((value / max_value) * width)))
    return "█" * filled + "░" * (width - filled)


def _echo_json(value: BaseModel | list[BaseModel]) -> None:
    if isinstance(value, list):
        payload: Any = [item.model_dump() for item in value]
    else:
        payload = value.model_dump()
    click.echo(json.dumps(payload, indent=2))


def _require_db(db: Path) -> None:
    if not db.exists():
        click.echo("No database found", err=True)
        sys.exit(1)


@contextmanager
def _open_engine(db: Path) -> Iterator[AnalyticsEngine]:
    with AnalyticsStore.open(db) as store:
        yield AnalyticsEngine(store)


def _read_jsonl(model: type[BaseModel], lines: Iterator[str]) -> tuple[list[Any], bool]:
    """Parse JSONL lines into ``model`` instances, warning on each bad line.

    Returns the valid records and whether any non-blank input was seen.
    """
    records: list[Any] = []
    has_input = False
    for line_number, line in enumerate(lines, 1):
        stripped = line.strip()
        if not stripped:
            continue

        has_input = True

        try:
            records.append(model.model_validate(json.loads(stripped)))
        except json.JSONDecodeError as e:
            click.echo(f"Warning: line {line_number}: invalid JSON: {e}", err=True)
        except ValidationError as e:
            click.echo(f"Warning: line {line_number}: validation error: {e}", err=True)
    return records, has_input


db_option = click.option(
    "--db",
    type=click.Path(path_type=Path),
    default=DEFAULT_DB_PATH,
    envvar="TWS_DB",
    show_envvar=True,
    help="Path to SQLite database",
)

json_option = click.option(
    "--json",
    "output_json",
    is_flag=True,
    help="Output as JSON",
)


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Log progress to stderr")
def main(verbose: bool) -> None:
    """TimeWellSpent analytics CLI."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


@main.command("import")
@db_option
def import_activities(db: Path) -> None:
    """Import activity intervals from stdin (JSONL format).

    Example usage:
        cat activities.jsonl | tws import
    """
    db.parent.mkdir(parents=True, exist_ok=True)

    activities, has_input = _read_jsonl(ActivityInterval, sys.stdin)
    with AnalyticsStore.open(db) as store:
        for activity in activities:
            store.insert_activity(activity)

    click.echo(f"Imported {len(activities)} activities")

    # Exit code 1 if we had input but no valid records (all lines were errors)
    if has_input and not activities:
        sys.exit(1)


@main.command("ingest-events")
@db_option
def ingest_events(db: Path) -> None:
    """Ingest browser behavior events from stdin (JSONL format).

    Example usage:
        cat behavior.jsonl | tws ingest-events
    """
    db.parent.mkdir(parents=True, exist_ok=True)

    events, has_input = _read_jsonl(BehaviorEvent, sys.stdin)
    with _open_engine(db) as engine:
        count = engine.ingest_behavior_events(events)

    click.echo(f"Ingested {count} behavior events")

    if has_input and not events:
        sys.exit(1)


@main.command("overview")
@db_option
@click.option("--days", type=int, default=7, help="Number of days to cover")
@json_option
def overview_command(db: Path, days: int, output_json: bool) -> None:
    """Show productivity overview for the last DAYS days."""
    _require_db(db)

    with _open_engine(db) as engine:
        overview = engine.get_overview(days)

    if output_json:
        _echo_json(overview)
        return

    click.echo(f"Analytics Overview: last {overview.period_days} days")
    click.echo()
    click.echo(f"Active time:   {overview.total_active_hours}h")
    click.echo(f"Productivity:  {overview.productivity_score}% ({overview.focus_trend})")
    click.echo(f"Deep work:     {format_duration(overview.deep_work_seconds)}")
    click.echo(f"Peak hour:     {format_hour(overview.peak_productive_hour)}")
    click.echo(f"Risk hour:     {format_hour(overview.risk_hour)}")
    click.echo(f"Top domain:    {overview.top_engagement_domain or '(none)'}")
    click.echo(
        f"Sessions:      {overview.total_sessions} (avg {format_duration(overview.avg_session_length)})"
    )
    click.echo()

    click.echo("By Category:")
    max_seconds = max(overview.category_breakdown.values(), default=0)
    for category, seconds in overview.category_breakdown.items():
        bar = make_progress_bar(seconds, max_seconds)
        click.echo(f"  {category:<12} {format_duration(seconds):>9}   {bar}")

    if overview.insights:
        click.echo()
        click.echo("Insights:")
        for insight in overview.insights:
            click.echo(f"  - {insight}")

    if overview.skipped_intervals:
        click.echo()
        click.echo(f"Skipped {overview.skipped_intervals} malformed intervals")


@main.command("time-of-day")
@db_option
@click.option("--days", type=int, default=7, help="Number of days to cover")
@json_option
def time_of_day_command(db: Path, days: int, output_json: bool) -> None:
    """Show activity by hour of day."""
    _require_db(db)

    with _open_engine(db) as engine:
        buckets = engine.get_time_of_day_analysis(days)

    if output_json:
        _echo_json(buckets)
        return

    click.echo("Hour     Productive  Frivolity   Engaged  Dominant")
    max_productive = max((b.productive for b in buckets), default=0)
    for bucket in buckets:
        bar = make_progress_bar(bucket.productive, max_productive, width=10)
        click.echo(
            f"  {format_hour(bucket.hour):<6} {format_duration(bucket.productive):>9} "
            f"{format_duration(bucket.frivolity + bucket.draining):>10} {bucket.avg_engagement:>8}%  "
            f"{bucket.dominant_category:<11} {bar}"
        )


@main.command("trends")
@db_option
@click.option(
    "--granularity",
    type=click.Choice(sorted(TREND_SHAPES)),
    default="day",
    help="Bucket width",
)
@json_option
def trends_command(db: Path, granularity: str, output_json: bool) -> None:
    """Show productive and distracting time over recent hours, days or weeks."""
    _require_db(db)

    with _open_engine(db) as engine:
        points = engine.get_trends(granularity)

    if output_json:
        _echo_json(points)
        return

    click.echo("Period        Productive  Frivolity  Deep work  Quality")
    for point in points:
        click.echo(
            f"  {point.label:<10} {format_duration(point.productive):>10} "
            f"{format_duration(point.frivolity):>10} {format_duration(point.deep_work):>10} "
            f"{point.quality_score:>7}%"
        )


@main.command("patterns")
@db_option
@click.option("--days", type=int, default=30, help="Days of history to mine")
@click.option("--refresh", is_flag=True, help="Recompute even if patterns are fresh")
@json_option
def patterns_command(db: Path, days: int, refresh: bool, output_json: bool) -> None:
    """Show the most frequent transitions between activities."""
    _require_db(db)

    with _open_engine(db) as engine:
        if refresh:
            engine.compute_transition_patterns(days)
        patterns = engine.get_behavioral_patterns(days)

    if output_json:
        _echo_json(patterns)
        return

    if not patterns:
        click.echo("No patterns found")
        return

    def describe(category: str | None, domain: str | None) -> str:
        return f"{category or 'uncategorized'}:{domain or '-'}"

    for pattern in patterns:
        source = describe(pattern.from_context.category, pattern.from_context.domain)
        target = describe(pattern.to_context.category, pattern.to_context.domain)
        click.echo(
            f"  {source} -> {target}  x{pattern.frequency} "
            f"(after {format_duration(pattern.avg_duration_before_seconds)}, "
            f"mostly {format_hour(pattern.dominant_hour_of_day)})"
        )


@main.command("engagement")
@click.argument("domain")
@db_option
@click.option("--days", type=int, default=7, help="Number of days to cover")
@json_option
def engagement_command(domain: str, db: Path, days: int, output_json: bool) -> None:
    """Show engagement metrics for DOMAIN."""
    _require_db(db)

    with _open_engine(db) as engine:
        metrics = engine.get_engagement_metrics(domain, days)

    if output_json:
        _echo_json(metrics)
        return

    click.echo(f"Engagement: {metrics.domain}")
    click.echo()
    click.echo(f"Time:           {format_duration(metrics.total_seconds)} in {metrics.session_count} sessions")
    click.echo(f"Scroll depth:   {metrics.avg_scroll_depth:g}")
    click.echo(f"Scroll speed:   {metrics.avg_scroll_velocity:g}")
    click.echo(f"Clicks/min:     {metrics.avg_clicks_per_minute:g}")
    click.echo(f"Keystrokes/min: {metrics.avg_keystrokes_per_minute:g}")
    click.echo(f"Fixation:       {metrics.fixation_score} ({metrics.engagement_level})")


@main.command("episodes")
@db_option
@click.option("--hours", type=int, default=24, help="Hours to cover when --start is not given")
@click.option("--start", "start_iso", default=None, help="ISO 8601 start")
@click.option("--end", "end_iso", default=None, help="ISO 8601 end (default: now)")
@click.option("--gap", "gap_minutes", type=int, default=8, help="Minutes of inactivity that split episodes")
@click.option("--bin", "bin_seconds", type=int, default=30, help="Timeline bin width in seconds")
@click.option("--max", "max_episodes", type=int, default=100, help="Keep only the most recent episodes")
@json_option
def episodes_command(
    db: Path,
    hours: int,
    start_iso: str | None,
    end_iso: str | None,
    gap_minutes: int,
    bin_seconds: int,
    max_episodes: int,
    output_json: bool,
) -> None:
    """Show activity episodes split by idle gaps."""
    _require_db(db)

    with _open_engine(db) as engine:
        episode_map = engine.get_behavior_episodes(
            hours, start_iso, end_iso, gap_minutes, bin_seconds, max_episodes
        )

    if output_json:
        _echo_json(episode_map)
        return

    summary = episode_map.summary
    click.echo(f"Episodes: {episode_map.query.start} to {episode_map.query.end}")
    click.echo(
        f"{summary.total_episodes} episodes, {format_duration(summary.total_active_seconds)} active, "
        f"{format_duration(summary.total_idle_seconds)} idle"
    )
    for episode in episode_map.episodes:
        top = episode.top_domains[0].name if episode.top_domains else "-"
        click.echo(
            f"  {episode.start}  {format_duration(episode.duration_seconds):>8}  "
            f"{episode.dominant_category:<10}  {top}  switches {episode.domain_switches}"
        )


@main.group("rollups")
def rollups_group() -> None:
    """Hourly activity rollups for sync."""
    pass


@rollups_group.command("generate")
@db_option
@click.option("--device", "device_id", required=True, help="Device ID to stamp on rollups")
@click.option("--start", "start_iso", required=True, help="ISO 8601 start (inclusive)")
@click.option("--end", "end_iso", required=True, help="ISO 8601 end (exclusive)")
@json_option
def rollups_generate(db: Path, device_id: str, start_iso: str, end_iso: str, output_json: bool) -> None:
    """Compute hourly rollups from local activities and store them."""
    _require_db(db)

    with _open_engine(db) as engine:
        try:
            rollups = engine.generate_local_rollups(device_id, start_iso, end_iso)
        except ValueError as e:
            click.echo(f"Invalid range: {e}", err=True)
            sys.exit(1)
        count = engine.upsert_rollups(rollups)

    if output_json:
        _echo_json(rollups)
        return

    click.echo(f"Stored {count} rollups for {device_id}")


@rollups_group.command("since")
@click.argument("device_id")
@click.argument("updated_after")
@db_option
@json_option
def rollups_since(device_id: str, updated_after: str, db: Path, output_json: bool) -> None:
    """Show rollups for DEVICE_ID updated at or after UPDATED_AFTER."""
    _require_db(db)

    with _open_engine(db) as engine:
        try:
            rollups = engine.list_since(device_id, updated_after)
        except ValueError as e:
            click.echo(f"Invalid timestamp: {e}", err=True)
            sys.exit(1)

    if output_json:
        _echo_json(rollups)
        return

    if not rollups:
        click.echo("No rollups found")
        return

    for rollup in rollups:
        click.echo(
            f"  {rollup.hour_start}  productive {format_duration(rollup.productive):>8}  "
            f"neutral {format_duration(rollup.neutral):>8}  frivolity {format_duration(rollup.frivolity):>8}  "
            f"idle {format_duration(rollup.idle):>8}"
        )


if __name__ == "__main__":
    main()
