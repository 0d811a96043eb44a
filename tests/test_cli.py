"""Tests for the CLI entry point."""

import json
from datetime import datetime, timedelta, timezone

import pytest
from click.testing import CliRunner

from tws_analytics.cli import format_duration, main, make_progress_bar
from tws_analytics.db import ActivityRollup, AnalyticsStore


def iso_ago(**kwargs) -> str:
    moment = datetime.now(timezone.utc) - timedelta(**kwargs)
    return moment.strftime("%Y-%m-%dT%H:%M:%SZ")


def activity_line(started_at: str, ended_at: str, domain: str, category: str, seconds: float) -> str:
    return json.dumps(
        {
            "started_at": started_at,
            "ended_at": ended_at,
            "domain": domain,
            "category": category,
            "seconds_active": seconds,
        }
    )


def seed(db_path) -> None:
    """Import two recent activities through the CLI."""
    lines = [
        activity_line(iso_ago(hours=3), iso_ago(hours=2), "github.com", "productive", 3600),
        activity_line(iso_ago(hours=2), iso_ago(hours=1, minutes=30), "youtube.com", "frivolity", 1800),
    ]
    result = CliRunner().invoke(main, ["import", "--db", str(db_path)], input="\n".join(lines) + "\n")
    assert result.exit_code == 0, result.output


def test_main_help():
    """Test that --help works and shows the group description."""
    runner = CliRunner()
    result = runner.invoke(main, ["--help"])
    assert result.exit_code == 0
    assert "TimeWellSpent analytics CLI" in result.output


def test_main_no_args():
    """Click groups exit with code 2 when no subcommand is provided."""
    result = CliRunner().invoke(main, [])
    assert result.exit_code == 2
    assert "Usage:" in result.output


class TestFormatting:
    """Tests for output helpers."""

    def test_format_duration(self):
        assert format_duration(0) == "0m"
        assert format_duration(30) == "<1m"
        assert format_duration(300) == "5m"
        assert format_duration(5400) == "1h 30m"

    def test_progress_bar(self):
        assert make_progress_bar(0, 100, width=4) == "░░░░"
        assert make_progress_bar(50, 100, width=4) == "██░░"
        assert make_progress_bar(100, 100, width=4) == "████"


class TestImportCommand:
    """Tests for the import command."""

    def test_import_activities(self, tmp_path):
        db_path = tmp_path / "analytics.db"
        seed(db_path)

        with AnalyticsStore.open(db_path) as store:
            count = store._conn.execute("SELECT COUNT(*) FROM activities").fetchone()[0]
        assert count == 2

    def test_import_warns_on_bad_line(self, tmp_path):
        db_path = tmp_path / "analytics.db"
        good = activity_line(iso_ago(hours=2), iso_ago(hours=1), "github.com", "productive", 3600)
        input_data = "not json\n" + good + "\n" + json.dumps({"started_at": "nope"}) + "\n"

        result = CliRunner().invoke(main, ["import", "--db", str(db_path)], input=input_data)

        assert result.exit_code == 0
        assert "Imported 1 activities" in result.output
        assert "line 1: invalid JSON" in result.output
        assert "line 3: validation error" in result.output

    def test_import_rejects_infinite_seconds(self, tmp_path):
        db_path = tmp_path / "analytics.db"
        line = activity_line(iso_ago(hours=2), iso_ago(hours=1), "github.com", "productive", float("inf"))
        assert "Infinity" in line

        result = CliRunner().invoke(main, ["import", "--db", str(db_path)], input=line + "\n")

        assert result.exit_code == 1
        assert "line 1: validation error" in result.output

    def test_import_all_invalid_exits_1(self, tmp_path):
        db_path = tmp_path / "analytics.db"
        result = CliRunner().invoke(main, ["import", "--db", str(db_path)], input="garbage\n")
        assert result.exit_code == 1

    def test_import_empty_input(self, tmp_path):
        db_path = tmp_path / "analytics.db"
        result = CliRunner().invoke(main, ["import", "--db", str(db_path)], input="")
        assert result.exit_code == 0
        assert "Imported 0 activities" in result.output

    def test_db_from_environment(self, tmp_path):
        db_path = tmp_path / "env.db"
        line = activity_line(iso_ago(hours=2), iso_ago(hours=1), "github.com", "productive", 3600)

        result = CliRunner().invoke(main, ["import"], input=line + "\n", env={"TWS_DB": str(db_path)})

        assert result.exit_code == 0
        assert db_path.exists()


class TestIngestEventsCommand:
    """Tests for the ingest-events command."""

    def test_ingest(self, tmp_path):
        db_path = tmp_path / "analytics.db"
        lines = [
            json.dumps({"timestamp": iso_ago(minutes=5), "domain": "github.com", "event_type": "click"}),
            json.dumps({"timestamp": iso_ago(minutes=4), "domain": "github.com", "event_type": "scroll", "value_int": 30}),
        ]

        result = CliRunner().invoke(main, ["ingest-events", "--db", str(db_path)], input="\n".join(lines) + "\n")

        assert result.exit_code == 0
        assert "Ingested 2 behavior events" in result.output


class TestReportCommands:
    """Tests for the report commands."""

    def test_missing_database(self, tmp_path):
        result = CliRunner().invoke(main, ["overview", "--db", str(tmp_path / "missing.db")])
        assert result.exit_code == 1
        assert "No database found" in result.output

    def test_overview_json(self, tmp_path):
        db_path = tmp_path / "analytics.db"
        seed(db_path)

        result = CliRunner().invoke(main, ["overview", "--db", str(db_path), "--json"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["productivity_score"] == 67
        assert data["top_engagement_domain"] == "github.com"
        assert data["total_sessions"] == 2

    def test_overview_human(self, tmp_path):
        db_path = tmp_path / "analytics.db"
        seed(db_path)

        result = CliRunner().invoke(main, ["overview", "--db", str(db_path)])

        assert result.exit_code == 0
        assert "Analytics Overview: last 7 days" in result.output
        assert "Productivity:  67%" in result.output
        assert "github.com" in result.output

    def test_time_of_day_json(self, tmp_path):
        db_path = tmp_path / "analytics.db"
        seed(db_path)

        result = CliRunner().invoke(main, ["time-of-day", "--db", str(db_path), "--json"])

        assert result.exit_code == 0
        buckets = json.loads(result.output)
        assert len(buckets) == 24
        assert sum(b["productive"] for b in buckets) == pytest.approx(3600)

    def test_trends(self, tmp_path):
        db_path = tmp_path / "analytics.db"
        seed(db_path)

        result = CliRunner().invoke(main, ["trends", "--db", str(db_path), "--granularity", "hour", "--json"])

        assert result.exit_code == 0
        assert len(json.loads(result.output)) == 24

    def test_trends_invalid_granularity(self, tmp_path):
        db_path = tmp_path / "analytics.db"
        seed(db_path)

        result = CliRunner().invoke(main, ["trends", "--db", str(db_path), "--granularity", "month"])

        assert result.exit_code == 2

    def test_patterns(self, tmp_path):
        db_path = tmp_path / "analytics.db"
        seed(db_path)

        result = CliRunner().invoke(main, ["patterns", "--db", str(db_path)])

        assert result.exit_code == 0
        assert "productive:github.com -> frivolity:youtube.com  x1" in result.output

    def test_engagement_json(self, tmp_path):
        db_path = tmp_path / "analytics.db"
        seed(db_path)

        result = CliRunner().invoke(main, ["engagement", "github.com", "--db", str(db_path), "--json"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["domain"] == "github.com"
        assert data["session_count"] == 1

    def test_episodes_json(self, tmp_path):
        db_path = tmp_path / "analytics.db"
        seed(db_path)

        result = CliRunner().invoke(main, ["episodes", "--db", str(db_path), "--json"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        # The two seeded activities touch, so they form one episode.
        assert data["summary"]["total_episodes"] == 1
        assert data["summary"]["total_active_seconds"] == 5400
        assert data["query"]["gap_minutes"] == 8

    def test_episodes_human(self, tmp_path):
        db_path = tmp_path / "analytics.db"
        seed(db_path)

        result = CliRunner().invoke(main, ["episodes", "--db", str(db_path), "--gap", "1"])

        assert result.exit_code == 0
        assert "1 episodes" in result.output
        assert "github.com" in result.output


class TestRollupCommands:
    """Tests for the rollups command group."""

    def test_generate_and_since(self, tmp_path):
        db_path = tmp_path / "analytics.db"
        seed(db_path)
        runner = CliRunner()

        result = runner.invoke(
            main,
            [
                "rollups",
                "generate",
                "--db",
                str(db_path),
                "--device",
                "laptop",
                "--start",
                iso_ago(days=1),
                "--end",
                iso_ago(seconds=0),
            ],
        )
        assert result.exit_code == 0, result.output
        assert "Stored" in result.output

        result = runner.invoke(
            main, ["rollups", "since", "laptop", "2000-01-01T00:00:00Z", "--db", str(db_path), "--json"]
        )
        assert result.exit_code == 0
        rollups = [ActivityRollup.model_validate(item) for item in json.loads(result.output)]
        assert sum(r.productive for r in rollups) == 3600
        assert sum(r.frivolity for r in rollups) == 1800

    def test_generate_bad_range(self, tmp_path):
        db_path = tmp_path / "analytics.db"
        seed(db_path)

        result = CliRunner().invoke(
            main,
            ["rollups", "generate", "--db", str(db_path), "--device", "laptop", "--start", "x", "--end", "y"],
        )

        assert result.exit_code == 1
        assert "Invalid range" in result.output
