"""Tests for ``upkeep preview`` and ``upkeep tick`` via CliRunner.

Settings are patched so the host environment cannot change the window or
timezone; ticks run against JSON fixture worlds written to tmp_path.
"""

from __future__ import annotations

import json

import pytest
from typer.testing import CliRunner

from upkeep.cli.app import app
from upkeep.core.settings import UpkeepSettings

runner = CliRunner()


@pytest.fixture(autouse=True)
def settings(monkeypatch):
    settings = UpkeepSettings(_env_file=None, ahead_days=7, default_timezone="UTC")
    monkeypatch.setattr("upkeep.cli.generate.get_settings", lambda: settings)
    return settings


def _text(result) -> str:
    # rich wraps long stderr lines at the console width
    return " ".join(result.output.split())


def _dates(result) -> list[str]:
    assert result.exit_code == 0, result.output
    return [row["date"] for row in json.loads(result.stdout)["occurrences"]]


# ─── preview ─────────────────────────────────────────────────────────────


class TestPreview:
    """Tests for the 'preview' command."""

    def test_weekly_mon_thu(self):
        result = runner.invoke(
            app,
            ["preview", "--start", "2025-01-06", "--unit", "week", "--days", "mon,thu",
             "--from", "2025-01-08", "--ahead", "14", "--json"],
        )
        assert _dates(result) == ["2025-01-09", "2025-01-13", "2025-01-16", "2025-01-20"]

    def test_month_end_clamping(self):
        result = runner.invoke(
            app,
            ["preview", "--start", "2025-01-31", "--unit", "month",
             "--from", "2025-01-01", "--ahead", "120", "--json"],
        )
        assert _dates(result) == ["2025-01-31", "2025-02-28", "2025-03-31", "2025-04-30"]

    def test_last_friday(self):
        result = runner.invoke(
            app,
            ["preview", "--start", "2025-01-01", "--unit", "month", "--nth", "last:fri",
             "--from", "2025-01-01", "--ahead", "89", "--json"],
        )
        assert _dates(result) == ["2025-01-31", "2025-02-28", "2025-03-28"]

    def test_local_time_in_zone(self):
        result = runner.invoke(
            app,
            ["preview", "--start", "2025-01-01", "--at", "08:00", "--tz", "America/New_York",
             "--from", "2025-01-08", "--ahead", "0", "--json"],
        )
        assert result.exit_code == 0, result.output
        [row] = json.loads(result.stdout)["occurrences"]
        assert row["local"] == "08:00"
        assert row["weekday"] == "Wed"
        assert row["utc"] == "2025-01-08T13:00:00+00:00"

    def test_default_ahead_from_settings(self):
        result = runner.invoke(
            app, ["preview", "--start", "2025-01-01", "--from", "2025-01-08", "--json"]
        )
        assert len(_dates(result)) == 8

    def test_table_output(self):
        result = runner.invoke(
            app, ["preview", "--start", "2025-01-01", "--from", "2025-01-08", "--ahead", "2"]
        )
        assert result.exit_code == 0
        assert "3 occurrence(s)" in result.output
        assert "2025-01-10" in result.output

    def test_invalid_pattern(self):
        result = runner.invoke(
            app, ["preview", "--start", "2025-01-01", "--unit", "month", "--days", "mon"]
        )
        assert result.exit_code == 1
        assert "weekdays apply" in _text(result)

    @pytest.mark.parametrize(
        "args",
        [
            ["--start", "2025-13-01"],
            ["--start", "2025-01-01", "--nth", "2tue"],
            ["--start", "2025-01-01", "--unit", "fortnight"],
        ],
    )
    def test_bad_parameters(self, args):
        result = runner.invoke(app, ["preview", *args])
        assert result.exit_code == 2


# ─── tick ────────────────────────────────────────────────────────────────


WORLD = {
    "templates": [
        {"template_id": "tpl-1", "name": "Daily forklift check", "content": {"items": ["brakes"]}},
        {"template_id": "tpl-2", "name": "Unsafe defect follow-up"},
    ],
    "targets": [
        {"target_id": "fl-1", "asset_type": "forklift", "site_id": "north"},
        {"target_id": "fl-2", "asset_type": "forklift", "site_id": "north"},
        {"target_id": "tr-1", "asset_type": "truck", "site_id": "south"},
    ],
    "rules": [
        {
            "id": "r-daily",
            "template_id": "tpl-1",
            "frequency": {"mode": "fixed_calendar", "start_date": "2025-01-01"},
            "scope": {"kind": "asset_type", "asset_type": "forklift"},
            "assignment": {"kind": "team", "team_id": "yard"},
            "constraints": {"max_open_per_target": 0},
            "ahead_days": 1,
        },
        {
            "id": "r-unsafe",
            "template_id": "tpl-2",
            "frequency": {"mode": "event", "triggers": ["DEFECT_MARKED_UNSAFE"]},
        },
    ],
    "users": ["u-ana", "u-ben"],
    "teams": {"yard": ["u-ana", "u-ben"]},
    "events": [
        {"id": "ev-1", "type": "DEFECT_MARKED_UNSAFE", "target_id": "tr-1",
         "timestamp": "2025-01-08T08:30:00Z"},
    ],
}


@pytest.fixture
def world_file(tmp_path):
    path = tmp_path / "world.json"
    path.write_text(json.dumps(WORLD))
    return path


class TestTick:
    """Tests for the 'tick' command."""

    def test_json_result(self, world_file):
        result = runner.invoke(app, ["tick", str(world_file), "--now", "2025-01-08T09:00:00", "--json"])
        assert result.exit_code == 0, result.output

        payload = json.loads(result.stdout)
        assert payload["generated"] == 5
        assert payload["errors"] == []
        assert len(payload["instance_ids"]) == 5

        by_rule = {}
        for row in payload["instances"]:
            by_rule.setdefault(row["rule"], []).append(row)
        assert len(by_rule["r-daily"]) == 4
        assert {row["assigned_to"] for row in by_rule["r-daily"]} == {"u-ana", "u-ben"}
        [event_row] = by_rule["r-unsafe"]
        assert event_row["target"] == "tr-1"
        assert event_row["from"] == "event"

    def test_table_output(self, world_file):
        result = runner.invoke(app, ["tick", str(world_file), "--now", "2025-01-08T09:00:00"])
        assert result.exit_code == 0, result.output
        assert "Generated instances" in result.output
        assert "No errors." in result.output

    def test_errors_reported(self, tmp_path):
        world = dict(WORLD, templates=[])
        path = tmp_path / "world.json"
        path.write_text(json.dumps(world))

        result = runner.invoke(app, ["tick", str(path), "--now", "2025-01-08T09:00:00", "--json"])
        assert result.exit_code == 0, result.output
        payload = json.loads(result.stdout)
        assert payload["generated"] == 0
        assert len(payload["errors"]) == 5
        assert all("Template not found" in e for e in payload["errors"])

    def test_invalid_rule_in_world(self, tmp_path):
        world = dict(WORLD, rules=[{"template_id": "tpl-1", "frequency": {"mode": "rolling", "count": 0}}])
        path = tmp_path / "world.json"
        path.write_text(json.dumps(world))

        result = runner.invoke(app, ["tick", str(path)])
        assert result.exit_code == 1
        assert "Invalid" in _text(result)

    def test_missing_file(self, tmp_path):
        result = runner.invoke(app, ["tick", str(tmp_path / "nope.json")])
        assert result.exit_code == 1
        assert "Cannot read world file" in _text(result)

    def test_not_json(self, tmp_path):
        path = tmp_path / "world.json"
        path.write_text("{not json")
        result = runner.invoke(app, ["tick", str(path)])
        assert result.exit_code == 1
        assert "not valid JSON" in _text(result)

    def test_bad_now(self, world_file):
        result = runner.invoke(app, ["tick", str(world_file), "--now", "yesterday"])
        assert result.exit_code == 2
