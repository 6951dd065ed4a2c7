"""
CLI: ``upkeep preview`` and ``upkeep tick``.
"""

from __future__ import annotations

import asyncio
import sys
from datetime import datetime, time
from pathlib import Path
from zoneinfo import ZoneInfo

import typer

from upkeep.cli.utils import (
    console,
    err_console,
    fail,
    output_json,
    output_rows,
    output_summary,
    parse_date,
    parse_now,
)
from upkeep.core.errors import UpkeepError
from upkeep.core.logging import configure_logging
from upkeep.core.scheduling.models import IntervalUnit
from upkeep.core.settings import get_settings


def _parse_nth(value: str | None) -> dict | None:
    # "2:tue" / "last:fri"
    if value is None:
        return None
    nth, _, weekday = value.partition(":")
    if not weekday:
        raise typer.BadParameter("expected N:WEEKDAY, e.g. 2:tue or last:fri", param_hint="--nth")
    return {"nth": -1 if nth.lower() == "last" else nth, "weekday": weekday}


def preview(
    start: str = typer.Option(..., "--start", help="Pattern start date (YYYY-MM-DD)"),
    unit: IntervalUnit = typer.Option(IntervalUnit.DAY, "--unit", help="Interval unit"),
    every: int = typer.Option(1, "--every", help="Interval multiplier"),
    days: str | None = typer.Option(None, "--days", help="Weekdays, e.g. mon,thu"),
    day_of_month: int | None = typer.Option(None, "--day-of-month"),
    nth: str | None = typer.Option(None, "--nth", help="Nth weekday, e.g. 2:tue or last:fri"),
    at: str = typer.Option("00:00", "--at", help="Time of day (HH:MM)"),
    tz: str | None = typer.Option(None, "--tz", help="IANA timezone"),
    end: str | None = typer.Option(None, "--end", help="Last possible date"),
    count: int | None = typer.Option(None, "--count", help="Max occurrences from start"),
    from_: str | None = typer.Option(None, "--from", help="Window start date (default: today)"),
    ahead: int | None = typer.Option(None, "--ahead", help="Window length in days"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Preview the dates a fixed-calendar pattern produces."""
    from upkeep.core.errors import ValidationError
    from upkeep.core.scheduling.recurrence import Window, occurrences_in_window
    from upkeep.core.scheduling.schemas import FixedCalendarSpec
    from pydantic import ValidationError as PydanticValidationError

    settings = get_settings()
    data = {
        "start_date": parse_date(start, "--start"),
        "unit": unit,
        "every": every,
        "weekdays": days or [],
        "day_of_month": day_of_month,
        "nth_weekday": _parse_nth(nth),
        "time_of_day": at,
        "timezone": tz,
        "end_date": parse_date(end, "--end") if end else None,
        "max_occurrences": count,
    }
    try:
        spec = FixedCalendarSpec.model_validate(data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        fail(ValidationError(f"{'.'.join(str(p) for p in first['loc']) or 'pattern'}: {first['msg']}"))

    pattern = spec.to_pattern(settings.default_timezone)
    zone = ZoneInfo(pattern.timezone)
    window_day = parse_date(from_, "--from") if from_ else datetime.now(zone).date()
    window = Window.ahead(
        datetime.combine(window_day, time(0, 0), tzinfo=zone),
        settings.ahead_days if ahead is None else ahead,
    )
    occurrences = occurrences_in_window(pattern, window)

    rows = [
        {
            "date": o.scheduled_at.astimezone(zone).date().isoformat(),
            "weekday": o.scheduled_at.astimezone(zone).strftime("%a"),
            "local": o.scheduled_at.astimezone(zone).strftime("%H:%M"),
            "utc": o.scheduled_at.isoformat(),
        }
        for o in occurrences
    ]
    if json_out:
        output_json({"window": [window.start.isoformat(), window.end.isoformat()], "occurrences": rows})
        return
    output_rows(rows, title=f"{len(rows)} occurrence(s) from {window_day.isoformat()}")


def tick(
    world: Path = typer.Argument(..., help="World fixture (JSON)"),
    now: str | None = typer.Option(None, "--now", help="Override current time (ISO)"),
    json_out: bool = typer.Option(False, "--json"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show engine logs"),
) -> None:
    """Load a fixture world into memory and run one generation tick."""
    from upkeep.cli.world import load_world
    from upkeep.core.scheduling.engine import SchedulerEngine

    settings = get_settings()
    configure_logging(
        level=settings.log_level if verbose else "WARNING",
        json_format=settings.log_json if settings.log_json is not None else False,
        service=settings.service_name,
        stream=sys.stderr,
    )

    try:
        loaded = load_world(world, settings)
    except UpkeepError as e:
        fail(e)

    engine = SchedulerEngine(
        rules=loaded.rules,
        templates=loaded.templates,
        targets=loaded.targets,
        instances=loaded.instances,
        events=loaded.events,
        assignments=loaded.assignments,
        signals=loaded.signals,
        settings=settings,
    )
    result = asyncio.run(engine.run_tick(parse_now(now)))

    rows = [
        {
            "id": i.id,
            "rule": i.schedule_rule_id,
            "target": i.target_id,
            "scheduled": i.scheduled_at.isoformat(),
            "due": i.due_at.isoformat(),
            "assigned_to": i.assigned_to,
            "from": i.created_from.value,
        }
        for i in result.instances
    ]
    if json_out:
        payload = result.to_dict()
        payload["instances"] = rows
        output_json(payload)
        return

    output_rows(rows, title="Generated instances")
    output_summary(
        {
            "generated": result.generated,
            "duplicates": result.duplicates,
            "capacity_skips": result.capacity_skips,
            "errors": len(result.errors),
        },
        title="Tick",
    )
    for error in result.errors:
        err_console.print(f"[yellow]![/yellow] {error}")
    if not result.errors:
        console.print("[green]No errors.[/green]")
