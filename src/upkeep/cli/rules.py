"""
CLI: ``upkeep rules`` - rule definition checks.
"""

from __future__ import annotations

import json
from pathlib import Path

import typer

from upkeep.cli.utils import fail, output_json, output_rows
from upkeep.core.errors import ConfigError, ValidationError
from upkeep.core.scheduling.models import (
    EventPattern,
    FixedCalendarPattern,
    RollingPattern,
    ScheduleRule,
    UsagePattern,
)
from upkeep.core.settings import get_settings

app = typer.Typer(no_args_is_help=True)


def _describe(rule: ScheduleRule) -> str:
    match rule.frequency:
        case FixedCalendarPattern(unit=unit, every=every, start_date=start):
            return f"every {every} {unit.value}(s) from {start.isoformat()}"
        case RollingPattern(unit=unit, count=count):
            return f"{count} {unit.value}(s) after completion"
        case UsagePattern(meter=meter, interval=interval):
            return f"every {interval:g} {meter.value}"
        case EventPattern(triggers=triggers):
            return "on " + ", ".join(sorted(t.value for t in triggers))
    return "?"


@app.command("validate")
def validate_rules(
    path: Path = typer.Argument(..., help="JSON file with one rule or a list of rules"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Validate rule definitions without saving them."""
    from upkeep.core.scheduling.schemas import validate_per_instance_rule, validate_rule

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        fail(ConfigError(f"Cannot load {path}: {e}", cause=e))

    items = data if isinstance(data, list) else [data]
    settings = get_settings()
    rules: list[ScheduleRule] = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            fail(ValidationError(f"Rule #{index} is not an object"))
        try:
            if "target_id" in item:
                rules.append(validate_per_instance_rule(item, settings))
            else:
                rules.append(validate_rule(item, settings))
        except ValidationError as e:
            fail(e)

    rows = [
        {
            "id": rule.id,
            "template": rule.template_id,
            "mode": type(rule.frequency).__name__,
            "schedule": _describe(rule),
            "scope": type(rule.scope).__name__,
            "assignment": type(rule.assignment).__name__,
        }
        for rule in rules
    ]
    if json_out:
        output_json({"valid": True, "rules": rows})
        return
    output_rows(rows, title=f"{len(rows)} valid rule(s)")
