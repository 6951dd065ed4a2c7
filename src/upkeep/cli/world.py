"""
Fixture worlds for ``upkeep tick``.

A world file is a JSON document describing templates, targets, rules and
pending triggers. It is loaded into the in-memory stores so a tick can be
run and inspected from the terminal::

    {
      "templates": [{"template_id": "tpl-1", "name": "Daily check", "version": "3"}],
      "targets":   [{"target_id": "fl-1", "asset_type": "forklift", "site_id": "north"}],
      "rules":     [{"id": "r-1", "template_id": "tpl-1",
                     "frequency": {"mode": "fixed_calendar", "start_date": "2025-01-01"}}],
      "users":     ["u-ana"],
      "teams":     {"yard": ["u-ana", "u-ben"]},
      "events":    [{"id": "ev-1", "type": "DEFECT_MARKED_UNSAFE",
                     "target_id": "fl-1", "timestamp": "2025-01-08T09:30:00Z"}],
      "signals":   [{"rule_id": "r-2", "target_id": "fl-1", "meter": "hours",
                     "reading": 1250, "delta": 250, "timestamp": "2025-01-08T10:00:00Z"}]
    }

Rules with a ``target_id`` key use the per-inspection shape.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Annotated, Any

from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from upkeep.core.errors import ConfigError, ValidationError
from upkeep.core.scheduling.memory import (
    InMemoryAssignmentDirectory,
    InMemoryEventQueue,
    InMemoryInstanceStore,
    InMemoryRuleStore,
    InMemorySignalSource,
    InMemoryTargetDirectory,
    InMemoryTemplateStore,
)
from upkeep.core.scheduling.models import (
    Event,
    EventType,
    MeterType,
    TargetInfo,
    TemplateSnapshot,
    ThresholdSignal,
)
from upkeep.core.scheduling.schemas import validate_per_instance_rule, validate_rule
from upkeep.core.settings import UpkeepSettings


def _utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


UtcDatetime = Annotated[datetime, AfterValidator(_utc)]


class TemplateFixture(BaseModel):
    model_config = ConfigDict(extra="forbid")

    template_id: str
    name: str = ""
    version: str = "1"
    content: dict[str, Any] = Field(default_factory=dict)


class TargetFixture(BaseModel):
    model_config = ConfigDict(extra="forbid")

    target_id: str
    site_id: str | None = None
    asset_type: str | None = None
    tags: list[str] = Field(default_factory=list)


class EventFixture(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    type: EventType
    target_id: str | None = None
    timestamp: UtcDatetime
    processed: bool = False
    payload: dict[str, Any] = Field(default_factory=dict)


class SignalFixture(BaseModel):
    model_config = ConfigDict(extra="forbid")

    rule_id: str
    target_id: str
    meter: MeterType = MeterType.HOURS
    reading: float = 0.0
    delta: float
    timestamp: UtcDatetime


class WorldFixture(BaseModel):
    model_config = ConfigDict(extra="forbid")

    templates: list[TemplateFixture] = Field(default_factory=list)
    targets: list[TargetFixture] = Field(default_factory=list)
    rules: list[dict[str, Any]] = Field(default_factory=list)
    users: list[str] = Field(default_factory=list)
    teams: dict[str, list[str]] = Field(default_factory=dict)
    events: list[EventFixture] = Field(default_factory=list)
    signals: list[SignalFixture] = Field(default_factory=list)


@dataclass
class World:
    """In-memory collaborators built from a fixture."""

    rules: InMemoryRuleStore
    templates: InMemoryTemplateStore
    targets: InMemoryTargetDirectory
    instances: InMemoryInstanceStore
    events: InMemoryEventQueue
    assignments: InMemoryAssignmentDirectory
    signals: InMemorySignalSource


def build_world(data: dict[str, Any], settings: UpkeepSettings | None = None) -> World:
    """Validate a fixture document and build the stores.

    Raises:
        ValidationError: The document or one of its rules is malformed
    """
    try:
        fixture = WorldFixture.model_validate(data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        loc = ".".join(str(part) for part in first["loc"])
        raise ValidationError(f"Invalid world file: {loc}: {first['msg']}", cause=e) from e

    rules = []
    for index, rule_data in enumerate(fixture.rules):
        try:
            if "target_id" in rule_data:
                rules.append(validate_per_instance_rule(rule_data, settings))
            else:
                rules.append(validate_rule(rule_data, settings))
        except ValidationError as e:
            raise e.with_context(rule_index=index)

    return World(
        rules=InMemoryRuleStore(rules),
        templates=InMemoryTemplateStore(
            TemplateSnapshot(t.template_id, t.name or t.template_id, t.version, t.content)
            for t in fixture.templates
        ),
        targets=InMemoryTargetDirectory(
            TargetInfo(t.target_id, t.site_id, t.asset_type, frozenset(t.tags))
            for t in fixture.targets
        ),
        instances=InMemoryInstanceStore(),
        events=InMemoryEventQueue(
            Event(e.id, e.type, e.target_id, e.timestamp, e.processed, e.payload)
            for e in fixture.events
        ),
        assignments=InMemoryAssignmentDirectory(fixture.users, fixture.teams),
        signals=InMemorySignalSource(
            ThresholdSignal(s.rule_id, s.target_id, s.meter, s.reading, s.delta, s.timestamp)
            for s in fixture.signals
        ),
    )


def load_world(path: Path, settings: UpkeepSettings | None = None) -> World:
    """Read a JSON fixture file and build the stores.

    Raises:
        ConfigError: The file cannot be read or is not JSON
        ValidationError: The content is malformed
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"Cannot read world file {path}: {e}", cause=e) from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"World file {path} is not valid JSON: {e}", cause=e) from e
    if not isinstance(data, dict):
        raise ConfigError(f"World file {path} must contain a JSON object")
    return build_world(data, settings)
