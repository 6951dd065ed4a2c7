"""
Shared pytest fixtures for upkeep tests.

This module provides:
- Deterministic clocks and ID factories
- Rule / template / target builders
- ``World``: a full set of in-memory collaborators plus an engine factory

Usage:
    def test_something(world):
        world.add_rule(fixed_rule("r-1", unit=IntervalUnit.DAY))
        result = await world.engine().run_tick(NOW)
"""

import sys
from datetime import UTC, date, datetime
from itertools import count
from pathlib import Path
from typing import Any

import pytest

# Ensure upkeep package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from upkeep.core.retry import NoRetry
from upkeep.core.scheduling.engine import SchedulerEngine
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
    AllTargets,
    Constraints,
    FixedCalendarPattern,
    IntervalUnit,
    ScheduleRule,
    TargetInfo,
    TemplateSnapshot,
)
from upkeep.core.settings import UpkeepSettings

# Wednesday
NOW = datetime(2025, 1, 8, 9, 0, tzinfo=UTC)


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=UTC)


def fixed_rule(
    rule_id: str = "r-1",
    *,
    template_id: str = "tpl-1",
    start: date = date(2025, 1, 1),
    unit: IntervalUnit = IntervalUnit.DAY,
    every: int = 1,
    max_open: int = 0,
    window_hours: float = 0.0,
    **kwargs: Any,
) -> ScheduleRule:
    """A fixed-calendar rule; capacity checks are off unless asked for."""
    pattern_fields = {
        k: kwargs.pop(k)
        for k in list(kwargs)
        if k in ("weekdays", "day_of_month", "nth_weekday", "time_of_day",
                 "timezone", "end_date", "max_occurrences")
    }
    return ScheduleRule(
        id=rule_id,
        template_id=template_id,
        frequency=FixedCalendarPattern(start_date=start, unit=unit, every=every, **pattern_fields),
        constraints=Constraints(max_open_per_target=max_open, duplicate_window_hours=window_hours),
        **kwargs,
    )


class World:
    """In-memory collaborators for one test."""

    def __init__(self, targets: int = 3) -> None:
        self.rules = InMemoryRuleStore()
        self.templates = InMemoryTemplateStore(
            [TemplateSnapshot("tpl-1", "Daily forklift check", "1", {"items": ["brakes", "horn"]})]
        )
        self.targets = InMemoryTargetDirectory(
            TargetInfo(f"a-{i}", site_id="north", asset_type="forklift", tags=frozenset({"yard"}))
            for i in range(1, targets + 1)
        )
        self.instances = InMemoryInstanceStore()
        self.events = InMemoryEventQueue()
        self.assignments = InMemoryAssignmentDirectory(
            users=["u-ana", "u-ben"], teams={"yard": ["u-ana", "u-ben"]}
        )
        self.signals = InMemorySignalSource()
        self.settings = UpkeepSettings(ahead_days=7, default_assignee="u-lead")
        self._ids = count(1)

    def add_rule(self, rule: ScheduleRule) -> ScheduleRule:
        self.rules._rules[rule.id] = rule
        return rule

    def next_id(self) -> str:
        return f"wi-{next(self._ids)}"

    def engine(self, **overrides: Any) -> SchedulerEngine:
        kwargs: dict[str, Any] = {
            "rules": self.rules,
            "templates": self.templates,
            "targets": self.targets,
            "instances": self.instances,
            "events": self.events,
            "assignments": self.assignments,
            "signals": self.signals,
            "settings": self.settings,
            "retry_strategy": NoRetry(),
            "clock": lambda: NOW,
            "id_factory": self.next_id,
        }
        kwargs.update(overrides)
        return SchedulerEngine(**kwargs)


@pytest.fixture
def world() -> World:
    return World()


@pytest.fixture
def rule_all_targets() -> ScheduleRule:
    return fixed_rule("r-daily", scope=AllTargets())
