"""Scheduling models: rules, work instances, events and usage signals.

Manifesto:
    Rules, instances and triggers need typed representations so the
    calculator, guard, materializer and run loop can share one vocabulary.
    Frequency modes, scopes and assignment policies are tagged unions of
    frozen dataclasses; consumers dispatch over them with ``match``.

Tags:
    upkeep, models, scheduling, dataclasses, tagged-union

Doc-Types:
    api-reference, data-model
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time
from enum import Enum, IntEnum
from typing import Any

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class IntervalUnit(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


class Weekday(IntEnum):
    """Day of week, numbered like ``date.weekday()``."""

    MON = 0
    TUE = 1
    WED = 2
    THU = 3
    FRI = 4
    SAT = 5
    SUN = 6

    @classmethod
    def parse(cls, value: str | int) -> Weekday:
        if isinstance(value, int):
            return cls(value)
        return cls[value.strip().upper()[:3]]


class MeterType(str, Enum):
    HOURS = "hours"
    KM = "km"
    CYCLES = "cycles"


class EventType(str, Enum):
    DEFECT_MARKED_UNSAFE = "DEFECT_MARKED_UNSAFE"
    DEFECT_REOPENED = "DEFECT_REOPENED"
    ASSET_STATUS_CHANGED = "ASSET_STATUS_CHANGED"
    COMPLIANCE_EXPIRING = "COMPLIANCE_EXPIRING"
    PM_OVERDUE = "PM_OVERDUE"
    INSPECTION_FAILED = "INSPECTION_FAILED"
    MANUAL_TRIGGER = "MANUAL_TRIGGER"


class RuleStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"


class InstanceStatus(str, Enum):
    DRAFT = "draft"
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CLOSED = "closed"
    CANCELLED = "cancelled"


# Statuses that count against maxOpenPerTarget
OPEN_STATUSES = frozenset(
    {InstanceStatus.DRAFT, InstanceStatus.OPEN, InstanceStatus.IN_PROGRESS}
)


class CreatedFrom(str, Enum):
    SCHEDULE = "schedule"
    MANUAL = "manual"
    BULK = "bulk"
    EVENT = "event"


# ---------------------------------------------------------------------------
# Frequency patterns (tagged union)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NthWeekday:
    """The 2nd Tuesday / the last Friday of a month. ``nth=-1`` means last."""

    nth: int
    weekday: Weekday


@dataclass(frozen=True)
class FixedCalendarPattern:
    """Calendar timing anchored at ``start_date``."""

    start_date: date
    unit: IntervalUnit = IntervalUnit.DAY
    every: int = 1
    weekdays: frozenset[Weekday] = frozenset()
    day_of_month: int | None = None
    nth_weekday: NthWeekday | None = None
    time_of_day: time = time(0, 0)
    timezone: str = "UTC"
    end_date: date | None = None
    max_occurrences: int | None = None


@dataclass(frozen=True)
class RollingPattern:
    """Next occurrence is ``count`` units after the previous one was completed."""

    unit: IntervalUnit = IntervalUnit.DAY
    count: int = 1


@dataclass(frozen=True)
class UsagePattern:
    """An occurrence each time a meter advances by ``interval``."""

    meter: MeterType = MeterType.HOURS
    interval: float = 250.0


@dataclass(frozen=True)
class EventPattern:
    """An occurrence for each matching event."""

    triggers: frozenset[EventType] = frozenset()


FrequencyMode = FixedCalendarPattern | RollingPattern | UsagePattern | EventPattern


# ---------------------------------------------------------------------------
# Scope descriptors (tagged union)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AllTargets:
    pass


@dataclass(frozen=True)
class ByAssetType:
    asset_type: str


@dataclass(frozen=True)
class ByTags:
    tags: frozenset[str]
    match_all: bool = False


@dataclass(frozen=True)
class ByAssetIds:
    asset_ids: tuple[str, ...]


@dataclass(frozen=True)
class BySite:
    site_id: str


ScopeDescriptor = AllTargets | ByAssetType | ByTags | ByAssetIds | BySite


# ---------------------------------------------------------------------------
# Assignment policies (tagged union)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Unassigned:
    pass


@dataclass(frozen=True)
class FixedUser:
    user_id: str


@dataclass(frozen=True)
class RotateTeam:
    team_id: str


AssignmentPolicy = Unassigned | FixedUser | RotateTeam


# ---------------------------------------------------------------------------
# Schedule rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Constraints:
    """Per-target limits. Zero disables the corresponding check."""

    max_open_per_target: int = 1
    duplicate_window_hours: float = 0.0


@dataclass(frozen=True)
class DueRules:
    due_offset_days: int = 0
    overdue_after_days: int = 0


@dataclass
class RuleCursor:
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None


@dataclass
class ScheduleRule:
    """An operator-authored scheduling rule."""

    id: str
    template_id: str
    frequency: FrequencyMode
    scope: ScopeDescriptor = field(default_factory=AllTargets)
    assignment: AssignmentPolicy = field(default_factory=Unassigned)
    constraints: Constraints = field(default_factory=Constraints)
    due_rules: DueRules = field(default_factory=DueRules)
    status: RuleStatus = RuleStatus.ACTIVE
    cursor: RuleCursor = field(default_factory=RuleCursor)
    name: str = ""
    site_id: str | None = None
    ahead_days: int | None = None
    created_by: str = "system"
    created_at: datetime | None = None
    updated_by: str | None = None
    updated_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == RuleStatus.ACTIVE


# ---------------------------------------------------------------------------
# Snapshots returned by external directories
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TemplateSnapshot:
    template_id: str
    name: str
    version: str
    content: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TargetInfo:
    target_id: str
    site_id: str | None = None
    asset_type: str | None = None
    tags: frozenset[str] = frozenset()


# ---------------------------------------------------------------------------
# Work instances
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HistoryEntry:
    at: datetime
    action: str
    actor: str = "system"
    note: str | None = None


@dataclass
class WorkInstance:
    """A concrete, dated piece of work materialized from a rule."""

    id: str
    schedule_rule_id: str
    target_id: str
    template_id: str
    template: TemplateSnapshot
    scheduled_at: datetime
    due_at: datetime
    recurrence_key: str
    created_at: datetime
    status: InstanceStatus = InstanceStatus.DRAFT
    created_from: CreatedFrom = CreatedFrom.SCHEDULE
    assigned_to: str | None = None
    target: TargetInfo | None = None
    overdue_at: datetime | None = None
    completed_at: datetime | None = None
    source_event_id: str | None = None
    history: list[HistoryEntry] = field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def is_overdue(self, now: datetime) -> bool:
        """Open and past the overdue threshold (due date when none is set)."""
        threshold = self.overdue_at or self.due_at
        return self.is_open and now > threshold


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------


@dataclass
class Event:
    id: str
    type: EventType
    target_id: str | None
    timestamp: datetime
    processed: bool = False
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ThresholdSignal:
    """A meter crossed a rule's usage interval on one target."""

    rule_id: str
    target_id: str
    meter: MeterType
    reading: float
    delta: float
    timestamp: datetime


# ---------------------------------------------------------------------------
# Calculator output / guard input
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Occurrence:
    """One occurrence produced by the recurrence calculator.

    ``target_id`` is set when the triggering input names its own target
    (completed instance, usage signal, event); fixed-calendar occurrences
    leave it unset and are fanned out over the resolved scope.

    ``bucket`` overrides the day the recurrence key is derived from: the
    local calendar day for fixed-calendar occurrences, the source instance
    for rolling follow-ups. Unset means the UTC day of ``scheduled_at``.
    """

    scheduled_at: datetime
    created_from: CreatedFrom = CreatedFrom.SCHEDULE
    target_id: str | None = None
    source_id: str | None = None
    bucket: str | None = None


@dataclass(frozen=True)
class Candidate:
    """An (occurrence, target) pair on its way through guard and materializer."""

    rule_id: str
    target_id: str
    template_id: str
    scheduled_at: datetime
    created_from: CreatedFrom = CreatedFrom.SCHEDULE
    source_event_id: str | None = None
    scope_index: int = 0
    bucket: str | None = None
