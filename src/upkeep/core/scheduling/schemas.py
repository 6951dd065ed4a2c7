"""Rule definition schemas - validation at rule-save time.

Operator-authored rules arrive as plain data (API payloads, fixture files).
These pydantic models validate them and convert them to the frozen
dataclasses the engine works with, so a malformed pattern is rejected when
the rule is saved and never reaches the generation path.

Two input shapes are accepted:

``ScheduleRuleSpec``
    The full rule: frequency mode, scope, assignment, constraints.

``PerInstanceRuleSpec``
    The simplified per-inspection rule (daily / weekly / monthly /
    quarterly / yearly / custom N days, with an optional end condition),
    converted to a single-target fixed-calendar rule.

Example::

    rule = validate_rule({
        "template_id": "tpl-forklift-daily",
        "frequency": {"mode": "fixed_calendar", "start_date": "2025-01-06",
                      "unit": "week", "weekdays": ["mon", "thu"]},
        "scope": {"kind": "asset_type", "asset_type": "forklift"},
    })

Any pydantic failure is re-raised as :class:`upkeep.core.errors.ValidationError`.
"""

from __future__ import annotations

import uuid
from datetime import UTC, date, datetime, time
from typing import Annotated, Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from upkeep.core.errors import ValidationError
from upkeep.core.settings import UpkeepSettings, get_settings

from .models import (
    AllTargets,
    AssignmentPolicy,
    ByAssetIds,
    ByAssetType,
    BySite,
    ByTags,
    Constraints,
    DueRules,
    EventPattern,
    EventType,
    FixedCalendarPattern,
    FixedUser,
    IntervalUnit,
    MeterType,
    NthWeekday,
    RollingPattern,
    RotateTeam,
    RuleStatus,
    ScheduleRule,
    ScopeDescriptor,
    Unassigned,
    UsagePattern,
    Weekday,
)
from .protocol import RuleStore


def _new_rule_id() -> str:
    return f"rule-{uuid.uuid4().hex[:10]}"


def _check_timezone(value: str | None) -> str | None:
    if value is None:
        return value
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown timezone: {value}") from e
    return value


# ---------------------------------------------------------------------------
# Frequency
# ---------------------------------------------------------------------------


class NthWeekdaySpec(BaseModel):
    """``nth`` is 1-4, or -1 / 5 for the last such weekday of the month."""

    model_config = ConfigDict(extra="forbid")

    nth: int = Field(..., description="1-4, or -1 (or 5) for last")
    weekday: Weekday

    @field_validator("weekday", mode="before")
    @classmethod
    def parse_weekday(cls, v: Any) -> Weekday:
        try:
            return Weekday.parse(v)
        except (KeyError, ValueError, AttributeError) as e:
            raise ValueError(f"Unknown weekday: {v!r}") from e

    @field_validator("nth")
    @classmethod
    def check_nth(cls, v: int) -> int:
        if v == 5:
            return -1
        if v not in (1, 2, 3, 4, -1):
            raise ValueError("nth must be 1-4, or -1 / 5 for last")
        return v


class FixedCalendarSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    mode: Literal["fixed_calendar"] = "fixed_calendar"
    start_date: date
    unit: IntervalUnit = IntervalUnit.DAY
    every: int = Field(default=1, ge=1, description="Interval multiplier")
    weekdays: list[Weekday] = Field(default_factory=list)
    day_of_month: int | None = Field(default=None, ge=1, le=31)
    nth_weekday: NthWeekdaySpec | None = None
    time_of_day: time = time(0, 0)
    timezone: str | None = Field(default=None, description="IANA zone; default from settings")
    end_date: date | None = None
    max_occurrences: int | None = Field(default=None, ge=1)

    @field_validator("weekdays", mode="before")
    @classmethod
    def parse_weekdays(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = [part for part in v.split(",") if part.strip()]
        try:
            return [Weekday.parse(day) for day in v]
        except (KeyError, ValueError, AttributeError) as e:
            raise ValueError(f"Unknown weekday in {v!r}") from e

    @field_validator("timezone")
    @classmethod
    def check_timezone(cls, v: str | None) -> str | None:
        return _check_timezone(v)

    @model_validator(mode="after")
    def check_consistency(self) -> FixedCalendarSpec:
        monthly = self.unit in (IntervalUnit.MONTH, IntervalUnit.YEAR)
        if self.weekdays and monthly:
            raise ValueError("weekdays apply to day and week units only")
        if (
            self.unit == IntervalUnit.DAY
            and self.weekdays
            and self.every % 7 == 0
            and self.start_date.weekday() not in self.weekdays
        ):
            # every 7n days always lands on start_date's weekday
            raise ValueError(
                f"every {self.every} days only reaches {Weekday(self.start_date.weekday()).name.lower()}; "
                "weekdays would never match"
            )
        if (self.day_of_month is not None or self.nth_weekday is not None) and not monthly:
            raise ValueError("day_of_month / nth_weekday apply to month and year units only")
        if self.day_of_month is not None and self.nth_weekday is not None:
            raise ValueError("day_of_month and nth_weekday are mutually exclusive")
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("end_date is before start_date")
        return self

    def to_pattern(self, default_timezone: str = "UTC") -> FixedCalendarPattern:
        nth = None
        if self.nth_weekday is not None:
            nth = NthWeekday(nth=self.nth_weekday.nth, weekday=self.nth_weekday.weekday)
        return FixedCalendarPattern(
            start_date=self.start_date,
            unit=self.unit,
            every=self.every,
            weekdays=frozenset(self.weekdays),
            day_of_month=self.day_of_month,
            nth_weekday=nth,
            time_of_day=self.time_of_day,
            timezone=self.timezone or default_timezone,
            end_date=self.end_date,
            max_occurrences=self.max_occurrences,
        )


class RollingSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    mode: Literal["rolling"] = "rolling"
    unit: IntervalUnit = IntervalUnit.DAY
    count: int = Field(default=1, ge=1)

    def to_pattern(self, default_timezone: str = "UTC") -> RollingPattern:
        return RollingPattern(unit=self.unit, count=self.count)


class UsageSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    mode: Literal["usage"] = "usage"
    meter: MeterType = MeterType.HOURS
    interval: float = Field(..., gt=0, description="Meter delta per occurrence")

    def to_pattern(self, default_timezone: str = "UTC") -> UsagePattern:
        return UsagePattern(meter=self.meter, interval=self.interval)


class EventSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    mode: Literal["event"] = "event"
    triggers: list[EventType] = Field(..., min_length=1)

    def to_pattern(self, default_timezone: str = "UTC") -> EventPattern:
        return EventPattern(triggers=frozenset(self.triggers))


FrequencySpec = Annotated[
    FixedCalendarSpec | RollingSpec | UsageSpec | EventSpec,
    Field(discriminator="mode"),
]


# ---------------------------------------------------------------------------
# Scope, assignment, limits
# ---------------------------------------------------------------------------


class ScopeSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["all", "asset_type", "tags", "asset_ids", "site"] = "all"
    asset_type: str | None = None
    tags: list[str] = Field(default_factory=list)
    match_all: bool = False
    asset_ids: list[str] = Field(default_factory=list)
    site_id: str | None = None

    @model_validator(mode="after")
    def check_fields(self) -> ScopeSpec:
        if self.kind == "asset_type" and not self.asset_type:
            raise ValueError("asset_type scope needs asset_type")
        if self.kind == "tags" and not self.tags:
            raise ValueError("tags scope needs at least one tag")
        if self.kind == "asset_ids" and not self.asset_ids:
            raise ValueError("asset_ids scope needs at least one asset id")
        if self.kind == "site" and not self.site_id:
            raise ValueError("site scope needs site_id")
        return self

    def to_scope(self) -> ScopeDescriptor:
        match self.kind:
            case "asset_type":
                return ByAssetType(asset_type=self.asset_type or "")
            case "tags":
                return ByTags(tags=frozenset(self.tags), match_all=self.match_all)
            case "asset_ids":
                return ByAssetIds(asset_ids=tuple(self.asset_ids))
            case "site":
                return BySite(site_id=self.site_id or "")
        return AllTargets()


class AssignmentSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["unassigned", "user", "team"] = "unassigned"
    user_id: str | None = None
    team_id: str | None = None

    @model_validator(mode="after")
    def check_fields(self) -> AssignmentSpec:
        if self.kind == "user" and not self.user_id:
            raise ValueError("user assignment needs user_id")
        if self.kind == "team" and not self.team_id:
            raise ValueError("team assignment needs team_id")
        return self

    def to_policy(self) -> AssignmentPolicy:
        match self.kind:
            case "user":
                return FixedUser(user_id=self.user_id or "")
            case "team":
                return RotateTeam(team_id=self.team_id or "")
        return Unassigned()


class ConstraintsSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_open_per_target: int = Field(default=1, ge=0, description="0 = unlimited")
    duplicate_window_hours: float = Field(default=0.0, ge=0, description="0 = off")


class DueRulesSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    due_offset_days: int = Field(default=0, ge=0)
    overdue_after_days: int = Field(default=0, ge=0)


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


class ScheduleRuleSpec(BaseModel):
    """Full schedule rule definition."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=_new_rule_id, min_length=1)
    name: str = ""
    template_id: str = Field(..., min_length=1)
    site_id: str | None = None
    frequency: FrequencySpec
    scope: ScopeSpec = Field(default_factory=ScopeSpec)
    assignment: AssignmentSpec = Field(default_factory=AssignmentSpec)
    constraints: ConstraintsSpec = Field(default_factory=ConstraintsSpec)
    due_rules: DueRulesSpec = Field(default_factory=DueRulesSpec)
    ahead_days: int | None = Field(default=None, ge=0, le=366)
    status: RuleStatus = RuleStatus.ACTIVE
    created_by: str = "system"

    def to_rule(self, settings: UpkeepSettings | None = None) -> ScheduleRule:
        settings = settings or get_settings()
        return ScheduleRule(
            id=self.id,
            name=self.name or self.id,
            template_id=self.template_id,
            site_id=self.site_id,
            frequency=self.frequency.to_pattern(settings.default_timezone),
            scope=self.scope.to_scope(),
            assignment=self.assignment.to_policy(),
            constraints=Constraints(
                max_open_per_target=self.constraints.max_open_per_target,
                duplicate_window_hours=self.constraints.duplicate_window_hours,
            ),
            due_rules=DueRules(
                due_offset_days=self.due_rules.due_offset_days,
                overdue_after_days=self.due_rules.overdue_after_days,
            ),
            ahead_days=self.ahead_days,
            status=self.status,
            created_by=self.created_by,
            created_at=datetime.now(UTC),
        )


# Per-inspection frequency → (unit, multiplier)
_PER_INSTANCE_UNITS: dict[str, tuple[IntervalUnit, int]] = {
    "daily": (IntervalUnit.DAY, 1),
    "weekly": (IntervalUnit.WEEK, 1),
    "monthly": (IntervalUnit.MONTH, 1),
    "quarterly": (IntervalUnit.MONTH, 3),
    "yearly": (IntervalUnit.YEAR, 1),
}


class PerInstanceRuleSpec(BaseModel):
    """Simplified recurrence attached to a single inspection target."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=_new_rule_id, min_length=1)
    template_id: str = Field(..., min_length=1)
    target_id: str = Field(..., min_length=1)
    frequency: Literal["daily", "weekly", "monthly", "quarterly", "yearly", "custom"]
    interval_days: int | None = Field(default=None, ge=1, description="For custom frequency")
    start_date: date
    time_of_day: time = time(0, 0)
    timezone: str | None = None
    end_condition: Literal["never", "end_by_date", "end_after_occurrences"] = "never"
    end_date: date | None = None
    occurrences: int | None = Field(default=None, ge=1)
    assigned_to: str | None = None
    due_offset_days: int = Field(default=0, ge=0)

    @field_validator("timezone")
    @classmethod
    def check_timezone(cls, v: str | None) -> str | None:
        return _check_timezone(v)

    @model_validator(mode="after")
    def check_fields(self) -> PerInstanceRuleSpec:
        if self.frequency == "custom" and self.interval_days is None:
            raise ValueError("custom frequency needs interval_days")
        if self.end_condition == "end_by_date":
            if self.end_date is None:
                raise ValueError("end_by_date needs end_date")
            if self.end_date < self.start_date:
                raise ValueError("end_date is before start_date")
        if self.end_condition == "end_after_occurrences" and self.occurrences is None:
            raise ValueError("end_after_occurrences needs occurrences")
        return self

    def to_rule(self, settings: UpkeepSettings | None = None) -> ScheduleRule:
        settings = settings or get_settings()
        if self.frequency == "custom":
            unit, every = IntervalUnit.DAY, self.interval_days or 1
        else:
            unit, every = _PER_INSTANCE_UNITS[self.frequency]

        pattern = FixedCalendarPattern(
            start_date=self.start_date,
            unit=unit,
            every=every,
            time_of_day=self.time_of_day,
            timezone=self.timezone or settings.default_timezone,
            end_date=self.end_date if self.end_condition == "end_by_date" else None,
            max_occurrences=(
                self.occurrences if self.end_condition == "end_after_occurrences" else None
            ),
        )
        assignment: AssignmentPolicy = (
            FixedUser(user_id=self.assigned_to) if self.assigned_to else Unassigned()
        )
        return ScheduleRule(
            id=self.id,
            name=f"{self.frequency} {self.template_id} on {self.target_id}",
            template_id=self.template_id,
            frequency=pattern,
            scope=ByAssetIds(asset_ids=(self.target_id,)),
            assignment=assignment,
            due_rules=DueRules(due_offset_days=self.due_offset_days),
            created_at=datetime.now(UTC),
        )


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def _validation_error(exc: PydanticValidationError, kind: str) -> ValidationError:
    errors = [
        {
            "loc": ".".join(str(part) for part in err["loc"]),
            "msg": err["msg"],
            "type": err["type"],
        }
        for err in exc.errors()
    ]
    first = errors[0] if errors else {"loc": "", "msg": str(exc)}
    return ValidationError(
        f"Invalid {kind}: {first['loc']}: {first['msg']}" if first["loc"] else f"Invalid {kind}: {first['msg']}",
        field=first["loc"] or None,
        errors=errors,
        cause=exc,
    )


def validate_rule(
    data: dict[str, Any] | ScheduleRuleSpec,
    settings: UpkeepSettings | None = None,
) -> ScheduleRule:
    """Validate a rule definition and build the ScheduleRule.

    Raises:
        ValidationError: The definition is malformed
    """
    try:
        spec = data if isinstance(data, ScheduleRuleSpec) else ScheduleRuleSpec.model_validate(data)
    except PydanticValidationError as e:
        raise _validation_error(e, "schedule rule") from e
    return spec.to_rule(settings)


def validate_per_instance_rule(
    data: dict[str, Any] | PerInstanceRuleSpec,
    settings: UpkeepSettings | None = None,
) -> ScheduleRule:
    """Validate a per-inspection rule and convert it to a single-target rule.

    Raises:
        ValidationError: The definition is malformed
    """
    try:
        spec = (
            data if isinstance(data, PerInstanceRuleSpec) else PerInstanceRuleSpec.model_validate(data)
        )
    except PydanticValidationError as e:
        raise _validation_error(e, "per-instance rule") from e
    return spec.to_rule(settings)


async def save_rule(
    store: RuleStore,
    data: dict[str, Any],
    settings: UpkeepSettings | None = None,
) -> ScheduleRule:
    """Validate ``data`` and save the resulting rule.

    A ``target_id`` key selects the per-inspection shape.
    """
    if "target_id" in data:
        rule = validate_per_instance_rule(data, settings)
    else:
        rule = validate_rule(data, settings)
    return await store.save(rule)
