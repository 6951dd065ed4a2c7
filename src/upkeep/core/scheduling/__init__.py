"""Recurring work generation for upkeep.

Manifesto:
    Operators describe *how often* work should happen; the engine turns
    that into dated work instances. It must do so idempotently (a repeated
    tick creates nothing new), respect per-target capacity, and never let
    one bad target or one bad rule stop the rest of the pass.

┌──────────────────────────────────────────────────────────────────────────────┐
│  UPKEEP SCHEDULING                                                            │
│                                                                               │
│   ┌──────────────┐  tick()   ┌───────────────────────────────────────────┐   │
│   │  Backend     │ ────────► │  SchedulerEngine                          │   │
│   │  (timing)    │           │                                           │   │
│   └──────────────┘           │   recurrence ─► scope ─► guard ─► mater.  │   │
│                              │   (pure)        (Result)  (key)   (Draft) │   │
│                              └───────────────────────────────────────────┘   │
│                                                                               │
│   Frequency modes:                                                            │
│   • FixedCalendarPattern  every N days / weeks / months / years              │
│   • RollingPattern        N units after the previous instance completed      │
│   • UsagePattern          each time a meter advances by an interval          │
│   • EventPattern          one instance per matching event                    │
│                                                                               │
│  Quick Start:                                                                 │
│  ┌──────────────────────────────────────────────────────────────────────┐   │
│  │   from upkeep.core.scheduling import SchedulerEngine, validate_rule   │   │
│  │   from upkeep.core.scheduling.memory import InMemoryRuleStore, ...    │   │
│  │                                                                      │   │
│  │   rule = validate_rule({"template_id": "tpl-1", "frequency": {...}}) │   │
│  │   engine = SchedulerEngine(rules, templates, targets, instances)     │   │
│  │   result = await engine.run_tick()                                   │   │
│  └──────────────────────────────────────────────────────────────────────┘   │
└──────────────────────────────────────────────────────────────────────────────┘

Guardrails:
    ❌ Advancing a rule's cursor from anywhere but the engine
    ✅ The materializer only creates instances

    ❌ Treating an empty scope as a failed lookup (or the reverse)
    ✅ ScopeResolver returns Ok([]) vs Err(ResolutionError)
"""

from .engine import EngineHealth, EngineStats, SchedulerEngine, TickResult
from .guard import DuplicateGuard, GuardOutcome, GuardVerdict
from .materializer import InstanceMaterializer
from .models import (
    AllTargets,
    ByAssetIds,
    ByAssetType,
    BySite,
    ByTags,
    Candidate,
    Constraints,
    CreatedFrom,
    DueRules,
    Event,
    EventPattern,
    EventType,
    FixedCalendarPattern,
    FixedUser,
    InstanceStatus,
    IntervalUnit,
    MeterType,
    NthWeekday,
    Occurrence,
    RollingPattern,
    RotateTeam,
    RuleCursor,
    RuleStatus,
    ScheduleRule,
    TargetInfo,
    TemplateSnapshot,
    ThresholdSignal,
    Unassigned,
    UsagePattern,
    Weekday,
    WorkInstance,
)
from .protocol import (
    AssignmentDirectory,
    BackendHealth,
    EventQueue,
    InstanceStore,
    RuleStore,
    SchedulerBackend,
    SignalSource,
    TargetDirectory,
    TemplateStore,
)
from .recurrence import Window, calculate, next_fixed_occurrence, occurrences_in_window
from .schemas import (
    PerInstanceRuleSpec,
    ScheduleRuleSpec,
    save_rule,
    validate_per_instance_rule,
    validate_rule,
)
from .scope import ScopeResolver
from .thread_backend import ThreadSchedulerBackend

__all__ = [
    # Engine
    "SchedulerEngine",
    "TickResult",
    "EngineStats",
    "EngineHealth",
    # Components
    "DuplicateGuard",
    "GuardOutcome",
    "GuardVerdict",
    "InstanceMaterializer",
    "ScopeResolver",
    "Window",
    "calculate",
    "occurrences_in_window",
    "next_fixed_occurrence",
    # Models
    "AllTargets",
    "ByAssetIds",
    "ByAssetType",
    "BySite",
    "ByTags",
    "Candidate",
    "Constraints",
    "CreatedFrom",
    "DueRules",
    "Event",
    "EventPattern",
    "EventType",
    "FixedCalendarPattern",
    "FixedUser",
    "InstanceStatus",
    "IntervalUnit",
    "MeterType",
    "NthWeekday",
    "Occurrence",
    "RollingPattern",
    "RotateTeam",
    "RuleCursor",
    "RuleStatus",
    "ScheduleRule",
    "TargetInfo",
    "TemplateSnapshot",
    "ThresholdSignal",
    "Unassigned",
    "UsagePattern",
    "Weekday",
    "WorkInstance",
    # Protocols
    "AssignmentDirectory",
    "BackendHealth",
    "EventQueue",
    "InstanceStore",
    "RuleStore",
    "SchedulerBackend",
    "SignalSource",
    "TargetDirectory",
    "TemplateStore",
    # Validation
    "PerInstanceRuleSpec",
    "ScheduleRuleSpec",
    "save_rule",
    "validate_per_instance_rule",
    "validate_rule",
    # Backends
    "ThreadSchedulerBackend",
]
