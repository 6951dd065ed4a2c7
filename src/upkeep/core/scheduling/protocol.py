"""Collaborator and timing-backend protocols.

┌──────────────────────────────────────────────────────────────────────────────┐
│  ENGINE COLLABORATORS                                                         │
│                                                                               │
│  The engine owns no storage. Everything it reads or writes goes through      │
│  one of these narrow async interfaces, injected at construction:             │
│                                                                               │
│   ┌──────────────────┐   list_active / get / update_cursor                   │
│   │  RuleStore       │ ◄──────────────────────────────┐                      │
│   └──────────────────┘                                │                      │
│   ┌──────────────────┐   get(template_id)             │                      │
│   │  TemplateStore   │ ◄──────────────────────┐       │                      │
│   └──────────────────┘                        │       │                      │
│   ┌──────────────────┐   resolve(scope) / get │  ┌────┴────────────┐         │
│   │  TargetDirectory │ ◄────────────────────┐ │  │ SchedulerEngine │         │
│   └──────────────────┘                      │ └──┤  (run loop)     │         │
│   ┌──────────────────┐   query / create     └────┤                 │         │
│   │  InstanceStore   │ ◄─────────────────────────┤                 │         │
│   └──────────────────┘                           │                 │         │
│   ┌──────────────────┐   get_unprocessed         │                 │         │
│   │  EventQueue      │ ◄─────────────────────────┤                 │         │
│   └──────────────────┘                           │                 │         │
│   ┌──────────────────┐   resolve_user / team     │                 │         │
│   │  Assignment Dir. │ ◄─────────────────────────┤                 │         │
│   └──────────────────┘                           │                 │         │
│   ┌──────────────────┐   drain()                 │                 │         │
│   │  SignalSource    │ ◄─────────────────────────┘                 │         │
│   └──────────────────┘                           └─────────────────┘         │
│                                                                               │
│  Timing is a separate concern: a SchedulerBackend decides WHEN run_tick      │
│  happens; the engine decides WHAT happens on each tick.                      │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from .models import (
    Event,
    EventType,
    InstanceStatus,
    RuleCursor,
    ScheduleRule,
    ScopeDescriptor,
    TargetInfo,
    TemplateSnapshot,
    ThresholdSignal,
    WorkInstance,
)

# ---------------------------------------------------------------------------
# Data collaborators
# ---------------------------------------------------------------------------


@runtime_checkable
class RuleStore(Protocol):
    """Source of schedule rules and owner of their cursors."""

    async def list_active(self) -> Sequence[ScheduleRule]: ...

    async def get(self, rule_id: str) -> ScheduleRule | None: ...

    async def save(self, rule: ScheduleRule) -> ScheduleRule: ...

    async def update_cursor(self, rule_id: str, cursor: RuleCursor) -> None: ...


@runtime_checkable
class TemplateStore(Protocol):
    async def get(self, template_id: str) -> TemplateSnapshot | None: ...


@runtime_checkable
class TargetDirectory(Protocol):
    """Resolves scope descriptors against the asset directory.

    ``resolve`` may return duplicates and in any order; the scope resolver
    normalizes the list.
    """

    async def resolve(self, scope: ScopeDescriptor) -> Sequence[str]: ...

    async def get(self, target_id: str) -> TargetInfo | None: ...


@runtime_checkable
class InstanceStore(Protocol):
    """Persisted work instances.

    ``create`` must reject a second instance with the same recurrence key
    by raising :class:`~upkeep.core.errors.DuplicateKeyError`.
    """

    async def query(
        self,
        *,
        rule_id: str | None = None,
        target_id: str | None = None,
        template_id: str | None = None,
        statuses: frozenset[InstanceStatus] | None = None,
        created_after: datetime | None = None,
    ) -> Sequence[WorkInstance]: ...

    async def get_by_key(self, recurrence_key: str) -> WorkInstance | None: ...

    async def create(self, instance: WorkInstance) -> WorkInstance: ...

    async def update(self, instance: WorkInstance) -> WorkInstance: ...


@runtime_checkable
class EventQueue(Protocol):
    async def get_unprocessed(
        self, trigger_types: frozenset[EventType] | None = None
    ) -> Sequence[Event]: ...

    async def mark_processed(self, event_id: str) -> None: ...


@runtime_checkable
class AssignmentDirectory(Protocol):
    async def resolve_user(self, user_id: str) -> str | None: ...

    async def resolve_team_members(self, team_id: str) -> Sequence[str]: ...


@runtime_checkable
class SignalSource(Protocol):
    """Meter integration: yields a rule's threshold crossings since the last drain."""

    async def drain(self, rule_id: str) -> Sequence[ThresholdSignal]: ...


# ---------------------------------------------------------------------------
# Timing backend
# ---------------------------------------------------------------------------


TickCallback = Callable[[], Awaitable[Any]]


@runtime_checkable
class SchedulerBackend(Protocol):
    """Protocol for pluggable timing backends.

    A backend is responsible ONLY for timing: calling the tick callback at
    the specified interval. All generation logic lives in SchedulerEngine.

    Example (custom backend):
        >>> class MyBackend:
        ...     name = "custom"
        ...
        ...     def start(self, tick_callback, interval_seconds=300.0):
        ...         my_timer.every(interval_seconds, lambda: asyncio.run(tick_callback()))
        ...
        ...     def stop(self):
        ...         my_timer.cancel()
        ...
        ...     def health(self) -> dict:
        ...         return {"healthy": True, "backend": "custom"}
    """

    name: str

    def start(
        self,
        tick_callback: TickCallback,
        interval_seconds: float = 300.0,
    ) -> None:
        """Start the timer loop.

        Args:
            tick_callback: Async function to call on each tick.
            interval_seconds: How often to tick.
        """
        ...

    def stop(self) -> None:
        """Stop the loop, waiting for the current tick to finish."""
        ...

    def health(self) -> dict[str, Any]:
        """Return backend health: healthy, backend, tick_count, last_tick."""
        ...


@dataclass
class BackendHealth:
    """Structured backend health response."""

    healthy: bool
    backend: str
    tick_count: int = 0
    last_tick: datetime | None = None
    drift_ms: float | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "backend": self.backend,
            "tick_count": self.tick_count,
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
            "drift_ms": self.drift_ms,
            **self.extra,
        }
