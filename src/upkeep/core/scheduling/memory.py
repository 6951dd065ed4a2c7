"""In-memory collaborator implementations.

Dict-backed stores satisfying every protocol in :mod:`.protocol`. They back
the CLI's fixture runs and the test suite; hosts inject their own
database-backed implementations in production.

``InMemoryInstanceStore`` enforces the recurrence-key uniqueness a real
store provides with a unique index.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime

from upkeep.core.errors import DuplicateKeyError

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
from .scope import scope_matches


class InMemoryRuleStore:
    def __init__(self, rules: Iterable[ScheduleRule] = ()):
        self._rules: dict[str, ScheduleRule] = {rule.id: rule for rule in rules}

    async def list_active(self) -> list[ScheduleRule]:
        return [rule for rule in self._rules.values() if rule.is_active]

    async def get(self, rule_id: str) -> ScheduleRule | None:
        return self._rules.get(rule_id)

    async def save(self, rule: ScheduleRule) -> ScheduleRule:
        rule.updated_at = datetime.now(UTC)
        if rule.created_at is None:
            rule.created_at = rule.updated_at
        self._rules[rule.id] = rule
        return rule

    async def update_cursor(self, rule_id: str, cursor: RuleCursor) -> None:
        rule = self._rules.get(rule_id)
        if rule is not None:
            rule.cursor = RuleCursor(cursor.last_run_at, cursor.next_run_at)

    def all(self) -> list[ScheduleRule]:
        return list(self._rules.values())


class InMemoryTemplateStore:
    def __init__(self, templates: Iterable[TemplateSnapshot] = ()):
        self._templates = {t.template_id: t for t in templates}

    async def get(self, template_id: str) -> TemplateSnapshot | None:
        return self._templates.get(template_id)

    def put(self, template: TemplateSnapshot) -> None:
        self._templates[template.template_id] = template


class InMemoryTargetDirectory:
    """Targets in insertion order; ``resolve`` filters with :func:`scope_matches`."""

    def __init__(self, targets: Iterable[TargetInfo] = ()):
        self._targets = {t.target_id: t for t in targets}

    async def resolve(self, scope: ScopeDescriptor) -> list[str]:
        return [t.target_id for t in self._targets.values() if scope_matches(scope, t)]

    async def get(self, target_id: str) -> TargetInfo | None:
        return self._targets.get(target_id)

    def add(self, target: TargetInfo) -> None:
        self._targets[target.target_id] = target


class InMemoryInstanceStore:
    def __init__(self) -> None:
        self._instances: dict[str, WorkInstance] = {}
        self._by_key: dict[str, str] = {}

    async def query(
        self,
        *,
        rule_id: str | None = None,
        target_id: str | None = None,
        template_id: str | None = None,
        statuses: frozenset[InstanceStatus] | None = None,
        created_after: datetime | None = None,
    ) -> list[WorkInstance]:
        return [
            instance
            for instance in self._instances.values()
            if (rule_id is None or instance.schedule_rule_id == rule_id)
            and (target_id is None or instance.target_id == target_id)
            and (template_id is None or instance.template_id == template_id)
            and (statuses is None or instance.status in statuses)
            and (created_after is None or instance.created_at >= created_after)
        ]

    async def get_by_key(self, recurrence_key: str) -> WorkInstance | None:
        instance_id = self._by_key.get(recurrence_key)
        return self._instances.get(instance_id) if instance_id else None

    async def create(self, instance: WorkInstance) -> WorkInstance:
        if instance.recurrence_key in self._by_key:
            raise DuplicateKeyError(instance.recurrence_key)
        self._instances[instance.id] = instance
        self._by_key[instance.recurrence_key] = instance.id
        return instance

    async def update(self, instance: WorkInstance) -> WorkInstance:
        self._instances[instance.id] = instance
        return instance

    def all(self) -> list[WorkInstance]:
        return list(self._instances.values())

    def __len__(self) -> int:
        return len(self._instances)


class InMemoryEventQueue:
    def __init__(self, events: Iterable[Event] = ()):
        self._events: dict[str, Event] = {e.id: e for e in events}
        self.processed_calls: dict[str, int] = defaultdict(int)

    async def get_unprocessed(
        self, trigger_types: frozenset[EventType] | None = None
    ) -> list[Event]:
        return [
            event
            for event in self._events.values()
            if not event.processed and (trigger_types is None or event.type in trigger_types)
        ]

    async def mark_processed(self, event_id: str) -> None:
        self.processed_calls[event_id] += 1
        event = self._events.get(event_id)
        if event is not None:
            event.processed = True

    def publish(self, event: Event) -> None:
        self._events[event.id] = event

    def all(self) -> list[Event]:
        return list(self._events.values())


class InMemoryAssignmentDirectory:
    def __init__(
        self,
        users: Iterable[str] = (),
        teams: dict[str, Sequence[str]] | None = None,
    ):
        self._users = set(users)
        self._teams = {team: list(members) for team, members in (teams or {}).items()}

    async def resolve_user(self, user_id: str) -> str | None:
        return user_id if user_id in self._users else None

    async def resolve_team_members(self, team_id: str) -> list[str]:
        return list(self._teams.get(team_id, []))


class InMemorySignalSource:
    """Queue of threshold signals per rule, emptied by ``drain``."""

    def __init__(self, signals: Iterable[ThresholdSignal] = ()):
        self._pending: dict[str, list[ThresholdSignal]] = defaultdict(list)
        for signal in signals:
            self.push(signal)

    def push(self, signal: ThresholdSignal) -> None:
        self._pending[signal.rule_id].append(signal)

    async def drain(self, rule_id: str) -> list[ThresholdSignal]:
        return self._pending.pop(rule_id, [])
