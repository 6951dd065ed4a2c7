"""Scheduler engine - the generation run loop.

Manifesto:
    The engine is the one place where rules, scope, guard and materializer
    meet. It owns no storage and takes no locks: every collaborator is
    injected, and correctness under repeated or concurrent ticks comes
    from recurrence keys checked by the duplicate guard and enforced by
    the instance store.

Tags:
    upkeep, scheduling, run-loop, orchestrator, beat-as-poller

Doc-Types:
    api-reference, architecture-diagram


┌──────────────────────────────────────────────────────────────────────────────┐
│  SCHEDULER ENGINE                                                             │
│                                                                               │
│   run_tick(now)                                                               │
│     │                                                                         │
│     ├── rules = RuleStore.list_active()                                       │
│     │                                                                         │
│     ├── for each non-event rule:            (cancellation checked here)      │
│     │     ├── FixedCalendar: calculate(window) × resolve(scope)              │
│     │     ├── UsageBased:    SignalSource.drain(rule) ∩ scope                │
│     │     ├── Rolling:       nothing (driven by on_instance_completed)       │
│     │     ├── for each (date, target) pair:                                  │
│     │     │     guard.check ──► UNIQUE ──► materializer.materialize          │
│     │     │     (a failed pair is recorded; the rest continue)               │
│     │     └── advance cursor (last_run_at, next_run_at)                      │
│     │                                                                         │
│     ├── events = EventQueue.get_unprocessed(triggers)                        │
│     │     for each event × each matching EventDriven rule:                   │
│     │         at most one instance per (rule, event)                         │
│     │     mark_processed(event) once, unless one of its pairs failed         │
│     │                                                                         │
│     └── TickResult{generated, errors, duplicates, capacity_skips, ...}       │
│                                                                               │
│  Timing comes from a SchedulerBackend (start/stop); run_tick can also be     │
│  called directly by any number of independent callers.                       │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from upkeep.core.errors import (
    DuplicateKeyError,
    RuleNotFoundError,
    SchedulingError,
    UpkeepError,
)
from upkeep.core.logging import LogContext, get_logger
from upkeep.core.result import Err, Ok
from upkeep.core.retry import ConstantBackoff, RetryStrategy
from upkeep.core.settings import UpkeepSettings, get_settings

from .guard import DuplicateGuard, GuardOutcome
from .materializer import InstanceMaterializer
from .models import (
    Candidate,
    CreatedFrom,
    Event,
    EventPattern,
    FixedCalendarPattern,
    InstanceStatus,
    RollingPattern,
    RuleCursor,
    RuleStatus,
    ScheduleRule,
    ThresholdSignal,
    UsagePattern,
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
from .recurrence import Window, calculate, next_fixed_occurrence
from .scope import ScopeResolver

logger = get_logger(__name__)


@dataclass
class TickResult:
    """Summary of one generation pass.

    ``errors`` holds one entry per failed rule or failed (date, target)
    pair. Duplicates and capacity skips are expected outcomes and only
    counted.
    """

    generated: int = 0
    errors: list[str] = field(default_factory=list)
    duplicates: int = 0
    capacity_skips: int = 0
    skipped_rules: list[str] = field(default_factory=list)
    instances: list[WorkInstance] = field(default_factory=list)
    cancelled: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "generated": self.generated,
            "errors": list(self.errors),
            "duplicates": self.duplicates,
            "capacity_skips": self.capacity_skips,
            "skipped_rules": list(self.skipped_rules),
            "instance_ids": [instance.id for instance in self.instances],
            "cancelled": self.cancelled,
        }


@dataclass
class EngineStats:
    """Running totals across ticks."""

    tick_count: int = 0
    instances_generated: int = 0
    duplicates: int = 0
    capacity_skips: int = 0
    pairs_failed: int = 0
    rules_failed: int = 0
    last_tick: datetime | None = None
    last_error: str | None = None


@dataclass
class EngineHealth:
    """Health status for the engine and its timing backend."""

    healthy: bool
    backend: BackendHealth | dict | None
    running: bool = False
    last_tick: datetime | None = None
    stats: EngineStats = field(default_factory=EngineStats)

    def to_dict(self) -> dict[str, Any]:
        backend = self.backend.to_dict() if isinstance(self.backend, BackendHealth) else self.backend
        return {
            "healthy": self.healthy,
            "running": self.running,
            "backend": backend,
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
            "stats": {
                "tick_count": self.stats.tick_count,
                "instances_generated": self.stats.instances_generated,
                "duplicates": self.stats.duplicates,
                "capacity_skips": self.stats.capacity_skips,
                "pairs_failed": self.stats.pairs_failed,
                "rules_failed": self.stats.rules_failed,
            },
        }


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _aware(when: datetime) -> datetime:
    return when if when.tzinfo is not None else when.replace(tzinfo=UTC)


def _is_cancelled(cancel: asyncio.Event | None) -> bool:
    return cancel is not None and cancel.is_set()


class SchedulerEngine:
    """Recurring work generation engine.

    Example:
        >>> from upkeep.core.scheduling import SchedulerEngine, ThreadSchedulerBackend
        >>> from upkeep.core.scheduling.memory import (
        ...     InMemoryRuleStore, InMemoryTemplateStore,
        ...     InMemoryTargetDirectory, InMemoryInstanceStore,
        ... )
        >>>
        >>> engine = SchedulerEngine(
        ...     rules=InMemoryRuleStore([rule]),
        ...     templates=InMemoryTemplateStore([template]),
        ...     targets=InMemoryTargetDirectory(assets),
        ...     instances=InMemoryInstanceStore(),
        ...     backend=ThreadSchedulerBackend(),
        ... )
        >>> result = await engine.run_tick()
        >>> result.generated, result.errors
        (3, [])
        >>>
        >>> engine.start()   # tick every settings.tick_interval_seconds
        >>> engine.stop()
    """

    def __init__(
        self,
        rules: RuleStore,
        templates: TemplateStore,
        targets: TargetDirectory,
        instances: InstanceStore,
        events: EventQueue | None = None,
        assignments: AssignmentDirectory | None = None,
        signals: SignalSource | None = None,
        *,
        settings: UpkeepSettings | None = None,
        backend: SchedulerBackend | None = None,
        retry_strategy: RetryStrategy | None = None,
        clock: Callable[[], datetime] = _utcnow,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            rules: Rule store (source of rules, owner of cursors)
            templates: Template store for content snapshots
            targets: Target directory for scope resolution and snapshots
            instances: Instance store
            events: Event queue (EventDriven rules are skipped without one)
            assignments: Assignment directory for FixedUser / RotateTeam
            signals: Usage signal source (UsageBased rules are skipped without one)
            settings: Engine settings (default: process settings)
            backend: Timing backend for start()/stop()
            retry_strategy: Retry policy for instance writes
                (default: constant backoff from settings)
            clock: Source of "now" when a tick is not given one
            id_factory: Instance ID generator
        """
        self.settings = settings or get_settings()
        self.backend = backend
        self._rules = rules
        self._instances = instances
        self._events = events
        self._signals = signals
        self._clock = clock

        self._scope = ScopeResolver(targets)
        self._guard = DuplicateGuard(instances)
        if retry_strategy is None:
            retry_strategy = ConstantBackoff(
                max_retries=self.settings.persistence_max_retries,
                delay=self.settings.persistence_retry_delay,
            )
        materializer_kwargs: dict[str, Any] = {
            "default_assignee": self.settings.default_assignee,
            "retry_strategy": retry_strategy,
        }
        if id_factory is not None:
            materializer_kwargs["id_factory"] = id_factory
        self._materializer = InstanceMaterializer(
            templates, targets, instances, assignments, **materializer_kwargs
        )

        self._stats = EngineStats()
        self._running = False

    # === Lifecycle ===

    def start(self) -> None:
        """Start ticking on the configured backend."""
        if self.backend is None:
            raise SchedulingError("No scheduler backend configured")
        if self._running:
            logger.warning("engine_already_running")
            return

        logger.info(
            "engine_starting",
            backend=self.backend.name,
            interval_seconds=self.settings.tick_interval_seconds,
        )
        self.backend.start(self._tick, self.settings.tick_interval_seconds)
        self._running = True

    def stop(self) -> None:
        """Stop ticking; waits for the current tick to complete."""
        if not self._running or self.backend is None:
            return

        logger.info("engine_stopping")
        self.backend.stop()
        self._running = False
        logger.info("engine_stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _tick(self) -> None:
        """Backend callback."""
        try:
            await self.run_tick()
        except Exception as e:
            self._stats.last_error = str(e)
            logger.exception("tick_failed", error=str(e))

    # === Tick Processing ===

    async def run_tick(
        self,
        now: datetime | None = None,
        *,
        cancel: asyncio.Event | None = None,
    ) -> TickResult:
        """Run one generation pass over all active rules and the event queue.

        Args:
            now: Override of the current time (default: engine clock)
            cancel: Set to stop at the next rule boundary

        Returns:
            TickResult summarizing the pass
        """
        now = _aware(now or self._clock())
        result = TickResult()
        tick_id = uuid.uuid4().hex[:12]

        async with LogContext(tick_id=tick_id):
            rules = list(await self._rules.list_active())
            event_rules = [r for r in rules if isinstance(r.frequency, EventPattern)]
            logger.info("tick_started", now=now.isoformat(), rules=len(rules))

            for rule in rules:
                if isinstance(rule.frequency, EventPattern):
                    continue
                if _is_cancelled(cancel):
                    result.cancelled = True
                    break
                await self._process_rule(rule, now, result)

            if event_rules and not result.cancelled:
                await self._process_events(event_rules, now, result, cancel)

            self._record_tick(now, result)
            logger.info(
                "tick_completed",
                generated=result.generated,
                errors=len(result.errors),
                duplicates=result.duplicates,
                capacity_skips=result.capacity_skips,
                cancelled=result.cancelled,
            )
        return result

    async def run_for_rule(self, rule_id: str, now: datetime | None = None) -> TickResult:
        """Run one generation pass for a single rule.

        Events matched by an event rule stay queued: other rules with the same
        trigger pick them up on the next tick.

        Raises:
            RuleNotFoundError: No rule with this ID
        """
        rule = await self._rules.get(rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)

        now = _aware(now or self._clock())
        result = TickResult()
        async with LogContext(tick_id=uuid.uuid4().hex[:12], rule_id=rule_id):
            if not rule.is_active:
                logger.info("rule_paused_skipped")
                result.skipped_rules.append(rule.id)
            elif isinstance(rule.frequency, EventPattern):
                await self._process_events([rule], now, result, None, consume=False)
            else:
                await self._process_rule(rule, now, result)
            self._record_tick(now, result)
        return result

    async def _process_rule(self, rule: ScheduleRule, now: datetime, result: TickResult) -> None:
        """Process one fixed-calendar, usage-based or rolling rule."""
        try:
            match rule.frequency:
                case FixedCalendarPattern():
                    processed = await self._process_fixed(rule, now, result)
                case UsagePattern():
                    processed = await self._process_usage(rule, now, result)
                case RollingPattern():
                    processed = True
                case _:
                    processed = False
        except Exception as e:
            self._record_rule_error(rule, e, result)
            return

        if processed:
            await self._advance_cursor(rule, now, result)

    async def _process_fixed(self, rule: ScheduleRule, now: datetime, result: TickResult) -> bool:
        window = self._window(rule, now)
        occurrences = calculate(rule, window=window)

        match await self._scope.resolve(rule.scope):
            case Err(error):
                self._record_rule_error(rule, error, result)
                return False
            case Ok(targets):
                pass

        logger.debug(
            "rule_expanded",
            rule_id=rule.id,
            occurrences=len(occurrences),
            targets=len(targets),
        )
        for occurrence in occurrences:
            for index, target_id in enumerate(targets):
                candidate = Candidate(
                    rule_id=rule.id,
                    target_id=target_id,
                    template_id=rule.template_id,
                    scheduled_at=occurrence.scheduled_at,
                    created_from=occurrence.created_from,
                    scope_index=index,
                    bucket=occurrence.bucket,
                )
                await self._process_pair(rule, candidate, now, result)
        return True

    async def _process_usage(self, rule: ScheduleRule, now: datetime, result: TickResult) -> bool:
        if self._signals is None:
            return True

        match await self._scope.resolve(rule.scope):
            case Err(error):
                self._record_rule_error(rule, error, result)
                return False
            case Ok(targets):
                pass

        for signal in await self._signals.drain(rule.id):
            await self._process_signal(rule, signal, targets, now, result)
        return True

    async def _process_signal(
        self,
        rule: ScheduleRule,
        signal: ThresholdSignal,
        targets: Sequence[str],
        now: datetime,
        result: TickResult,
    ) -> WorkInstance | None:
        if signal.target_id not in targets:
            logger.info("signal_out_of_scope", rule_id=rule.id, target_id=signal.target_id)
            return None

        instance = None
        for occurrence in calculate(rule, signal=signal):
            candidate = Candidate(
                rule_id=rule.id,
                target_id=signal.target_id,
                template_id=rule.template_id,
                scheduled_at=occurrence.scheduled_at,
                created_from=occurrence.created_from,
                scope_index=list(targets).index(signal.target_id),
            )
            instance = await self._process_pair(rule, candidate, now, result)
        return instance

    async def _process_events(
        self,
        rules: list[ScheduleRule],
        now: datetime,
        result: TickResult,
        cancel: asyncio.Event | None,
        *,
        consume: bool = True,
    ) -> None:
        """Drain the event queue once and fan each event out to matching rules.

        With ``consume=False`` events are matched but left unprocessed.
        """
        if self._events is None:
            return

        scopes: dict[str, list[str]] = {}
        unresolved: list[ScheduleRule] = []
        for rule in rules:
            match await self._scope.resolve(rule.scope):
                case Ok(targets):
                    scopes[rule.id] = targets
                case Err(error):
                    self._record_rule_error(rule, error, result)
                    unresolved.append(rule)

        triggers = frozenset().union(*(rule.frequency.triggers for rule in rules))
        try:
            events = list(await self._events.get_unprocessed(triggers))
        except Exception as e:
            for rule in rules:
                self._record_rule_error(rule, e, result)
            return

        for event in events:
            if _is_cancelled(cancel):
                result.cancelled = True
                break
            await self._process_event(event, rules, scopes, unresolved, now, result, consume)

        for rule in rules:
            if rule.id in scopes:
                await self._advance_cursor(rule, now, result)

    async def _process_event(
        self,
        event: Event,
        rules: list[ScheduleRule],
        scopes: dict[str, list[str]],
        unresolved: list[ScheduleRule],
        now: datetime,
        result: TickResult,
        consume: bool = True,
    ) -> None:
        # An event whose rule could not be resolved, or whose pair failed,
        # stays unprocessed and is retried on the next tick.
        failed = any(event.type in rule.frequency.triggers for rule in unresolved)

        for rule in rules:
            targets = scopes.get(rule.id)
            if targets is None:
                continue
            for occurrence in calculate(rule, events=[event], in_scope=targets.__contains__):
                candidate = Candidate(
                    rule_id=rule.id,
                    target_id=occurrence.target_id,
                    template_id=rule.template_id,
                    scheduled_at=occurrence.scheduled_at,
                    created_from=CreatedFrom.EVENT,
                    source_event_id=event.id,
                    scope_index=targets.index(occurrence.target_id),
                )
                errors_before = len(result.errors)
                await self._process_pair(rule, candidate, now, result)
                failed = failed or len(result.errors) > errors_before

        if failed:
            logger.warning("event_left_unprocessed", event_id=event.id, event_type=event.type.value)
            return
        if not consume:
            return
        try:
            await self._events.mark_processed(event.id)
        except Exception as e:
            result.errors.append(f"event {event.id}: mark_processed failed: {e}")
            logger.warning("event_mark_failed", event_id=event.id, error=str(e))

    # === Pair Processing ===

    async def _process_pair(
        self,
        rule: ScheduleRule,
        candidate: Candidate,
        now: datetime,
        result: TickResult,
    ) -> WorkInstance | None:
        """Guard and materialize one (date, target) pair.

        A pair that has started runs to completion even when the surrounding
        task is cancelled; the cancellation is re-raised afterwards.
        """
        task = asyncio.ensure_future(self._guard_and_materialize(rule, candidate, now, result))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            await task
            raise

    async def _guard_and_materialize(
        self,
        rule: ScheduleRule,
        candidate: Candidate,
        now: datetime,
        result: TickResult,
    ) -> WorkInstance | None:
        try:
            verdict = await self._guard.check(candidate, rule.constraints, now)
            if verdict.outcome == GuardOutcome.DUPLICATE:
                result.duplicates += 1
                logger.debug(
                    "candidate_duplicate",
                    rule_id=rule.id,
                    target_id=candidate.target_id,
                    recurrence_key=verdict.recurrence_key,
                    reason=verdict.reason,
                )
                return None
            if verdict.outcome == GuardOutcome.CAPACITY_EXCEEDED:
                result.capacity_skips += 1
                logger.debug(
                    "candidate_capacity_exceeded",
                    rule_id=rule.id,
                    target_id=candidate.target_id,
                    reason=verdict.reason,
                )
                return None

            instance = await self._materializer.materialize(rule, candidate, verdict, now)
        except DuplicateKeyError as e:
            result.duplicates += 1
            logger.info("candidate_duplicate_on_insert", rule_id=rule.id, recurrence_key=e.recurrence_key)
            return None
        except Exception as e:
            self._record_pair_error(rule, candidate, e, result)
            return None

        result.generated += 1
        result.instances.append(instance)
        return instance

    # === Triggered Entry Points ===

    async def on_instance_completed(
        self,
        instance: WorkInstance,
        now: datetime | None = None,
    ) -> WorkInstance | None:
        """Create the follow-up of a completed instance for rolling rules.

        Produces at most one instance per call; repeated calls for the same
        completion are caught by the duplicate guard.

        Returns:
            The follow-up instance, or None when nothing was generated
        """
        now = _aware(now or self._clock())
        if instance.completed_at is None:
            if instance.status not in (InstanceStatus.COMPLETED, InstanceStatus.CLOSED):
                logger.debug("instance_not_completed", instance_id=instance.id)
                return None
            instance = replace(instance, completed_at=now)

        rule = await self._rules.get(instance.schedule_rule_id)
        if rule is None or not isinstance(rule.frequency, RollingPattern):
            return None

        occurrences = calculate(rule, completion=instance)
        if not occurrences:
            logger.info("rolling_rule_paused", rule_id=rule.id, instance_id=instance.id)
            return None

        result = TickResult()
        match await self._scope.resolve(rule.scope):
            case Err(error):
                self._record_rule_error(rule, error, result)
                return None
            case Ok(targets):
                pass
        if instance.target_id not in targets:
            logger.info("completion_out_of_scope", rule_id=rule.id, target_id=instance.target_id)
            return None

        occurrence = occurrences[0]
        candidate = Candidate(
            rule_id=rule.id,
            target_id=instance.target_id,
            template_id=rule.template_id,
            scheduled_at=occurrence.scheduled_at,
            created_from=occurrence.created_from,
            scope_index=targets.index(instance.target_id),
            bucket=occurrence.bucket,
        )
        follow_up = await self._process_pair(rule, candidate, now, result)
        self._accumulate(result)
        if follow_up is not None:
            await self._save_cursor(
                rule, RuleCursor(last_run_at=now, next_run_at=follow_up.scheduled_at), result
            )
        return follow_up

    async def on_threshold_crossed(
        self,
        signal: ThresholdSignal,
        now: datetime | None = None,
    ) -> WorkInstance | None:
        """Materialize one instance for a usage threshold crossing.

        Raises:
            RuleNotFoundError: The signal names an unknown rule
        """
        now = _aware(now or self._clock())
        rule = await self._rules.get(signal.rule_id)
        if rule is None:
            raise RuleNotFoundError(signal.rule_id)
        if not isinstance(rule.frequency, UsagePattern) or not rule.is_active:
            return None

        result = TickResult()
        match await self._scope.resolve(rule.scope):
            case Err(error):
                self._record_rule_error(rule, error, result)
                return None
            case Ok(targets):
                pass

        instance = await self._process_signal(rule, signal, targets, now, result)
        self._accumulate(result)
        await self._save_cursor(rule, RuleCursor(last_run_at=now), result)
        return instance

    # === Rule State ===

    async def pause_rule(self, rule_id: str, actor: str = "system") -> ScheduleRule:
        """Pause a rule. The cursor is kept as is."""
        rule = await self._rules.get(rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        if rule.status == RuleStatus.PAUSED:
            return rule

        rule.status = RuleStatus.PAUSED
        rule.updated_by = actor
        saved = await self._rules.save(rule)
        logger.info("rule_paused", rule_id=rule_id, actor=actor)
        return saved

    async def resume_rule(
        self,
        rule_id: str,
        actor: str = "system",
        now: datetime | None = None,
    ) -> ScheduleRule:
        """Resume a paused rule.

        Occurrences that fell due while the rule was paused are not
        generated; the next tick starts from the window at that time.
        """
        rule = await self._rules.get(rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        if rule.status == RuleStatus.ACTIVE:
            return rule

        now = _aware(now or self._clock())
        rule.status = RuleStatus.ACTIVE
        rule.updated_by = actor
        if isinstance(rule.frequency, FixedCalendarPattern):
            rule.cursor = RuleCursor(
                last_run_at=rule.cursor.last_run_at,
                next_run_at=next_fixed_occurrence(rule.frequency, now),
            )
        saved = await self._rules.save(rule)
        logger.info("rule_resumed", rule_id=rule_id, actor=actor)
        return saved

    # === Cursor ===

    def _window(self, rule: ScheduleRule, now: datetime) -> Window:
        ahead = rule.ahead_days if rule.ahead_days is not None else self.settings.ahead_days
        return Window.ahead(now, ahead)

    async def _advance_cursor(self, rule: ScheduleRule, now: datetime, result: TickResult) -> None:
        next_run_at = rule.cursor.next_run_at
        if isinstance(rule.frequency, FixedCalendarPattern):
            next_run_at = next_fixed_occurrence(rule.frequency, self._window(rule, now).end)
        await self._save_cursor(rule, RuleCursor(last_run_at=now, next_run_at=next_run_at), result)

    async def _save_cursor(self, rule: ScheduleRule, cursor: RuleCursor, result: TickResult) -> None:
        try:
            await self._rules.update_cursor(rule.id, cursor)
        except Exception as e:
            self._record_rule_error(rule, e, result)
            return
        rule.cursor = cursor

    # === Error Recording ===

    def _record_rule_error(self, rule: ScheduleRule, error: Exception, result: TickResult) -> None:
        message = error.message if isinstance(error, UpkeepError) else str(error)
        result.errors.append(f"rule {rule.id}: {message}")
        if rule.id not in result.skipped_rules:
            result.skipped_rules.append(rule.id)
        self._stats.rules_failed += 1
        self._stats.last_error = message
        details = error.to_dict() if isinstance(error, UpkeepError) else {"error": message}
        logger.warning("rule_skipped", rule_id=rule.id, **details)

    def _record_pair_error(
        self,
        rule: ScheduleRule,
        candidate: Candidate,
        error: Exception,
        result: TickResult,
    ) -> None:
        message = error.message if isinstance(error, UpkeepError) else str(error)
        when = candidate.scheduled_at.date().isoformat()
        result.errors.append(f"rule {rule.id} target {candidate.target_id} on {when}: {message}")
        self._stats.pairs_failed += 1
        self._stats.last_error = message
        details = error.to_dict() if isinstance(error, UpkeepError) else {"error": message}
        logger.warning(
            "pair_failed",
            rule_id=rule.id,
            target_id=candidate.target_id,
            scheduled_at=candidate.scheduled_at.isoformat(),
            **details,
        )

    # === Health & Stats ===

    def _record_tick(self, now: datetime, result: TickResult) -> None:
        self._stats.tick_count += 1
        self._stats.last_tick = now
        self._accumulate(result)

    def _accumulate(self, result: TickResult) -> None:
        self._stats.instances_generated += result.generated
        self._stats.duplicates += result.duplicates
        self._stats.capacity_skips += result.capacity_skips

    def health(self) -> EngineHealth:
        backend_health = self.backend.health() if self.backend else None
        backend_ok = bool(backend_health and backend_health.get("healthy", False))
        return EngineHealth(
            healthy=self._running and backend_ok,
            backend=backend_health,
            running=self._running,
            last_tick=self._stats.last_tick,
            stats=self._stats,
        )

    def get_stats(self) -> EngineStats:
        return self._stats

    def reset_stats(self) -> None:
        self._stats = EngineStats()
