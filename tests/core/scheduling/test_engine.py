"""Tests for SchedulerEngine - the generation run loop.

Covers:
- Fixed-calendar expansion, idempotent re-runs and concurrent ticks
- Guard outcomes (duplicates, capacity) surfacing in TickResult
- Failure isolation per pair and per rule
- Event fan-out, rolling follow-ups and usage signals
- Pause / resume, cancellation, lifecycle and stats
"""

import asyncio
from datetime import time, timedelta

import pytest
from conftest import NOW, World, fixed_rule, utc

from upkeep.core.errors import RuleNotFoundError, SchedulingError
from upkeep.core.scheduling.memory import InMemoryInstanceStore, InMemoryTargetDirectory
from upkeep.core.scheduling.models import (
    AllTargets,
    ByAssetIds,
    ByAssetType,
    BySite,
    Constraints,
    CreatedFrom,
    Event,
    EventPattern,
    EventType,
    InstanceStatus,
    IntervalUnit,
    MeterType,
    RollingPattern,
    RotateTeam,
    RuleStatus,
    ScheduleRule,
    TemplateSnapshot,
    ThresholdSignal,
    UsagePattern,
    Weekday,
    WorkInstance,
)
from upkeep.core.scheduling.protocol import BackendHealth


# =============================================================================
# Test doubles
# =============================================================================


class FailingForTarget(InMemoryInstanceStore):
    """Instance store whose writes fail for one target."""

    def __init__(self, target_id: str):
        super().__init__()
        self.target_id = target_id

    async def create(self, instance):
        if instance.target_id == self.target_id:
            raise ConnectionError("disk full")
        return await super().create(instance)


class SiteOutage(InMemoryTargetDirectory):
    """Directory whose site lookups fail."""

    async def resolve(self, scope):
        if isinstance(scope, BySite):
            raise ConnectionError("site service unavailable")
        return await super().resolve(scope)


class CancelOnCreate(InMemoryInstanceStore):
    def __init__(self, cancel: asyncio.Event):
        super().__init__()
        self.cancel = cancel

    async def create(self, instance):
        self.cancel.set()
        return await super().create(instance)


class GatedInstanceStore(InMemoryInstanceStore):
    """Blocks every write until ``gate`` is set."""

    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()
        self.gate = asyncio.Event()

    async def create(self, instance):
        self.started.set()
        await self.gate.wait()
        return await super().create(instance)


class FakeBackend:
    name = "fake"

    def __init__(self):
        self.started_with = None
        self.stopped = False

    def start(self, tick_callback, interval_seconds=300.0):
        self.started_with = (tick_callback, interval_seconds)

    def stop(self):
        self.stopped = True

    def health(self):
        return BackendHealth(healthy=self.started_with is not None, backend=self.name).to_dict()


def event_rule(rule_id: str, *triggers: EventType, template_id: str = "tpl-1", **kwargs) -> ScheduleRule:
    return ScheduleRule(
        id=rule_id,
        template_id=template_id,
        frequency=EventPattern(frozenset(triggers or {EventType.DEFECT_MARKED_UNSAFE})),
        **kwargs,
    )


def completed_instance(rule_id: str = "r-roll", target_id: str = "a-1", **kwargs) -> WorkInstance:
    values = dict(
        id="wi-done",
        schedule_rule_id=rule_id,
        target_id=target_id,
        template_id="tpl-1",
        template=TemplateSnapshot("tpl-1", "Daily forklift check", "1"),
        scheduled_at=utc(2025, 1, 3),
        due_at=utc(2025, 1, 3),
        recurrence_key="done-key",
        created_at=utc(2025, 1, 1),
        status=InstanceStatus.COMPLETED,
        completed_at=utc(2025, 1, 10, 15),
    )
    values.update(kwargs)
    return WorkInstance(**values)


# =============================================================================
# Fixed calendar
# =============================================================================


class TestFixedCalendarTick:
    """run_tick over fixed-calendar rules."""

    @pytest.mark.asyncio
    async def test_every_day_every_target(self, world, rule_all_targets):
        world.add_rule(rule_all_targets)
        result = await world.engine().run_tick(NOW)

        # Jan 8..Jan 15 x 3 targets
        assert result.generated == 24
        assert result.errors == []
        assert len(world.instances) == 24
        assert {i.target_id for i in world.instances.all()} == {"a-1", "a-2", "a-3"}

    @pytest.mark.asyncio
    async def test_second_tick_is_idempotent(self, world, rule_all_targets):
        world.add_rule(rule_all_targets)
        engine = world.engine()

        first = await engine.run_tick(NOW)
        second = await engine.run_tick(NOW)

        assert first.generated == 24
        assert second.generated == 0
        assert second.duplicates == 24
        assert second.errors == []
        assert len(world.instances) == 24

    @pytest.mark.asyncio
    async def test_later_tick_only_adds_new_days(self, world, rule_all_targets):
        world.add_rule(rule_all_targets)
        engine = world.engine()

        await engine.run_tick(NOW)
        result = await engine.run_tick(NOW + timedelta(days=1))

        assert result.generated == 3
        assert result.duplicates == 21

    @pytest.mark.asyncio
    async def test_concurrent_ticks_create_each_key_once(self, world, rule_all_targets):
        world.add_rule(rule_all_targets)
        engine = world.engine()

        results = await asyncio.gather(engine.run_tick(NOW), engine.run_tick(NOW))

        assert sum(r.generated for r in results) == 24
        assert sum(r.duplicates for r in results) == 24
        assert len(world.instances) == 24
        keys = [i.recurrence_key for i in world.instances.all()]
        assert len(keys) == len(set(keys))

    @pytest.mark.asyncio
    async def test_weekly_rule(self):
        world = World(targets=1)
        world.add_rule(
            fixed_rule(
                unit=IntervalUnit.WEEK,
                start=utc(2025, 1, 6).date(),
                weekdays=frozenset({Weekday.MON, Weekday.THU}),
                ahead_days=14,
            )
        )
        result = await world.engine().run_tick(NOW)

        assert result.generated == 4
        assert sorted(i.scheduled_at.day for i in result.instances) == [9, 13, 16, 20]

    @pytest.mark.asyncio
    async def test_evening_rule_across_dst_start(self):
        # 19:30 in New York is 00:30Z the next day in winter, 23:30Z the same day in summer
        world = World(targets=1)
        world.add_rule(
            fixed_rule(start=utc(2025, 3, 1).date(), time_of_day=time(19, 30), timezone="America/New_York")
        )
        result = await world.engine().run_tick(utc(2025, 3, 8, 12))

        assert result.generated == 8
        assert result.duplicates == 0
        assert sorted(i.scheduled_at for i in result.instances)[:2] == [
            utc(2025, 3, 9, 0, 30), utc(2025, 3, 9, 23, 30),
        ]
        keys = [i.recurrence_key for i in world.instances.all()]
        assert len(set(keys)) == 8

    @pytest.mark.asyncio
    async def test_capacity_limits_open_instances(self, world):
        world.add_rule(fixed_rule(max_open=1))
        result = await world.engine().run_tick(NOW)

        assert result.generated == 3
        assert result.capacity_skips == 21
        assert result.errors == []

    @pytest.mark.asyncio
    async def test_duplicate_window(self, world):
        world.add_rule(fixed_rule(window_hours=24))
        result = await world.engine().run_tick(NOW)

        assert result.generated == 3
        assert result.duplicates == 21

    @pytest.mark.asyncio
    async def test_empty_scope_is_not_an_error(self, world):
        world.add_rule(fixed_rule(scope=ByAssetType("crane")))
        result = await world.engine().run_tick(NOW)

        assert result.generated == 0
        assert result.errors == []
        assert result.skipped_rules == []

    @pytest.mark.asyncio
    async def test_rotate_team_assignment(self, world):
        world.add_rule(fixed_rule(assignment=RotateTeam("yard"), ahead_days=0))
        result = await world.engine().run_tick(NOW)

        assigned = {i.target_id: i.assigned_to for i in result.instances}
        assert assigned == {"a-1": "u-ana", "a-2": "u-ben", "a-3": "u-ana"}

    @pytest.mark.asyncio
    async def test_cursor_advanced(self, world, rule_all_targets):
        world.add_rule(rule_all_targets)
        await world.engine().run_tick(NOW)

        rule = await world.rules.get("r-daily")
        assert rule.cursor.last_run_at == NOW
        assert rule.cursor.next_run_at == utc(2025, 1, 16)

    @pytest.mark.asyncio
    async def test_naive_now_taken_as_utc(self, world):
        world.add_rule(fixed_rule(ahead_days=0))
        result = await world.engine().run_tick(NOW.replace(tzinfo=None))
        assert result.generated == 3
        assert all(i.created_at == NOW for i in result.instances)

    @pytest.mark.asyncio
    async def test_defaults_to_engine_clock(self, world):
        world.add_rule(fixed_rule(ahead_days=0))
        result = await world.engine(clock=lambda: utc(2025, 2, 1, 12)).run_tick()
        assert {i.scheduled_at for i in result.instances} == {utc(2025, 2, 1)}


# =============================================================================
# Failure isolation
# =============================================================================


class TestFailureIsolation:
    @pytest.mark.asyncio
    async def test_one_failed_pair_does_not_stop_the_rest(self):
        world = World(targets=5)
        world.add_rule(fixed_rule(ahead_days=0))
        store = FailingForTarget("a-3")

        result = await world.engine(instances=store).run_tick(NOW)

        assert result.generated == 4
        assert len(result.errors) == 1
        assert "a-3" in result.errors[0]
        assert "2025-01-08" in result.errors[0]
        assert "disk full" in result.errors[0]
        assert sorted(i.target_id for i in store.all()) == ["a-1", "a-2", "a-4", "a-5"]

    @pytest.mark.asyncio
    async def test_failed_pair_retried_next_tick(self):
        world = World(targets=2)
        world.add_rule(fixed_rule(ahead_days=0))
        store = FailingForTarget("a-2")
        engine = world.engine(instances=store)

        await engine.run_tick(NOW)
        store.target_id = None
        result = await engine.run_tick(NOW)

        assert result.generated == 1
        assert result.duplicates == 1
        assert result.errors == []

    @pytest.mark.asyncio
    async def test_missing_template_fails_each_pair(self, world):
        world.add_rule(fixed_rule("r-bad", template_id="tpl-missing", ahead_days=0))
        world.add_rule(fixed_rule("r-good", ahead_days=0))

        result = await world.engine().run_tick(NOW)

        assert result.generated == 3
        assert len(result.errors) == 3
        assert all(e.startswith("rule r-bad target") for e in result.errors)

    @pytest.mark.asyncio
    async def test_scope_failure_skips_only_that_rule(self, world):
        directory = SiteOutage(world.targets._targets.values())
        world.add_rule(fixed_rule("r-site", scope=BySite("north"), ahead_days=0))
        world.add_rule(fixed_rule("r-all", ahead_days=0))

        result = await world.engine(targets=directory).run_tick(NOW)

        assert result.skipped_rules == ["r-site"]
        assert len(result.errors) == 1
        assert result.errors[0].startswith("rule r-site:")
        assert "site service unavailable" in result.errors[0]
        assert result.generated == 3
        assert {i.schedule_rule_id for i in result.instances} == {"r-all"}

        skipped = await world.rules.get("r-site")
        assert skipped.cursor.last_run_at is None

    @pytest.mark.asyncio
    async def test_cursor_write_failure_recorded(self, world):
        world.add_rule(fixed_rule(ahead_days=0))

        async def broken(rule_id, cursor):
            raise ConnectionError("rules db down")

        world.rules.update_cursor = broken
        result = await world.engine().run_tick(NOW)

        assert result.generated == 3
        assert result.errors == ["rule r-1: rules db down"]


# =============================================================================
# Event driven
# =============================================================================


class TestEvents:
    @pytest.mark.asyncio
    async def test_event_fans_out_to_every_matching_rule(self, world):
        world.add_rule(event_rule("r-e1"))
        world.add_rule(event_rule("r-e2"))
        world.events.publish(Event("ev-1", EventType.DEFECT_MARKED_UNSAFE, "a-2", utc(2025, 1, 8, 8, 30)))
        engine = world.engine()

        result = await engine.run_tick(NOW)

        assert result.generated == 2
        assert {i.schedule_rule_id for i in result.instances} == {"r-e1", "r-e2"}
        for instance in result.instances:
            assert instance.target_id == "a-2"
            assert instance.source_event_id == "ev-1"
            assert instance.created_from == CreatedFrom.EVENT
            assert instance.scheduled_at == utc(2025, 1, 8, 8, 30)
        assert world.events.processed_calls["ev-1"] == 1

        again = await engine.run_tick(NOW)
        assert again.generated == 0
        assert world.events.processed_calls["ev-1"] == 1

    @pytest.mark.asyncio
    async def test_trigger_and_scope_filtering(self, world):
        world.add_rule(event_rule("r-e1", scope=ByAssetIds(("a-1",))))
        world.events.publish(Event("ev-1", EventType.DEFECT_MARKED_UNSAFE, "a-3", NOW))
        world.events.publish(Event("ev-2", EventType.PM_OVERDUE, "a-1", NOW))
        world.events.publish(Event("ev-3", EventType.DEFECT_MARKED_UNSAFE, "a-1", NOW))

        result = await world.engine().run_tick(NOW)

        assert result.generated == 1
        assert result.instances[0].source_event_id == "ev-3"
        # ev-2 is not a trigger of any rule and stays queued
        unprocessed = await world.events.get_unprocessed()
        assert [e.id for e in unprocessed] == ["ev-2"]

    @pytest.mark.asyncio
    async def test_failed_pair_leaves_event_unprocessed(self, world):
        world.add_rule(event_rule("r-e1"))
        world.add_rule(event_rule("r-e2", template_id="tpl-2"))
        world.events.publish(Event("ev-1", EventType.DEFECT_MARKED_UNSAFE, "a-1", NOW))
        engine = world.engine()

        first = await engine.run_tick(NOW)
        assert first.generated == 1
        assert len(first.errors) == 1
        assert world.events.processed_calls["ev-1"] == 0

        world.templates.put(TemplateSnapshot("tpl-2", "Unsafe defect follow-up", "1"))
        second = await engine.run_tick(NOW + timedelta(minutes=5))

        assert second.generated == 1
        assert second.duplicates == 1
        assert second.instances[0].schedule_rule_id == "r-e2"
        assert world.events.processed_calls["ev-1"] == 1

    @pytest.mark.asyncio
    async def test_unresolved_scope_leaves_event_unprocessed(self, world):
        directory = SiteOutage(world.targets._targets.values())
        world.add_rule(event_rule("r-e1", scope=BySite("north")))
        world.events.publish(Event("ev-1", EventType.DEFECT_MARKED_UNSAFE, "a-1", NOW))

        result = await world.engine(targets=directory).run_tick(NOW)

        assert result.skipped_rules == ["r-e1"]
        assert world.events.processed_calls["ev-1"] == 0

    @pytest.mark.asyncio
    async def test_no_event_queue(self, world):
        world.add_rule(event_rule("r-e1"))
        result = await world.engine(events=None).run_tick(NOW)
        assert result.generated == 0
        assert result.errors == []


# =============================================================================
# Rolling after completion
# =============================================================================


class TestRolling:
    @pytest.fixture
    def rolling_world(self, world):
        world.add_rule(
            ScheduleRule(id="r-roll", template_id="tpl-1", frequency=RollingPattern(IntervalUnit.DAY, 7))
        )
        return world

    @pytest.mark.asyncio
    async def test_follow_up_created_once(self, rolling_world):
        engine = rolling_world.engine()

        follow_up = await engine.on_instance_completed(completed_instance(), NOW)
        repeat = await engine.on_instance_completed(completed_instance(), NOW)

        assert follow_up is not None
        assert follow_up.scheduled_at == utc(2025, 1, 17, 15)
        assert follow_up.target_id == "a-1"
        assert repeat is None
        assert len(rolling_world.instances) == 1

        rule = await rolling_world.rules.get("r-roll")
        assert rule.cursor.next_run_at == utc(2025, 1, 17, 15)

    @pytest.mark.asyncio
    async def test_completed_status_without_timestamp_uses_now(self, rolling_world):
        instance = completed_instance(completed_at=None)
        follow_up = await rolling_world.engine().on_instance_completed(instance, NOW)
        assert follow_up.scheduled_at == NOW + timedelta(days=7)

    @pytest.mark.asyncio
    async def test_repeated_completion_without_timestamp_creates_one_follow_up(self, rolling_world):
        # no capacity limit: only the recurrence key stops the second call
        rule = await rolling_world.rules.get("r-roll")
        rule.constraints = Constraints(max_open_per_target=0)
        engine = rolling_world.engine()
        instance = completed_instance(completed_at=None)

        first = await engine.on_instance_completed(instance, NOW)
        second = await engine.on_instance_completed(instance, NOW + timedelta(days=1))

        assert first.scheduled_at == NOW + timedelta(days=7)
        assert second is None
        assert len(rolling_world.instances) == 1

    @pytest.mark.asyncio
    async def test_open_instance_ignored(self, rolling_world):
        instance = completed_instance(completed_at=None, status=InstanceStatus.OPEN)
        assert await rolling_world.engine().on_instance_completed(instance, NOW) is None

    @pytest.mark.asyncio
    async def test_non_rolling_rule_ignored(self, rolling_world):
        rolling_world.add_rule(fixed_rule("r-fixed"))
        instance = completed_instance(rule_id="r-fixed")
        assert await rolling_world.engine().on_instance_completed(instance, NOW) is None

    @pytest.mark.asyncio
    async def test_paused_rule_ignored(self, rolling_world):
        engine = rolling_world.engine()
        await engine.pause_rule("r-roll")
        assert await engine.on_instance_completed(completed_instance(), NOW) is None

    @pytest.mark.asyncio
    async def test_target_left_scope(self, rolling_world):
        rule = await rolling_world.rules.get("r-roll")
        rule.scope = ByAssetIds(("a-2",))
        assert await rolling_world.engine().on_instance_completed(completed_instance(), NOW) is None

    @pytest.mark.asyncio
    async def test_tick_does_not_generate_rolling_work(self, rolling_world):
        result = await rolling_world.engine().run_tick(NOW)
        assert result.generated == 0
        assert result.errors == []
        rule = await rolling_world.rules.get("r-roll")
        assert rule.cursor.last_run_at == NOW


# =============================================================================
# Usage based
# =============================================================================


class TestUsage:
    @pytest.fixture
    def usage_world(self, world):
        world.add_rule(
            ScheduleRule(
                id="r-hours",
                template_id="tpl-1",
                frequency=UsagePattern(MeterType.HOURS, 250),
                scope=AllTargets(),
            )
        )
        return world

    def _signal(self, target_id="a-2", delta=250.0, rule_id="r-hours"):
        return ThresholdSignal(rule_id, target_id, MeterType.HOURS, 1500.0, delta, utc(2025, 1, 8, 7))

    @pytest.mark.asyncio
    async def test_tick_drains_signals(self, usage_world):
        usage_world.signals.push(self._signal())
        usage_world.signals.push(self._signal("zz-9"))
        engine = usage_world.engine()

        result = await engine.run_tick(NOW)
        assert result.generated == 1
        assert result.instances[0].target_id == "a-2"
        assert result.instances[0].scheduled_at == utc(2025, 1, 8, 7)

        again = await engine.run_tick(NOW)
        assert again.generated == 0

    @pytest.mark.asyncio
    async def test_signal_below_interval(self, usage_world):
        usage_world.signals.push(self._signal(delta=10.0))
        result = await usage_world.engine().run_tick(NOW)
        assert result.generated == 0

    @pytest.mark.asyncio
    async def test_on_threshold_crossed(self, usage_world):
        engine = usage_world.engine()

        instance = await engine.on_threshold_crossed(self._signal(), NOW)
        repeat = await engine.on_threshold_crossed(self._signal(), NOW)

        assert instance is not None
        assert instance.schedule_rule_id == "r-hours"
        assert repeat is None
        assert engine.get_stats().duplicates == 1

    @pytest.mark.asyncio
    async def test_on_threshold_crossed_unknown_rule(self, usage_world):
        with pytest.raises(RuleNotFoundError):
            await usage_world.engine().on_threshold_crossed(self._signal(rule_id="r-nope"), NOW)


# =============================================================================
# Rule state
# =============================================================================


class TestPauseResume:
    @pytest.mark.asyncio
    async def test_paused_rule_not_processed_and_no_backfill(self, world):
        world.add_rule(fixed_rule(ahead_days=0))
        engine = world.engine()

        await engine.run_tick(NOW)
        paused = await engine.pause_rule("r-1", actor="u-lead")
        assert paused.status == RuleStatus.PAUSED
        cursor_when_paused = paused.cursor

        during = await engine.run_tick(utc(2025, 1, 10, 9))
        assert during.generated == 0
        assert (await world.rules.get("r-1")).cursor == cursor_when_paused

        resumed = await engine.resume_rule("r-1", now=utc(2025, 1, 12, 9))
        assert resumed.status == RuleStatus.ACTIVE
        assert resumed.cursor.next_run_at == utc(2025, 1, 13)

        after = await engine.run_tick(utc(2025, 1, 12, 9))
        assert after.generated == 3
        days = sorted({i.scheduled_at.day for i in world.instances.all()})
        assert days == [8, 12]

    @pytest.mark.asyncio
    async def test_pause_and_resume_are_idempotent(self, world):
        world.add_rule(fixed_rule())
        engine = world.engine()
        await engine.pause_rule("r-1")
        assert (await engine.pause_rule("r-1")).status == RuleStatus.PAUSED
        await engine.resume_rule("r-1")
        assert (await engine.resume_rule("r-1")).status == RuleStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_unknown_rule(self, world):
        with pytest.raises(RuleNotFoundError):
            await world.engine().pause_rule("r-nope")
        with pytest.raises(RuleNotFoundError):
            await world.engine().resume_rule("r-nope")


class TestRunForRule:
    @pytest.mark.asyncio
    async def test_only_named_rule(self, world):
        world.add_rule(fixed_rule("r-1", ahead_days=0))
        world.add_rule(fixed_rule("r-2", ahead_days=0))

        result = await world.engine().run_for_rule("r-2", NOW)

        assert result.generated == 3
        assert {i.schedule_rule_id for i in world.instances.all()} == {"r-2"}

    @pytest.mark.asyncio
    async def test_unknown_rule(self, world):
        with pytest.raises(RuleNotFoundError):
            await world.engine().run_for_rule("r-nope", NOW)

    @pytest.mark.asyncio
    async def test_paused_rule_is_skipped(self, world):
        world.add_rule(fixed_rule(status=RuleStatus.PAUSED))
        result = await world.engine().run_for_rule("r-1", NOW)
        assert result.generated == 0
        assert result.skipped_rules == ["r-1"]

    @pytest.mark.asyncio
    async def test_event_rule(self, world):
        world.add_rule(event_rule("r-e1"))
        world.events.publish(Event("ev-1", EventType.DEFECT_MARKED_UNSAFE, "a-1", NOW))
        result = await world.engine().run_for_rule("r-e1", NOW)
        assert result.generated == 1

    @pytest.mark.asyncio
    async def test_event_rule_leaves_event_for_rules_sharing_the_trigger(self, world):
        world.add_rule(event_rule("r-a", EventType.PM_OVERDUE))
        world.add_rule(event_rule("r-b", EventType.PM_OVERDUE))
        world.events.publish(Event("ev-1", EventType.PM_OVERDUE, "a-1", NOW))
        engine = world.engine()

        single = await engine.run_for_rule("r-a", NOW)
        tick = await engine.run_tick(NOW)

        assert single.generated == 1
        assert tick.generated == 1
        assert tick.duplicates == 1
        assert sorted(i.schedule_rule_id for i in world.instances.all()) == ["r-a", "r-b"]
        assert world.events.processed_calls["ev-1"] == 1


# =============================================================================
# Cancellation
# =============================================================================


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_before_first_rule(self, world, rule_all_targets):
        world.add_rule(rule_all_targets)
        cancel = asyncio.Event()
        cancel.set()

        result = await world.engine().run_tick(NOW, cancel=cancel)

        assert result.cancelled
        assert result.generated == 0
        assert (await world.rules.get("r-daily")).cursor.last_run_at is None

    @pytest.mark.asyncio
    async def test_cancel_stops_at_next_rule_boundary(self):
        world = World(targets=1)
        world.add_rule(fixed_rule("r-1", ahead_days=0))
        world.add_rule(fixed_rule("r-2", ahead_days=0))
        cancel = asyncio.Event()

        result = await world.engine(instances=CancelOnCreate(cancel)).run_tick(NOW, cancel=cancel)

        assert result.cancelled
        assert result.generated == 1
        assert result.instances[0].schedule_rule_id == "r-1"
        assert (await world.rules.get("r-1")).cursor.last_run_at == NOW
        assert (await world.rules.get("r-2")).cursor.last_run_at is None

    @pytest.mark.asyncio
    async def test_in_flight_pair_completes_before_cancellation(self):
        world = World(targets=1)
        world.add_rule(fixed_rule(ahead_days=0))
        store = GatedInstanceStore()
        engine = world.engine(instances=store)

        task = asyncio.create_task(engine.run_tick(NOW))
        await store.started.wait()
        task.cancel()
        store.gate.set()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert len(store) == 1


# =============================================================================
# Lifecycle, health and stats
# =============================================================================


class TestLifecycle:
    def test_start_requires_backend(self, world):
        with pytest.raises(SchedulingError):
            world.engine().start()

    def test_start_and_stop(self, world):
        backend = FakeBackend()
        engine = world.engine(backend=backend)

        engine.start()
        engine.start()  # ignored

        assert engine.is_running
        assert backend.started_with[1] == world.settings.tick_interval_seconds
        assert engine.health().healthy

        engine.stop()
        assert backend.stopped
        assert not engine.is_running

    def test_health_without_backend(self, world):
        health = world.engine().health()
        assert not health.healthy
        assert health.to_dict()["backend"] is None

    @pytest.mark.asyncio
    async def test_backend_callback_never_raises(self, world):
        async def broken():
            raise ConnectionError("rules db down")

        world.rules.list_active = broken
        engine = world.engine()

        await engine._tick()
        assert engine.get_stats().last_error == "rules db down"

    @pytest.mark.asyncio
    async def test_stats_accumulate(self, world, rule_all_targets):
        world.add_rule(rule_all_targets)
        engine = world.engine()

        await engine.run_tick(NOW)
        await engine.run_tick(NOW)

        stats = engine.get_stats()
        assert stats.tick_count == 2
        assert stats.instances_generated == 24
        assert stats.duplicates == 24
        assert stats.last_tick == NOW

        engine.reset_stats()
        assert engine.get_stats().tick_count == 0

    @pytest.mark.asyncio
    async def test_tick_result_to_dict(self, world):
        world.add_rule(fixed_rule(ahead_days=0))
        result = await world.engine().run_tick(NOW)

        d = result.to_dict()
        assert d["generated"] == 3
        assert d["instance_ids"] == ["wi-1", "wi-2", "wi-3"]
        assert d["cancelled"] is False

