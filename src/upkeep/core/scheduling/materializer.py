"""Instance materializer - turns an accepted candidate into a persisted WorkInstance.

Manifesto:
    A work instance must stand on its own once created. The template and
    target are copied into it at creation time, so later template edits or
    asset moves never rewrite work that has already been scheduled.

    - **Snapshot, not reference:** template content is deep-copied
    - **Deterministic assignment:** FixedUser > RotateTeam > Unassigned
    - **Cursor-free:** the materializer never touches the rule's cursor

Architecture:
    ::

        Candidate + GuardVerdict(UNIQUE)
              │
              ▼
        ┌───────────────────────────────────────────────┐
        │ InstanceMaterializer.materialize()            │
        │   1. template snapshot   (TemplateStore.get)  │
        │   2. target snapshot     (TargetDirectory.get)│
        │   3. assignee            (AssignmentDirectory)│
        │   4. due / overdue dates (DueRules)           │
        │   5. InstanceStore.create, via RetryContext   │
        └───────────────────────────────────────────────┘
              │
              ▼
        WorkInstance(status=DRAFT)

Guardrails:
    ❌ DON'T: Materialize a candidate the guard did not accept
    ✅ DO: Pass the verdict in; anything but UNIQUE raises

    ❌ DON'T: Wrap DuplicateKeyError as a generic PersistenceError
    ✅ DO: Let it through so the run loop can count it as a duplicate

Tags:
    upkeep, scheduling, materializer, snapshot, assignment

Doc-Types:
    api-reference
"""

from __future__ import annotations

import copy
import uuid
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta

from upkeep.core.errors import (
    CandidateRejectedError,
    DuplicateKeyError,
    PersistenceError,
    ResolutionError,
    UpkeepError,
)
from upkeep.core.logging import get_logger
from upkeep.core.retry import NoRetry, RetryContext, RetryStrategy

from .guard import GuardVerdict
from .models import (
    AssignmentPolicy,
    Candidate,
    FixedUser,
    HistoryEntry,
    InstanceStatus,
    RotateTeam,
    ScheduleRule,
    TargetInfo,
    TemplateSnapshot,
    Unassigned,
    WorkInstance,
)
from .protocol import AssignmentDirectory, InstanceStore, TargetDirectory, TemplateStore

logger = get_logger(__name__)


def _new_instance_id() -> str:
    return f"wi-{uuid.uuid4().hex[:12]}"


class InstanceMaterializer:
    """Creates Draft work instances from guard-accepted candidates.

    Args:
        templates: Template store used for the content snapshot
        targets: Target directory used for the target snapshot
        instances: Instance store the new instance is written to
        assignments: Assignment directory (optional; without it FixedUser
            IDs are taken as-is and RotateTeam falls back to the default)
        default_assignee: Assignee for Unassigned rules and failed lookups
        retry_strategy: Retry policy for ``InstanceStore.create``
        id_factory: Instance ID generator
    """

    def __init__(
        self,
        templates: TemplateStore,
        targets: TargetDirectory,
        instances: InstanceStore,
        assignments: AssignmentDirectory | None = None,
        *,
        default_assignee: str | None = None,
        retry_strategy: RetryStrategy | None = None,
        id_factory: Callable[[], str] = _new_instance_id,
    ):
        self._templates = templates
        self._targets = targets
        self._instances = instances
        self._assignments = assignments
        self._default_assignee = default_assignee
        self._retry_strategy = retry_strategy or NoRetry()
        self._id_factory = id_factory

    async def materialize(
        self,
        rule: ScheduleRule,
        candidate: Candidate,
        verdict: GuardVerdict,
        now: datetime,
    ) -> WorkInstance:
        """Build and persist one WorkInstance.

        Raises:
            CandidateRejectedError: verdict is not UNIQUE
            ResolutionError: template or target lookup failed
            DuplicateKeyError: the store already holds the recurrence key
            PersistenceError: the write failed after retries
        """
        if not verdict.accepted:
            raise CandidateRejectedError(
                f"Candidate was {verdict.outcome.value}, not unique"
            ).with_context(rule_id=rule.id, target_id=candidate.target_id,
                           recurrence_key=verdict.recurrence_key)

        template = await self._template_snapshot(rule.template_id)
        target = await self._target_snapshot(candidate.target_id)
        assigned_to = await self._resolve_assignee(rule.assignment, candidate.scope_index)

        due_at = candidate.scheduled_at + timedelta(days=rule.due_rules.due_offset_days)
        overdue_at = None
        if rule.due_rules.overdue_after_days > 0:
            overdue_at = due_at + timedelta(days=rule.due_rules.overdue_after_days)

        instance = WorkInstance(
            id=self._id_factory(),
            schedule_rule_id=rule.id,
            target_id=candidate.target_id,
            template_id=rule.template_id,
            template=template,
            scheduled_at=candidate.scheduled_at,
            due_at=due_at,
            recurrence_key=verdict.recurrence_key,
            created_at=now,
            status=InstanceStatus.DRAFT,
            created_from=candidate.created_from,
            assigned_to=assigned_to,
            target=target,
            overdue_at=overdue_at,
            source_event_id=candidate.source_event_id,
            history=[
                HistoryEntry(
                    at=now,
                    action="created",
                    actor="scheduler",
                    note=f"Generated from rule {rule.id} ({candidate.created_from.value})",
                )
            ],
        )

        created = await self._persist(instance)
        logger.info(
            "instance_created",
            instance_id=created.id,
            rule_id=rule.id,
            target_id=created.target_id,
            recurrence_key=created.recurrence_key,
            scheduled_at=created.scheduled_at.isoformat(),
            assigned_to=created.assigned_to,
        )
        return created

    # ── Snapshots ────────────────────────────────────────────────

    async def _template_snapshot(self, template_id: str) -> TemplateSnapshot:
        try:
            template = await self._templates.get(template_id)
        except Exception as e:
            raise ResolutionError(f"Template lookup failed: {e}", cause=e).with_context(
                template_id=template_id
            )
        if template is None:
            raise ResolutionError(
                f"Template not found: {template_id}", retryable=False
            ).with_context(template_id=template_id)
        return replace(template, content=copy.deepcopy(template.content))

    async def _target_snapshot(self, target_id: str) -> TargetInfo:
        try:
            target = await self._targets.get(target_id)
        except Exception as e:
            raise ResolutionError(f"Target lookup failed: {e}", cause=e).with_context(
                target_id=target_id
            )
        if target is None:
            raise ResolutionError(
                f"Target not found: {target_id}", retryable=False
            ).with_context(target_id=target_id)
        return target

    # ── Assignment ───────────────────────────────────────────────

    async def _resolve_assignee(self, policy: AssignmentPolicy, scope_index: int) -> str | None:
        match policy:
            case FixedUser(user_id=user_id):
                if self._assignments is None:
                    return user_id
                resolved = await self._assignments.resolve_user(user_id)
                if resolved is None:
                    logger.warning("assignee_not_found", user_id=user_id)
                    return self._default_assignee
                return resolved
            case RotateTeam(team_id=team_id):
                if self._assignments is None:
                    return self._default_assignee
                members = list(await self._assignments.resolve_team_members(team_id))
                if not members:
                    logger.warning("team_has_no_members", team_id=team_id)
                    return self._default_assignee
                return members[scope_index % len(members)]
            case Unassigned():
                return self._default_assignee
        return self._default_assignee

    # ── Persistence ──────────────────────────────────────────────

    async def _persist(self, instance: WorkInstance) -> WorkInstance:
        def on_retry(attempt: int, error: Exception, delay: float) -> None:
            logger.warning(
                "instance_create_retry",
                attempt=attempt,
                delay=delay,
                error=str(error),
                recurrence_key=instance.recurrence_key,
            )

        ctx = RetryContext(self._retry_strategy, on_retry=on_retry)
        try:
            return await ctx.run_async(self._instances.create, instance)
        except DuplicateKeyError:
            raise
        except PersistenceError as e:
            raise e.with_context(
                rule_id=instance.schedule_rule_id,
                target_id=instance.target_id,
                recurrence_key=instance.recurrence_key,
                attempts=ctx.attempts,
            )
        except Exception as e:
            message = e.message if isinstance(e, UpkeepError) else str(e)
            raise PersistenceError(
                f"Instance create failed after {ctx.attempts} attempt(s): {message}",
                cause=e,
            ).with_context(
                rule_id=instance.schedule_rule_id,
                target_id=instance.target_id,
                recurrence_key=instance.recurrence_key,
            )
