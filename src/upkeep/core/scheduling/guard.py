"""Duplicate guard - idempotency and capacity check for candidates.

┌──────────────────────────────────────────────────────────────────────────────┐
│  DUPLICATE GUARD                                                              │
│                                                                               │
│  Checks run in a fixed order; the first hit wins:                            │
│                                                                               │
│   1. recurrence key already stored        ──► DUPLICATE                      │
│   2. open instances >= max_open_per_target ──► CAPACITY_EXCEEDED             │
│   3. same (rule, target, template) created                                    │
│      within duplicate_window_hours         ──► DUPLICATE                      │
│   4. otherwise                             ──► UNIQUE                         │
│                                                                               │
│  An exact repeat is always DUPLICATE, even when the target is also at        │
│  capacity. A zero limit disables checks 2 and 3 respectively.                │
│                                                                               │
│  The guard detects repeats; it does not lock. Two concurrent ticks may       │
│  both see UNIQUE for the same key; the store's unique key rejects the        │
│  second insert and the run loop counts it as a duplicate.                    │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from upkeep.core.hashing import compute_hash, compute_recurrence_key

from .models import OPEN_STATUSES, Candidate, Constraints
from .protocol import InstanceStore

logger = logging.getLogger(__name__)


class GuardOutcome(str, Enum):
    UNIQUE = "unique"
    DUPLICATE = "duplicate"
    CAPACITY_EXCEEDED = "capacity_exceeded"


@dataclass(frozen=True)
class GuardVerdict:
    """Outcome of a guard check, with the key it was computed for."""

    outcome: GuardOutcome
    recurrence_key: str
    reason: str = ""

    @property
    def accepted(self) -> bool:
        return self.outcome == GuardOutcome.UNIQUE


def candidate_key(candidate: Candidate) -> str:
    if candidate.bucket is not None:
        return compute_hash(
            candidate.rule_id, candidate.target_id, candidate.template_id, candidate.bucket
        )
    return compute_recurrence_key(
        candidate.rule_id,
        candidate.target_id,
        candidate.template_id,
        candidate.scheduled_at,
    )


class DuplicateGuard:
    """Classifies candidates as unique, duplicate or over capacity.

    Store failures propagate to the caller; the run loop records them
    against the single pair being checked.
    """

    def __init__(self, store: InstanceStore):
        self._store = store

    async def check(
        self,
        candidate: Candidate,
        constraints: Constraints,
        now: datetime,
    ) -> GuardVerdict:
        key = candidate_key(candidate)

        if await self._store.get_by_key(key) is not None:
            return GuardVerdict(GuardOutcome.DUPLICATE, key, "recurrence key exists")

        if constraints.max_open_per_target > 0:
            open_instances = await self._store.query(
                rule_id=candidate.rule_id,
                target_id=candidate.target_id,
                template_id=candidate.template_id,
                statuses=OPEN_STATUSES,
            )
            if len(open_instances) >= constraints.max_open_per_target:
                return GuardVerdict(
                    GuardOutcome.CAPACITY_EXCEEDED,
                    key,
                    f"{len(open_instances)} open >= limit {constraints.max_open_per_target}",
                )

        if constraints.duplicate_window_hours > 0:
            recent = await self._store.query(
                rule_id=candidate.rule_id,
                target_id=candidate.target_id,
                template_id=candidate.template_id,
                created_after=now - timedelta(hours=constraints.duplicate_window_hours),
            )
            if recent:
                return GuardVerdict(
                    GuardOutcome.DUPLICATE,
                    key,
                    f"created within {constraints.duplicate_window_hours:g}h",
                )

        logger.debug(f"Candidate {key} accepted for target {candidate.target_id}")
        return GuardVerdict(GuardOutcome.UNIQUE, key)
