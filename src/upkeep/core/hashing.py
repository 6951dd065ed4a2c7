"""
Deterministic hashing utilities for occurrence deduplication.

Provides stable, reproducible hash functions used to derive recurrence keys.
The same logical occurrence (rule, target, template, day) must always map to
the same key, whichever caller or tick produced it, so that the instance
store can detect a repeat without any locking.

Manifesto:
    - **Natural key hash:** Identify an occurrence by its business key
    - **Deterministic:** Same inputs always produce same hash
    - **Bucketed:** Occurrences are identified by calendar day, not instant

Architecture:
    ::

        ┌────────────────────────────────────────────────────────────┐
        │ key = compute_recurrence_key(rule, target, template, when) │
        │                                                            │
        │ when ──► date_bucket(when) ──► "2025-03-10" (UTC day)      │
        │                                                            │
        │ Same (rule, target, template, day) → Same key              │
        │ 06:00 and 18:00 on the same UTC day → Same key             │
        └────────────────────────────────────────────────────────────┘

Examples:
    >>> h1 = compute_hash("r-1", "asset-7", "tpl-3", "2025-03-10")
    >>> h2 = compute_hash("r-1", "asset-7", "tpl-3", "2025-03-10")
    >>> h1 == h2
    True

Tags:
    hashing, deduplication, idempotency, recurrence-key, upkeep
"""

import hashlib
from datetime import UTC, date, datetime
from typing import Any


def compute_hash(*values: Any, length: int = 32) -> str:
    """
    Compute deterministic hash from values.

    Concatenates string representations of all values with a '|' delimiter,
    then computes SHA-256.

    Args:
        *values: Values to hash (converted to strings)
        length: Hex digest length (default 32 = 128 bits)

    Returns:
        Hex string of specified length
    """
    content = "|".join(str(v) for v in values)
    return hashlib.sha256(content.encode()).hexdigest()[:length]


def date_bucket(when: datetime | date) -> str:
    """
    Normalize an occurrence time to its ISO calendar day.

    Aware datetimes are converted to UTC first; naive datetimes are taken
    to already be UTC. Plain dates are used as-is.

    Fixed-calendar occurrences are keyed on their local date instead (pass
    the ``date``); a UTC day can hold two local evenings across a DST change.
    """
    if isinstance(when, datetime):
        if when.tzinfo is not None:
            when = when.astimezone(UTC)
        return when.date().isoformat()
    return when.isoformat()


def compute_recurrence_key(
    rule_id: str,
    target_id: str,
    template_id: str,
    when: datetime | date,
) -> str:
    """
    Compute the recurrence key of one logical occurrence.

    Examples:
        >>> k1 = compute_recurrence_key("r-1", "a-1", "t-1", datetime(2025, 3, 10, 6, tzinfo=UTC))
        >>> k2 = compute_recurrence_key("r-1", "a-1", "t-1", datetime(2025, 3, 10, 18, tzinfo=UTC))
        >>> k1 == k2
        True

    Args:
        rule_id: Schedule rule identifier
        target_id: Target (asset) identifier
        template_id: Template identifier
        when: Scheduled datetime or date of the occurrence

    Returns:
        32-char hex hash
    """
    return compute_hash(rule_id, target_id, template_id, date_bucket(when))
