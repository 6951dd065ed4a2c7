"""
Typed errors for rule validation and work generation.

Failures in a tick are scoped to one rule (scope lookup, cursor write) or
one (date, target) pair (template lookup, instance write). Each error says
which stage it came from (``category``), whether trying again later can
help (``retryable``), and which ids it concerns (``context``), so the run
loop can record it in the tick summary and carry on.

Hierarchy::

    UpkeepError                      INTERNAL
    ├── ValidationError              VALIDATION   rule rejected at save time
    ├── ConfigError                  CONFIG
    ├── ResolutionError              RESOLUTION   retryable
    ├── PersistenceError             PERSISTENCE  retryable
    │   └── DuplicateKeyError                     never retried
    └── SchedulingError              SCHEDULING
        ├── RuleNotFoundError
        └── CandidateRejectedError

Duplicate and capacity skips are guard outcomes, not errors; they are
counted, never raised.

Example:
    >>> err = ResolutionError("directory unavailable").with_context(rule_id="r-1")
    >>> err.retryable, err.context.rule_id
    (True, 'r-1')
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    VALIDATION = "VALIDATION"
    RESOLUTION = "RESOLUTION"
    PERSISTENCE = "PERSISTENCE"
    SCHEDULING = "SCHEDULING"
    CONFIG = "CONFIG"
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """Ids an error concerns. Unknown keys land in ``metadata``."""

    rule_id: str | None = None
    target_id: str | None = None
    template_id: str | None = None
    recurrence_key: str | None = None
    event_id: str | None = None
    tick_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        ids = {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name != "metadata" and getattr(self, f.name) is not None
        }
        return {**ids, **self.metadata}


class UpkeepError(Exception):
    """
    Base class for every error raised by upkeep.

    Subclasses pick their stage through ``default_category`` and
    ``default_retryable``; both can be overridden per instance. Passing
    ``cause=`` chains the underlying exception (``__cause__``) so tracebacks
    show the store or directory failure that triggered it.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: int | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = self.default_retryable if retryable is None else retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **ids: Any) -> UpkeepError:
        """Attach ids and return self, for ``raise err.with_context(...)``."""
        known = {f.name for f in fields(ErrorContext)} - {"metadata"}
        for key, value in ids.items():
            if key in known:
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "error_type": type(self).__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            data["retry_after"] = self.retry_after
        if context := self.context.to_dict():
            data["context"] = context
        if self.cause is not None:
            data["cause"] = str(self.cause)
        return data

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, category={self.category.value})"


class ValidationError(UpkeepError):
    """
    A rule definition was rejected at save time.

    ``errors`` holds one ``{"loc", "msg", "type"}`` entry per problem found,
    so a caller can show everything wrong with a rule at once.
    """

    default_category = ErrorCategory.VALIDATION

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        value: Any = None,
        errors: list[dict[str, Any]] | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.field = field
        self.value = value
        self.errors = errors or []

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.field:
            data["field"] = self.field
        if self.value is not None:
            data["value"] = repr(self.value)
        if self.errors:
            data["errors"] = self.errors
        return data


class ConfigError(UpkeepError):
    default_category = ErrorCategory.CONFIG


class ResolutionError(UpkeepError):
    """Scope, template, target or assignee lookup failed."""

    default_category = ErrorCategory.RESOLUTION
    default_retryable = True


class PersistenceError(UpkeepError):
    """Instance store or rule store write failed."""

    default_category = ErrorCategory.PERSISTENCE
    default_retryable = True


class DuplicateKeyError(PersistenceError):
    """The instance store already holds this recurrence key."""

    default_retryable = False

    def __init__(self, recurrence_key: str, message: str | None = None):
        self.recurrence_key = recurrence_key
        super().__init__(
            message or f"Duplicate recurrence key: {recurrence_key}",
            context=ErrorContext(recurrence_key=recurrence_key),
        )


class SchedulingError(UpkeepError):
    default_category = ErrorCategory.SCHEDULING


class RuleNotFoundError(SchedulingError):
    def __init__(self, rule_id: str):
        self.rule_id = rule_id
        super().__init__(
            f"Schedule rule not found: {rule_id}", context=ErrorContext(rule_id=rule_id)
        )


class CandidateRejectedError(SchedulingError):
    """The materializer was handed a candidate the guard did not accept."""


def is_retryable(error: Exception) -> bool:
    """Only upkeep errors can declare themselves retryable."""
    return isinstance(error, UpkeepError) and error.retryable
