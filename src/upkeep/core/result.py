"""
Ok / Err results for lookups whose failure is an expected outcome.

A scope lookup that fails must not look like a scope that matched nothing:
one means "retry next tick", the other means "nothing to generate". The
resolver returns ``Ok(targets)`` or ``Err(error)`` and the run loop
handles both branches with ``match``::

    match await resolver.resolve(rule.scope):
        case Err(error):
            skip_rule(rule, error)
        case Ok(targets):
            generate(rule, targets)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

from upkeep.core.errors import UpkeepError

T = TypeVar("T")
U = TypeVar("U")


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def unwrap_or(self, default: T) -> T:
        return self.value

    def map(self, f: Callable[[T], U]) -> Result[U]:
        return Ok(f(self.value))

    def to_dict(self) -> dict[str, Any]:
        return {"ok": True, "value": self.value}


@dataclass(frozen=True, slots=True)
class Err(Generic[T]):
    """A failed lookup. ``unwrap()`` re-raises the carried error."""

    error: Exception

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> T:
        raise self.error

    def unwrap_or(self, default: T) -> T:
        return default

    def map(self, f: Callable[[T], U]) -> Result[U]:
        return Err(self.error)

    def to_dict(self) -> dict[str, Any]:
        # UpkeepError already knows its own wire shape
        if isinstance(self.error, UpkeepError):
            error = self.error.to_dict()
        else:
            error = {"error_type": type(self.error).__name__, "message": str(self.error)}
        return {"ok": False, "error": error}


Result = Ok[T] | Err[T]
