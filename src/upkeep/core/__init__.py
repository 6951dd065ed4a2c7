"""
Upkeep core primitives.

- errors: Typed error hierarchy with retry semantics
- result: Ok / Err result envelope
- hashing: Recurrence keys
- logging: structlog configuration and bound context
- settings: Environment-driven engine settings
- retry: Retry strategies for store writes
- scheduling: The generation engine
"""

from upkeep.core.errors import (
    ConfigError,
    DuplicateKeyError,
    ErrorCategory,
    ErrorContext,
    PersistenceError,
    ResolutionError,
    RuleNotFoundError,
    SchedulingError,
    UpkeepError,
    ValidationError,
    is_retryable,
)
from upkeep.core.hashing import compute_hash, compute_recurrence_key, date_bucket
from upkeep.core.result import Err, Ok, Result

__all__ = [
    "ConfigError",
    "DuplicateKeyError",
    "ErrorCategory",
    "ErrorContext",
    "PersistenceError",
    "ResolutionError",
    "RuleNotFoundError",
    "SchedulingError",
    "UpkeepError",
    "ValidationError",
    "is_retryable",
    "compute_hash",
    "compute_recurrence_key",
    "date_bucket",
    "Err",
    "Ok",
    "Result",
]
