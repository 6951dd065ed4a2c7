"""Scope resolver - expands a rule's scope descriptor into target IDs.

Resolution always goes to the directory; membership is never cached on the
rule. A failed lookup comes back as ``Err(ResolutionError)`` so the run loop
can tell "no targets" apart from "lookup failed".

Example:
    >>> resolver = ScopeResolver(directory)
    >>> match await resolver.resolve(ByAssetType("forklift")):
    ...     case Ok(targets):
    ...         print(targets)
    ...     case Err(error):
    ...         print(f"skipping rule: {error}")
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from upkeep.core.errors import ResolutionError, UpkeepError
from upkeep.core.result import Err, Ok, Result

from .models import (
    AllTargets,
    ByAssetIds,
    ByAssetType,
    BySite,
    ByTags,
    ScopeDescriptor,
    TargetInfo,
)
from .protocol import TargetDirectory

logger = logging.getLogger(__name__)


def unique_in_order(target_ids: Iterable[str]) -> list[str]:
    """Drop repeated IDs, keeping first-seen order."""
    return list(dict.fromkeys(target_ids))


def scope_matches(scope: ScopeDescriptor, target: TargetInfo) -> bool:
    """Whether a target's attributes satisfy a scope descriptor."""
    match scope:
        case AllTargets():
            return True
        case ByAssetType(asset_type=asset_type):
            return target.asset_type == asset_type
        case ByTags(tags=tags, match_all=True):
            return tags <= target.tags
        case ByTags(tags=tags):
            return bool(tags & target.tags)
        case ByAssetIds(asset_ids=asset_ids):
            return target.target_id in asset_ids
        case BySite(site_id=site_id):
            return target.site_id == site_id
    return False


class ScopeResolver:
    """Snapshot resolution of scope descriptors against a target directory."""

    def __init__(self, directory: TargetDirectory):
        self._directory = directory

    async def resolve(self, scope: ScopeDescriptor) -> Result[list[str]]:
        """Resolve a scope to a de-duplicated, stably ordered list of target IDs.

        Explicit ID lists are returned as given (minus repeats) without a
        directory round-trip.
        """
        if isinstance(scope, ByAssetIds):
            return Ok(unique_in_order(scope.asset_ids))

        try:
            target_ids = await self._directory.resolve(scope)
        except UpkeepError as e:
            if isinstance(e, ResolutionError):
                return Err(e)
            return Err(ResolutionError(f"Scope lookup failed: {e.message}", cause=e))
        except Exception as e:
            logger.warning(f"Scope lookup failed for {scope!r}: {e}")
            return Err(ResolutionError(f"Scope lookup failed: {e}", cause=e))

        return Ok(unique_in_order(target_ids))

    async def contains(self, scope: ScopeDescriptor, target_id: str) -> Result[bool]:
        """Whether ``target_id`` is currently inside ``scope``."""
        if isinstance(scope, ByAssetIds):
            return Ok(target_id in scope.asset_ids)
        return (await self.resolve(scope)).map(lambda targets: target_id in targets)
