"""Tests for ScopeResolver and scope matching."""

import pytest

from upkeep.core.errors import ResolutionError, UpkeepError
from upkeep.core.result import Err, Ok
from upkeep.core.scheduling.memory import InMemoryTargetDirectory
from upkeep.core.scheduling.models import (
    AllTargets,
    ByAssetIds,
    ByAssetType,
    BySite,
    ByTags,
    TargetInfo,
)
from upkeep.core.scheduling.scope import ScopeResolver, scope_matches, unique_in_order

TRUCK = TargetInfo("t-1", site_id="south", asset_type="truck", tags=frozenset({"fleet", "diesel"}))
LIFT = TargetInfo("f-1", site_id="north", asset_type="forklift", tags=frozenset({"yard"}))


class FailingDirectory(InMemoryTargetDirectory):
    def __init__(self, error: Exception):
        super().__init__([LIFT])
        self.error = error
        self.calls = 0

    async def resolve(self, scope):
        self.calls += 1
        raise self.error


class TestScopeMatches:
    @pytest.mark.parametrize(
        "scope, expected",
        [
            (AllTargets(), True),
            (ByAssetType("truck"), True),
            (ByAssetType("forklift"), False),
            (BySite("south"), True),
            (BySite("north"), False),
            (ByTags(frozenset({"fleet", "electric"})), True),
            (ByTags(frozenset({"fleet", "electric"}), match_all=True), False),
            (ByTags(frozenset({"fleet", "diesel"}), match_all=True), True),
            (ByAssetIds(("t-1",)), True),
            (ByAssetIds(("x-1",)), False),
        ],
    )
    def test_truck(self, scope, expected):
        assert scope_matches(scope, TRUCK) is expected


def test_unique_in_order():
    assert unique_in_order(["b", "a", "b", "c", "a"]) == ["b", "a", "c"]


class TestScopeResolver:
    """Resolution goes through the directory and reports failures as Err."""

    @pytest.fixture
    def directory(self):
        return InMemoryTargetDirectory([LIFT, TRUCK, TargetInfo("f-2", asset_type="forklift")])

    @pytest.mark.asyncio
    async def test_resolves_in_directory_order(self, directory):
        result = await ScopeResolver(directory).resolve(ByAssetType("forklift"))
        assert result == Ok(["f-1", "f-2"])

    @pytest.mark.asyncio
    async def test_empty_scope_is_ok(self, directory):
        result = await ScopeResolver(directory).resolve(BySite("west"))
        assert result == Ok([])

    @pytest.mark.asyncio
    async def test_explicit_ids_skip_directory_and_dedupe(self):
        directory = FailingDirectory(RuntimeError("should not be called"))
        result = await ScopeResolver(directory).resolve(ByAssetIds(("x", "y", "x")))
        assert result == Ok(["x", "y"])
        assert directory.calls == 0

    @pytest.mark.asyncio
    async def test_directory_failure_is_err(self):
        resolver = ScopeResolver(FailingDirectory(ConnectionError("directory down")))
        match await resolver.resolve(AllTargets()):
            case Err(error):
                assert isinstance(error, ResolutionError)
                assert error.retryable
                assert "directory down" in error.message
            case Ok(_):
                pytest.fail("expected Err")

    @pytest.mark.asyncio
    async def test_resolution_error_passes_through(self):
        original = ResolutionError("site unknown", retryable=False)
        result = await ScopeResolver(FailingDirectory(original)).resolve(BySite("x"))
        assert result.is_err()
        assert result.error is original

    @pytest.mark.asyncio
    async def test_other_upkeep_error_is_wrapped(self):
        result = await ScopeResolver(FailingDirectory(UpkeepError("odd"))).resolve(AllTargets())
        assert isinstance(result.error, ResolutionError)
        assert result.error.cause is not None

    @pytest.mark.asyncio
    async def test_contains(self, directory):
        resolver = ScopeResolver(directory)
        assert await resolver.contains(ByAssetType("truck"), "t-1") == Ok(True)
        assert await resolver.contains(ByAssetType("truck"), "f-1") == Ok(False)
        assert await resolver.contains(ByAssetIds(("z",)), "z") == Ok(True)
