"""Tests for scenario resolution."""

import random
from datetime import datetime, timezone

import pytest

from src.branch_engine import (
    AddDelta,
    CycleDetected,
    DeltaRecord,
    DepthExceeded,
    EntityType,
    RemoveDelta,
    ResolutionCache,
    Scenario,
    UnknownScenario,
    ancestor_path,
    resolve,
)
from src.branch_engine.resolution import fold_deltas


def _chain(store, depth):
    """base -> s1 -> ... -> s{depth-1}"""
    store.add_scenario(Scenario(id="s0", name="S0", scenario_type="baseline"))
    for i in range(1, depth):
        store.add_scenario(Scenario(id=f"s{i}", name=f"S{i}", parent_scenario_id=f"s{i - 1}"))


class TestAncestorPath:
    """Tests for the ancestor walk."""

    def test_baseline_path(self, base_and_child):
        """A baseline's path is just itself."""
        assert ancestor_path(base_and_child, "base") == ["base"]

    def test_root_to_target_order(self, store):
        """Paths run from the root baseline down to the target."""
        _chain(store, 4)
        assert ancestor_path(store, "s3") == ["s0", "s1", "s2", "s3"]

    def test_unknown_scenario(self, store):
        """Resolving a missing scenario raises UnknownScenario."""
        with pytest.raises(UnknownScenario):
            ancestor_path(store, "ghost")

    def test_cycle_detected(self, store):
        """Corrupted parent links are reported, not looped over."""
        store.scenarios["a"] = Scenario(id="a", name="A", parent_scenario_id="b")
        store.scenarios["b"] = Scenario(id="b", name="B", parent_scenario_id="a")

        with pytest.raises(CycleDetected) as exc_info:
            ancestor_path(store, "a")
        assert exc_info.value.scenario_id == "a"
        assert exc_info.value.category == "structural"

    def test_depth_bound(self, store):
        """Chains longer than max_depth are rejected."""
        _chain(store, 6)
        assert len(ancestor_path(store, "s5", max_depth=6)) == 6
        with pytest.raises(DepthExceeded):
            ancestor_path(store, "s5", max_depth=5)

    def test_deep_chain_no_recursion_limit(self, store):
        """Depth is bounded by configuration, not the Python stack."""
        _chain(store, 1500)
        assert len(ancestor_path(store, "s1499", max_depth=2000)) == 1500


class TestFoldDeltas:
    """Tests for folding delta sets."""

    def _record(self, scenario_id, entity_id, change):
        return DeltaRecord(
            scenario_id=scenario_id,
            entity_type=EntityType.ASSIGNMENT,
            entity_id=entity_id,
            change=change,
            updated_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
        )

    def test_tombstone_hides_ancestor(self):
        """A REMOVE hides what an ancestor added."""
        state = fold_deltas([
            ("base", [self._record("base", "x", AddDelta(payload={"v": 1}))]),
            ("child", [self._record("child", "x", RemoveDelta())]),
        ])
        assert state == {}

    def test_later_scenario_wins(self):
        """The scenario closest to the target supplies the value."""
        state = fold_deltas([
            ("base", [self._record("base", "x", AddDelta(payload={"v": 1}))]),
            ("child", [self._record("child", "x", AddDelta(payload={"v": 2}))]),
        ])
        entity = state[(EntityType.ASSIGNMENT, "x")]
        assert entity.fields == {"v": 2}
        assert entity.provenance == "child"

    def test_readd_after_ancestor_tombstone(self):
        """A grandchild can bring back an entity its parent removed."""
        state = fold_deltas([
            ("base", [self._record("base", "x", AddDelta(payload={"v": 1}))]),
            ("mid", [self._record("mid", "x", RemoveDelta())]),
            ("leaf", [self._record("leaf", "x", AddDelta(payload={"v": 3}))]),
        ])
        assert state[(EntityType.ASSIGNMENT, "x")].fields == {"v": 3}

    def test_independent_of_record_order(self):
        """Shuffling each scenario's records does not change the result."""
        base = [self._record("base", f"e{i}", AddDelta(payload={"v": i})) for i in range(30)]
        child = [self._record("child", f"e{i}", RemoveDelta()) for i in range(0, 30, 3)]
        expected = fold_deltas([("base", base), ("child", child)])

        rng = random.Random(7)
        for _ in range(10):
            rng.shuffle(base)
            rng.shuffle(child)
            assert fold_deltas([("base", base), ("child", child)]) == expected


class TestResolve:
    """Tests for resolve()."""

    def test_baseline_is_own_fold(self, base_and_child, assignment, project):
        """A baseline resolves to exactly its own deltas."""
        base_and_child.put_delta("base", "assignment", "x", "add", assignment(50))
        base_and_child.put_delta("base", "project", "p", "add", project("Apollo"))
        base_and_child.put_delta("base", "assignment", "gone", "remove")

        resolved = resolve(base_and_child, "base")
        assert set(resolved.assignments) == {"x"}
        assert set(resolved.projects) == {"p"}
        assert resolved.path == ["base"]
        assert resolved.assignments["x"].provenance == "base"

    def test_untouched_entities_inherited(self, base_and_child, assignment):
        """Entities a child never touches come from the parent unchanged."""
        base_and_child.put_delta("base", "assignment", "x", "add", assignment(50))
        base_and_child.put_delta("base", "assignment", "y", "add", assignment(10))
        base_and_child.put_delta("child", "assignment", "x", "override", assignment(70))

        parent = resolve(base_and_child, "base")
        child = resolve(base_and_child, "child")
        assert child.assignments["y"].fields == parent.assignments["y"].fields
        assert child.assignments["y"].provenance == "base"
        assert child.assignments["x"].provenance == "child"

    def test_child_edit_isolated_from_parent_and_sibling(self, base_and_child, assignment):
        """A child override is invisible to its parent and siblings."""
        base_and_child.add_scenario(Scenario(id="sib", name="Sibling", parent_scenario_id="base"))
        base_and_child.put_delta("base", "assignment", "x", "add", assignment(50))
        base_and_child.put_delta("child", "assignment", "x", "override", assignment(90))

        assert resolve(base_and_child, "base").assignments["x"].fields["allocation_percentage"] == 50
        assert resolve(base_and_child, "sib").assignments["x"].fields["allocation_percentage"] == 50

    def test_repeatable(self, base_and_child, assignment):
        """Resolving twice gives equal results."""
        base_and_child.put_delta("base", "assignment", "x", "add", assignment(50))
        base_and_child.put_delta("child", "assignment", "y", "add", assignment(20))
        assert resolve(base_and_child, "child") == resolve(base_and_child, "child")

    def test_mutating_result_does_not_touch_store(self, base_and_child, assignment):
        """Resolved fields are copies of the stored payloads."""
        base_and_child.put_delta("base", "assignment", "x", "add", assignment(50))
        resolved = resolve(base_and_child, "base")
        resolved.assignments["x"].fields["allocation_percentage"] = 1

        again = resolve(base_and_child, "base")
        assert again.assignments["x"].fields["allocation_percentage"] == 50

    def test_remove_then_add_in_same_scenario(self, base_and_child, assignment):
        """REMOVE followed by ADD in one scenario resolves to the ADD."""
        base_and_child.put_delta("base", "assignment", "z", "add", assignment(40))
        base_and_child.put_delta("child", "assignment", "z", "remove")
        base_and_child.put_delta("child", "assignment", "z", "add", assignment(15, notes="new"))

        resolved = resolve(base_and_child, "child")
        assert resolved.assignments["z"].fields["allocation_percentage"] == 15
        assert resolved.assignments["z"].fields["notes"] == "new"

    def test_unknown_scenario(self, store):
        """Resolving a missing scenario raises UnknownScenario."""
        with pytest.raises(UnknownScenario):
            resolve(store, "ghost")


class TestResolutionCache:
    """Tests for cached resolution."""

    def test_hit_on_unchanged_chain(self, base_and_child, assignment):
        """An unchanged chain is served from the cache."""
        cache = ResolutionCache(8)
        base_and_child.put_delta("base", "assignment", "x", "add", assignment(50))

        first = resolve(base_and_child, "child", cache=cache)
        second = resolve(base_and_child, "child", cache=cache)
        assert first == second
        assert cache.hits == 1

    def test_upstream_edit_invalidates_descendant(self, base_and_child, assignment):
        """A parent edit invalidates the child's cached resolution."""
        cache = ResolutionCache(8)
        base_and_child.put_delta("base", "assignment", "x", "add", assignment(50))
        resolve(base_and_child, "child", cache=cache)

        base_and_child.put_delta("base", "assignment", "x", "override", assignment(60))
        resolved = resolve(base_and_child, "child", cache=cache)
        assert resolved.assignments["x"].fields["allocation_percentage"] == 60
        assert cache.hits == 0

    def test_upstream_delete_invalidates_descendant(self, base_and_child, assignment):
        """A parent delete invalidates the child's cached resolution."""
        cache = ResolutionCache(8)
        base_and_child.put_delta("base", "assignment", "x", "add", assignment(50))
        base_and_child.put_delta("base", "assignment", "y", "add", assignment(50))
        resolve(base_and_child, "child", cache=cache)

        base_and_child.delete_delta("base", EntityType.ASSIGNMENT, "y")
        assert "y" not in resolve(base_and_child, "child", cache=cache).assignments

    def test_cached_copy_is_isolated(self, base_and_child, assignment):
        """Mutating a result does not corrupt the cached entry."""
        cache = ResolutionCache(8)
        base_and_child.put_delta("base", "assignment", "x", "add", assignment(50))
        resolved = resolve(base_and_child, "base", cache=cache)
        resolved.assignments["x"].fields["allocation_percentage"] = 99

        cached = resolve(base_and_child, "base", cache=cache)
        assert cached.assignments["x"].fields["allocation_percentage"] == 50

    def test_lru_eviction(self, store):
        """The least recently used entry is evicted past capacity."""
        _chain(store, 4)
        cache = ResolutionCache(2)
        for sid in ("s1", "s2", "s3"):
            resolve(store, sid, cache=cache)
        assert len(cache) == 2
