"""
Scenario branching service.

Main entry point bundling delta edits, resolution, comparison and apply
over one store. Every operation takes the scenario id explicitly; there is
no notion of a currently selected scenario.
"""

import logging
from datetime import datetime
from typing import Any, Optional, Union

from .comparison import compare
from .merge import ApplyGuard, ConflictPolicy, apply_to_parent, detect_apply_conflicts
from .models import (
    ApplyConflict,
    DeltaOperation,
    DeltaRecord,
    Diff,
    EntityType,
    ResolvedScenario,
    Scenario,
)
from .resolution import DEFAULT_MAX_DEPTH, ResolutionCache, resolve
from .store import DeltaStore

logger = logging.getLogger(__name__)


class ScenarioEngine:
    """
    Facade over a DeltaStore.

    Args:
        store: Persistence backend
        max_depth: Depth bound for ancestor walks
        cache_size: Entries kept in the resolution cache (0 disables it)

    Example:
        >>> engine = ScenarioEngine(InMemoryDeltaStore())
        >>> engine.add_scenario(Scenario(id="base", name="Base", scenario_type="baseline"))
        >>> engine.put_delta("base", "assignment", "x", "add", {...})
        >>> engine.resolve("base").assignments["x"].provenance
        'base'
    """

    def __init__(
        self,
        store: DeltaStore,
        max_depth: int = DEFAULT_MAX_DEPTH,
        cache_size: int = 0
    ):
        if max_depth < 1:
            raise ValueError("max_depth must be at least 1")
        self.store = store
        self.max_depth = max_depth
        self.cache = ResolutionCache(cache_size) if cache_size > 0 else None
        self.guard = ApplyGuard()

    def ping(self) -> None:
        """Raise StoreUnavailable if the store cannot be reached."""
        self.store.ping()

    # --- Scenarios ---

    def add_scenario(self, scenario: Scenario) -> Scenario:
        return self.store.add_scenario(scenario)

    def get_scenario(self, scenario_id: str) -> Scenario:
        return self.store.get_scenario(scenario_id)

    # --- Deltas ---

    def get_deltas(self, scenario_id: str) -> list[DeltaRecord]:
        """Deltas owned by a scenario, sorted by entity."""
        return sorted(
            self.store.get_deltas(scenario_id),
            key=lambda r: (r.entity_type.value, r.entity_id),
        )

    def put_delta(
        self,
        scenario_id: str,
        entity_type: Union[EntityType, str],
        entity_id: str,
        operation: Union[DeltaOperation, str],
        payload: Optional[dict[str, Any]] = None,
        expected_updated_at: Optional[datetime] = None
    ) -> DeltaRecord:
        return self.store.put_delta(
            scenario_id, entity_type, entity_id, operation,
            payload, expected_updated_at,
        )

    def delete_delta(
        self,
        scenario_id: str,
        entity_type: Union[EntityType, str],
        entity_id: str
    ) -> bool:
        return self.store.delete_delta(scenario_id, EntityType(entity_type), entity_id)

    # --- Engine operations ---

    def resolve(self, scenario_id: str) -> ResolvedScenario:
        return resolve(self.store, scenario_id, self.max_depth, self.cache)

    def compare(self, scenario_a: str, scenario_b: str) -> Diff:
        return compare(self.store, scenario_a, scenario_b, self.max_depth, self.cache)

    def detect_apply_conflicts(self, scenario_id: str) -> list[ApplyConflict]:
        return detect_apply_conflicts(self.store, scenario_id)

    def apply_to_parent(
        self,
        scenario_id: str,
        on_conflict: Union[ConflictPolicy, str] = ConflictPolicy.OVERWRITE
    ) -> int:
        return apply_to_parent(self.store, scenario_id, on_conflict, self.guard)
