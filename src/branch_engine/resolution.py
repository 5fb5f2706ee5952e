"""
Scenario resolution.

Folds the deltas of every scenario on the root-to-target path into one
effective state. Each scenario contributes at most one record per entity,
so the result depends only on the chain contents and never on the order a
store happens to return records in.
"""

import logging
import threading
from collections import OrderedDict
from copy import deepcopy
from typing import Hashable, Iterable, Optional

from .errors import CycleDetected, DepthExceeded
from .models import (
    DeltaOperation,
    DeltaRecord,
    EntityKey,
    ResolvedEntity,
    ResolvedScenario,
)
from .store import DeltaStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 64


def ancestor_path(
    store: DeltaStore,
    scenario_id: str,
    max_depth: int = DEFAULT_MAX_DEPTH
) -> list[str]:
    """
    Compute the scenario ids from the root baseline down to ``scenario_id``.

    Walks parent pointers with an explicit loop so stack usage does not
    depend on tree shape.

    Args:
        store: Delta store holding the scenario rows
        scenario_id: Target scenario
        max_depth: Maximum number of scenarios allowed on the path

    Returns:
        Root-to-target list of scenario ids

    Raises:
        UnknownScenario: Target or an ancestor does not exist
        CycleDetected: Traversal revisited a scenario
        DepthExceeded: Path is longer than max_depth
    """
    path: list[str] = []
    visited: set[str] = set()
    current_id: Optional[str] = scenario_id

    while current_id is not None:
        if current_id in visited:
            logger.error(
                "Cycle in scenario ancestry | scenario=%s at=%s",
                scenario_id, current_id,
            )
            raise CycleDetected(current_id, list(reversed(path)))
        if len(path) >= max_depth:
            raise DepthExceeded(scenario_id, max_depth)

        visited.add(current_id)
        scenario = store.get_scenario(current_id)
        path.append(current_id)
        current_id = scenario.parent_scenario_id

    path.reverse()
    return path


def _record_order(record: DeltaRecord) -> tuple[str, str]:
    return (record.entity_type.value, record.entity_id)


def fold_deltas(
    chain: Iterable[tuple[str, list[DeltaRecord]]]
) -> dict[EntityKey, ResolvedEntity]:
    """
    Fold per-scenario delta sets into an effective entity map.

    Args:
        chain: (scenario_id, records) pairs in root-to-target order

    Returns:
        Map of (entity_type, entity_id) to ResolvedEntity
    """
    state: dict[EntityKey, ResolvedEntity] = {}

    for scenario_id, records in chain:
        for record in sorted(records, key=_record_order):
            if record.operation == DeltaOperation.REMOVE:
                # Tombstone: hides whatever ancestors contributed
                state.pop(record.key, None)
            else:
                state[record.key] = ResolvedEntity(
                    entity_type=record.entity_type,
                    entity_id=record.entity_id,
                    fields=deepcopy(record.payload),
                    provenance=scenario_id,
                )

    return state


class ResolutionCache:
    """
    Small thread-safe LRU for resolved scenarios.

    Keys include the chain version (latest ``updated_at`` and record count
    across every scenario on the path), so an edit anywhere upstream
    invalidates all descendants without explicit eviction.
    """

    def __init__(self, max_entries: int = 256):
        self.max_entries = max_entries
        self._entries: "OrderedDict[Hashable, ResolvedScenario]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable) -> Optional[ResolvedScenario]:
        with self._lock:
            value = self._entries.get(key)
            if value is None:
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return value.model_copy(deep=True)

    def put(self, key: Hashable, value: ResolvedScenario) -> None:
        with self._lock:
            self._entries[key] = value.model_copy(deep=True)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def resolve(
    store: DeltaStore,
    scenario_id: str,
    max_depth: int = DEFAULT_MAX_DEPTH,
    cache: Optional[ResolutionCache] = None
) -> ResolvedScenario:
    """
    Resolve the effective projects and assignments of a scenario.

    Pure read: the store is never modified, and the returned entities are
    copies that callers may mutate freely.

    Args:
        store: Delta store
        scenario_id: Scenario to resolve
        max_depth: Depth bound for the ancestor walk
        cache: Optional resolution cache

    Returns:
        ResolvedScenario with per-kind entity maps and provenance

    Raises:
        UnknownScenario, CycleDetected, DepthExceeded, StoreUnavailable

    Example:
        >>> resolved = resolve(store, "child")
        >>> resolved.assignments["x"].fields["allocation_percentage"]
        80.0
    """
    with store.consistent_read():
        path = ancestor_path(store, scenario_id, max_depth)

        cache_key = None
        if cache is not None:
            cache_key = (scenario_id, tuple(path), store.chain_version(path))
            cached = cache.get(cache_key)
            if cached is not None:
                logger.debug("Resolution cache hit | scenario=%s", scenario_id)
                return cached

        chain = [(sid, store.get_deltas(sid)) for sid in path]

    state = fold_deltas(chain)

    resolved = ResolvedScenario(scenario_id=scenario_id, path=path)
    for (entity_type, entity_id), entity in state.items():
        resolved.entities(entity_type)[entity_id] = entity

    logger.info(
        "Resolved scenario | scenario=%s depth=%d projects=%d assignments=%d",
        scenario_id,
        len(path),
        len(resolved.projects),
        len(resolved.assignments),
    )

    if cache is not None:
        cache.put(cache_key, resolved)
    return resolved
