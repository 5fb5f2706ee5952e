"""
Apply a scenario's deltas to its parent.

Deltas move exactly one level up. The whole operation runs inside a single
store transaction: either every record lands in the parent and the child
is cleared, or nothing changes.
"""

import logging
import threading
from contextlib import contextmanager
from enum import Enum
from typing import Iterator, Optional, Union

from .errors import AlreadyApplying, Conflict, NoParent
from .models import ApplyConflict, DeltaRecord, Scenario
from .store import DeltaStore

logger = logging.getLogger(__name__)


class ConflictPolicy(str, Enum):
    """What to do when the parent holds its own differing delta."""
    OVERWRITE = "overwrite"
    FAIL = "fail"


class ApplyGuard:
    """
    Per-child critical section for apply operations.

    A second apply on a child that is already being applied fails fast
    with AlreadyApplying; different children never wait on each other.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: set[str] = set()

    @contextmanager
    def hold(self, scenario_id: str) -> Iterator[None]:
        with self._lock:
            if scenario_id in self._active:
                raise AlreadyApplying(scenario_id)
            self._active.add(scenario_id)
        try:
            yield
        finally:
            with self._lock:
                self._active.discard(scenario_id)

    def is_applying(self, scenario_id: str) -> bool:
        with self._lock:
            return scenario_id in self._active


_default_guard = ApplyGuard()


def _record_order(record: DeltaRecord) -> tuple[str, str]:
    return (record.entity_type.value, record.entity_id)


def _require_parent(store: DeltaStore, scenario_id: str) -> Scenario:
    scenario = store.get_scenario(scenario_id)
    if scenario.parent_scenario_id is None:
        raise NoParent(scenario_id)
    return scenario


def _find_conflicts(
    store: DeltaStore,
    records: list[DeltaRecord],
    parent_id: str
) -> list[ApplyConflict]:
    parent_records = {record.key: record for record in store.get_deltas(parent_id)}
    conflicts: list[ApplyConflict] = []
    for record in records:
        parent_record = parent_records.get(record.key)
        if parent_record is not None and parent_record.change != record.change:
            conflicts.append(ApplyConflict(
                entity_type=record.entity_type,
                entity_id=record.entity_id,
                child_change=record.change,
                parent_change=parent_record.change,
            ))
    return conflicts


def detect_apply_conflicts(
    store: DeltaStore,
    scenario_id: str
) -> list[ApplyConflict]:
    """
    List entities where the parent already has its own, different delta.

    Applying would overwrite those parent records. This is a read-only
    preview; nothing is written.

    Raises:
        UnknownScenario: Scenario does not exist
        NoParent: Scenario is a baseline
    """
    with store.consistent_read():
        scenario = _require_parent(store, scenario_id)
        records = sorted(store.get_deltas(scenario_id), key=_record_order)
        return _find_conflicts(store, records, scenario.parent_scenario_id)


def apply_to_parent(
    store: DeltaStore,
    scenario_id: str,
    on_conflict: Union[ConflictPolicy, str] = ConflictPolicy.OVERWRITE,
    guard: Optional[ApplyGuard] = None
) -> int:
    """
    Push a scenario's deltas into its parent and clear the scenario.

    ADD/OVERRIDE payloads are copied verbatim and REMOVE stays REMOVE. Once
    applied, the child no longer owns the copied deltas, so it resolves to
    exactly what its updated parent resolves to. Records created in the
    child after they were read stay in the child.

    Args:
        store: Delta store
        scenario_id: Child scenario to apply
        on_conflict: ``overwrite`` (default) replaces parent records;
            ``fail`` raises Conflict if any parent record would change
        guard: Critical-section registry (module default if omitted)

    Returns:
        Number of delta records applied

    Raises:
        UnknownScenario: Scenario does not exist
        NoParent: Scenario is a baseline
        AlreadyApplying: Same child is being applied concurrently
        Conflict: on_conflict is ``fail`` and the parent diverges, or a
            child record was edited while the apply was running
        StoreUnavailable: Store failure (everything rolled back)
    """
    policy = ConflictPolicy(on_conflict)
    guard = guard or _default_guard
    scenario = _require_parent(store, scenario_id)
    parent_id = scenario.parent_scenario_id

    with guard.hold(scenario_id):
        with store.transaction():
            store.lock_for_apply(scenario_id)
            records = sorted(store.get_deltas(scenario_id), key=_record_order)

            if policy == ConflictPolicy.FAIL:
                conflicts = _find_conflicts(store, records, parent_id)
                if conflicts:
                    raise Conflict(
                        f"Parent scenario {parent_id} has diverging changes "
                        f"for {len(conflicts)} entities",
                        scenario_id=scenario_id,
                        parent_scenario_id=parent_id,
                        entities=[
                            {"entity_type": c.entity_type.value, "entity_id": c.entity_id}
                            for c in conflicts
                        ],
                    )

            for record in records:
                store.write_delta(
                    parent_id,
                    record.entity_type,
                    record.entity_id,
                    record.change,
                )
            # Only what was read and copied; a concurrent edit aborts the apply
            store.delete_applied(scenario_id, records)

    logger.info(
        "Applied scenario to parent | scenario=%s parent=%s applied=%d",
        scenario_id, parent_id, len(records),
    )
    return len(records)
