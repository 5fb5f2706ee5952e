"""
Delta store contract and the in-memory implementation.

The store is a pure persistence boundary: it keeps scenario rows and at
most one delta record per (scenario, entity type, entity id). It never
resolves or folds anything.
"""

import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Hashable, Iterable, Iterator, Optional, Union

from .errors import Conflict, InvalidDelta, UnknownScenario
from .models import (
    DeltaChange,
    DeltaOperation,
    DeltaRecord,
    EntityKey,
    EntityType,
    Scenario,
)
from .validation import build_change

logger = logging.getLogger(__name__)

# Opaque token that changes whenever any delta on the given scenarios changes
ChainVersion = Hashable


def check_expected_version(
    current: Optional[DeltaRecord],
    expected_updated_at: Optional[datetime],
    scenario_id: str,
    entity_type: EntityType,
    entity_id: str,
) -> None:
    """
    Read-compare-write check for lost updates.

    Raises:
        Conflict: If the caller's expected version no longer matches
    """
    if expected_updated_at is None:
        return
    if current is None or current.updated_at != expected_updated_at:
        raise Conflict(
            f"Delta for {entity_type.value} {entity_id} in scenario "
            f"{scenario_id} changed since it was read",
            scenario_id=scenario_id,
            entity_type=entity_type.value,
            entity_id=entity_id,
            expected_updated_at=expected_updated_at.isoformat(),
            actual_updated_at=current.updated_at.isoformat() if current else None,
        )


def stale_records_conflict(scenario_id: str, stale: list[DeltaRecord]) -> Conflict:
    """Conflict for applied records that changed or vanished before removal."""
    return Conflict(
        f"Scenario {scenario_id} was edited while it was being applied",
        scenario_id=scenario_id,
        entities=[
            {"entity_type": r.entity_type.value, "entity_id": r.entity_id}
            for r in stale
        ],
    )


class DeltaStore(ABC):
    """Persistence boundary for scenarios and their deltas."""

    # --- Scenarios ---

    @abstractmethod
    def get_scenario(self, scenario_id: str) -> Scenario:
        """Return the scenario or raise UnknownScenario."""

    @abstractmethod
    def add_scenario(self, scenario: Scenario) -> Scenario:
        """Register a scenario whose parent already exists."""

    # --- Deltas ---

    @abstractmethod
    def get_deltas(self, scenario_id: str) -> list[DeltaRecord]:
        """All delta records owned by a scenario, in no particular order."""

    @abstractmethod
    def get_delta(
        self,
        scenario_id: str,
        entity_type: EntityType,
        entity_id: str
    ) -> Optional[DeltaRecord]:
        """The record for one entity, or None."""

    @abstractmethod
    def write_delta(
        self,
        scenario_id: str,
        entity_type: EntityType,
        entity_id: str,
        change: DeltaChange,
        expected_updated_at: Optional[datetime] = None
    ) -> DeltaRecord:
        """Upsert an already-validated change."""

    @abstractmethod
    def delete_delta(
        self,
        scenario_id: str,
        entity_type: EntityType,
        entity_id: str
    ) -> bool:
        """Remove the record for one entity. Returns whether one existed."""

    @abstractmethod
    def clear_deltas(self, scenario_id: str) -> int:
        """Remove every record owned by a scenario. Returns the count."""

    @abstractmethod
    def delete_applied(self, scenario_id: str, records: list[DeltaRecord]) -> None:
        """
        Remove exactly the given records from a scenario.

        Each record is matched on its key and ``updated_at``; if any of them
        was rewritten or deleted since it was read, nothing is removed and
        Conflict is raised. Records not in the list are left alone.
        """

    @abstractmethod
    def chain_version(self, scenario_ids: Iterable[str]) -> ChainVersion:
        """Version token over the deltas of the given scenarios."""

    @abstractmethod
    def transaction(self):
        """Context manager making all writes inside it atomic."""

    # --- Shared behaviour ---

    def lock_for_apply(self, scenario_id: str) -> None:
        """Lock the scenario for the rest of the enclosing transaction."""
        self.get_scenario(scenario_id)

    def consistent_read(self):
        """Context manager giving several reads one consistent view."""
        return self.transaction()

    def ping(self) -> None:
        """Raise StoreUnavailable if the backend cannot be reached."""

    def put_delta(
        self,
        scenario_id: str,
        entity_type: Union[EntityType, str],
        entity_id: str,
        operation: Union[DeltaOperation, str],
        payload: Optional[dict[str, Any]] = None,
        expected_updated_at: Optional[datetime] = None
    ) -> DeltaRecord:
        """
        Record an add/override/remove for one entity in one scenario.

        A later write for the same (scenario, entity) replaces the earlier
        record in place, so REMOVE followed by ADD leaves a single ADD.

        Args:
            scenario_id: Scenario owning the delta
            entity_type: project or assignment
            entity_id: Entity identifier
            operation: add, override or remove
            payload: Full field snapshot (add/override only)
            expected_updated_at: If set, fail with Conflict unless the
                stored record still has this timestamp

        Returns:
            The stored DeltaRecord

        Raises:
            UnknownScenario: Scenario does not exist
            InvalidDelta: Payload missing, unexpected or invalid
            Conflict: expected_updated_at is stale
        """
        try:
            entity_type = EntityType(entity_type)
            operation = DeltaOperation(operation)
        except ValueError as e:
            raise InvalidDelta(str(e)) from e
        if not entity_id:
            raise InvalidDelta("entity_id is required")

        change = build_change(entity_type, operation, payload)
        return self.write_delta(
            scenario_id, entity_type, entity_id, change, expected_updated_at
        )


class InMemoryDeltaStore(DeltaStore):
    """
    Thread-safe dictionary-backed store.

    A single re-entrant lock serializes writes and gives readers a
    consistent view; ``transaction()`` snapshots the delta tables and
    restores them if the block raises.
    """

    def __init__(self) -> None:
        self.scenarios: dict[str, Scenario] = {}
        self.deltas: dict[str, dict[EntityKey, DeltaRecord]] = {}
        self._lock = threading.RLock()
        self._last_timestamp: Optional[datetime] = None
        self._tx_depth = 0

    def _now(self) -> datetime:
        now = datetime.now(timezone.utc)
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now

    def _require(self, scenario_id: str) -> Scenario:
        scenario = self.scenarios.get(scenario_id)
        if scenario is None:
            raise UnknownScenario(scenario_id)
        return scenario

    # --- Scenarios ---

    def get_scenario(self, scenario_id: str) -> Scenario:
        with self._lock:
            return self._require(scenario_id)

    def add_scenario(self, scenario: Scenario) -> Scenario:
        with self._lock:
            if scenario.id in self.scenarios:
                raise InvalidDelta(f"Scenario already exists: {scenario.id}")
            if scenario.parent_scenario_id is not None:
                self._require(scenario.parent_scenario_id)
            if scenario.created_at is None:
                scenario = scenario.model_copy(update={"created_at": self._now()})
            self.scenarios[scenario.id] = scenario
            self.deltas.setdefault(scenario.id, {})

        logger.info(
            "Scenario registered | id=%s type=%s parent=%s",
            scenario.id,
            scenario.scenario_type.value,
            scenario.parent_scenario_id,
        )
        return scenario

    # --- Deltas ---

    def get_deltas(self, scenario_id: str) -> list[DeltaRecord]:
        with self._lock:
            self._require(scenario_id)
            return list(self.deltas.get(scenario_id, {}).values())

    def get_delta(
        self,
        scenario_id: str,
        entity_type: EntityType,
        entity_id: str
    ) -> Optional[DeltaRecord]:
        with self._lock:
            self._require(scenario_id)
            return self.deltas.get(scenario_id, {}).get(
                (EntityType(entity_type), entity_id)
            )

    def write_delta(
        self,
        scenario_id: str,
        entity_type: EntityType,
        entity_id: str,
        change: DeltaChange,
        expected_updated_at: Optional[datetime] = None
    ) -> DeltaRecord:
        entity_type = EntityType(entity_type)
        with self._lock:
            self._require(scenario_id)
            records = self.deltas.setdefault(scenario_id, {})
            key = (entity_type, entity_id)
            check_expected_version(
                records.get(key), expected_updated_at,
                scenario_id, entity_type, entity_id,
            )
            record = DeltaRecord(
                scenario_id=scenario_id,
                entity_type=entity_type,
                entity_id=entity_id,
                change=change,
                updated_at=self._now(),
            )
            records[key] = record

        logger.debug(
            "Delta written | scenario=%s %s=%s op=%s",
            scenario_id, entity_type.value, entity_id, change.op.value,
        )
        return record

    def delete_delta(
        self,
        scenario_id: str,
        entity_type: EntityType,
        entity_id: str
    ) -> bool:
        with self._lock:
            self._require(scenario_id)
            removed = self.deltas.get(scenario_id, {}).pop(
                (EntityType(entity_type), entity_id), None
            )
            if removed is not None:
                self._now()
            return removed is not None

    def clear_deltas(self, scenario_id: str) -> int:
        with self._lock:
            self._require(scenario_id)
            count = len(self.deltas.get(scenario_id, {}))
            self.deltas[scenario_id] = {}
            return count

    def delete_applied(self, scenario_id: str, records: list[DeltaRecord]) -> None:
        with self._lock:
            self._require(scenario_id)
            current = self.deltas.get(scenario_id, {})
            stale = []
            for record in records:
                stored = current.get(record.key)
                if stored is None or stored.updated_at != record.updated_at:
                    stale.append(record)
            if stale:
                raise stale_records_conflict(scenario_id, stale)

            for record in records:
                del current[record.key]
            if records:
                self._now()

    def chain_version(self, scenario_ids: Iterable[str]) -> ChainVersion:
        """(max updated_at, record count); one clock orders every write."""
        with self._lock:
            latest: Optional[datetime] = None
            count = 0
            for scenario_id in scenario_ids:
                for record in self.deltas.get(scenario_id, {}).values():
                    count += 1
                    if latest is None or record.updated_at > latest:
                        latest = record.updated_at
            return latest, count

    @contextmanager
    def consistent_read(self) -> Iterator["InMemoryDeltaStore"]:
        with self._lock:
            yield self

    @contextmanager
    def transaction(self) -> Iterator["InMemoryDeltaStore"]:
        with self._lock:
            outermost = self._tx_depth == 0
            snapshot = (
                {sid: dict(records) for sid, records in self.deltas.items()}
                if outermost else None
            )
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                if outermost:
                    self.deltas = snapshot
                    logger.warning("Transaction rolled back")
                raise
            finally:
                self._tx_depth -= 1
