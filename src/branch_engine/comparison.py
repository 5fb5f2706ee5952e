"""
Scenario comparison.

Diffs two resolved scenarios entity by entity and folds the itemized diff
into aggregate impact metrics. Comparing A to B and B to A yields swapped
added/removed sets, mirrored field changes and exactly negated impact.
"""

import logging
from typing import Any, Iterable, Optional

from .models import (
    ChangeType,
    Diff,
    EntityDiff,
    EntityType,
    FieldChange,
    ImpactSummary,
    ResolvedEntity,
    ResolvedScenario,
)
from .resolution import DEFAULT_MAX_DEPTH, ResolutionCache, resolve
from .store import DeltaStore
from .validation import canonical_fields

logger = logging.getLogger(__name__)


def diff_fields(
    old: dict[str, Any],
    new: dict[str, Any]
) -> list[FieldChange]:
    """
    Field-by-field comparison of two canonical field maps.

    Args:
        old: Canonical fields on side A
        new: Canonical fields on side B (same keys as old)

    Returns:
        Changes in schema field order (empty if identical)
    """
    return [
        FieldChange(field=name, old=old.get(name), new=new.get(name))
        for name in old
        if old.get(name) != new.get(name)
    ]


def diff_entity(
    entity_type: EntityType,
    entity_id: str,
    a: Optional[ResolvedEntity],
    b: Optional[ResolvedEntity]
) -> Optional[EntityDiff]:
    """
    Classify one entity present on at least one side.

    Returns:
        EntityDiff, or None when both sides are canonically equal
    """
    old = canonical_fields(entity_type, a.fields) if a is not None else None
    new = canonical_fields(entity_type, b.fields) if b is not None else None

    if old is None:
        return EntityDiff(
            entity_type=entity_type,
            entity_id=entity_id,
            change_type=ChangeType.ADDED,
            new=new,
        )
    if new is None:
        return EntityDiff(
            entity_type=entity_type,
            entity_id=entity_id,
            change_type=ChangeType.REMOVED,
            old=old,
        )

    changes = diff_fields(old, new)
    if not changes:
        return None
    return EntityDiff(
        entity_type=entity_type,
        entity_id=entity_id,
        change_type=ChangeType.MODIFIED,
        old=old,
        new=new,
        field_changes=changes,
    )


def _allocation(fields: Optional[dict[str, Any]]) -> float:
    if not fields:
        return 0.0
    return float(fields.get("allocation_percentage") or 0.0)


def summarize_impact(entries: Iterable[EntityDiff]) -> ImpactSummary:
    """
    Fold itemized entity diffs into aggregate impact.

    Entries are folded in (entity_type, entity_id) order so that the
    reverse comparison sums the same terms in the same order.

    Args:
        entries: Added, removed and modified entries of one Diff

    Returns:
        ImpactSummary consistent with the entries
    """
    impact = ImpactSummary()
    by_person: dict[str, float] = {}

    for entry in sorted(entries, key=lambda e: (e.entity_type.value, e.entity_id)):
        kind = entry.entity_type.value
        action = entry.change_type.value
        setattr(impact, f"{action}_count", getattr(impact, f"{action}_count") + 1)
        counter = f"{kind}s_{action}"
        setattr(impact, counter, getattr(impact, counter) + 1)

        if entry.entity_type != EntityType.ASSIGNMENT:
            continue

        old_alloc = _allocation(entry.old)
        new_alloc = _allocation(entry.new)
        impact.net_allocation_change += new_alloc - old_alloc

        old_person = entry.old.get("person_id") if entry.old else None
        new_person = entry.new.get("person_id") if entry.new else None
        if old_person is not None and old_person == new_person:
            by_person[old_person] = by_person.get(old_person, 0.0) + (new_alloc - old_alloc)
        else:
            # Reassigned to someone else: each side only sees its own share
            if old_person is not None:
                by_person[old_person] = by_person.get(old_person, 0.0) - old_alloc
            if new_person is not None:
                by_person[new_person] = by_person.get(new_person, 0.0) + new_alloc

    impact.allocation_change_by_person = {
        person: change
        for person, change in sorted(by_person.items())
        if change != 0
    }
    return impact


def diff_resolved(a: ResolvedScenario, b: ResolvedScenario) -> Diff:
    """
    Compute the diff between two resolved scenarios.

    Entities only in B are added, only in A are removed, and entities in
    both that differ on a canonical field are modified. Provenance and
    unknown fields never count as a difference.
    """
    diff = Diff(scenario_a=a.scenario_id, scenario_b=b.scenario_id)

    for entity_type in EntityType:
        side_a = a.entities(entity_type)
        side_b = b.entities(entity_type)
        for entity_id in sorted(set(side_a) | set(side_b)):
            entry = diff_entity(
                entity_type, entity_id,
                side_a.get(entity_id), side_b.get(entity_id),
            )
            if entry is None:
                continue
            if entry.change_type == ChangeType.ADDED:
                diff.added.append(entry)
            elif entry.change_type == ChangeType.REMOVED:
                diff.removed.append(entry)
            else:
                diff.modified.append(entry)

    diff.impact = summarize_impact([*diff.added, *diff.removed, *diff.modified])
    return diff


def compare(
    store: DeltaStore,
    scenario_a: str,
    scenario_b: str,
    max_depth: int = DEFAULT_MAX_DEPTH,
    cache: Optional[ResolutionCache] = None
) -> Diff:
    """
    Compare two scenarios.

    The scenarios are resolved independently and need not share a lineage;
    comparing sibling branches is a normal case. Resolution failures from
    either side propagate unchanged.

    Example:
        >>> diff = compare(store, "base", "child")
        >>> [e.entity_id for e in diff.modified]
        ['x']
        >>> diff.impact.net_allocation_change
        50.0
    """
    resolved_a = resolve(store, scenario_a, max_depth, cache)
    resolved_b = resolve(store, scenario_b, max_depth, cache)
    diff = diff_resolved(resolved_a, resolved_b)

    logger.info(
        "Compared scenarios | a=%s b=%s added=%d removed=%d modified=%d net_allocation=%.2f",
        scenario_a,
        scenario_b,
        diff.impact.added_count,
        diff.impact.removed_count,
        diff.impact.modified_count,
        diff.impact.net_allocation_change,
    )
    return diff
