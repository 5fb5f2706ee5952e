"""
Pydantic models for scenario branching.

Deltas are a tagged union discriminated on ``op``: only ADD and OVERRIDE
carry a payload, so a REMOVE with data cannot be constructed at all.
"""

from datetime import date, datetime
from enum import Enum
from typing import Annotated, Any, Iterator, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class ScenarioType(str, Enum):
    """Position of a scenario in the branch tree."""
    BASELINE = "baseline"
    BRANCH = "branch"
    SANDBOX = "sandbox"


class ScenarioStatus(str, Enum):
    """Scenario lifecycle status."""
    DRAFT = "draft"
    ACTIVE = "active"
    ARCHIVED = "archived"


class EntityType(str, Enum):
    """Scenario-sensitive entity kinds."""
    PROJECT = "project"
    ASSIGNMENT = "assignment"


class DeltaOperation(str, Enum):
    """Operations a scenario can record against one entity."""
    ADD = "add"
    OVERRIDE = "override"
    REMOVE = "remove"


class AssignmentDateMode(str, Enum):
    """How an assignment's dates are derived."""
    FIXED = "fixed"
    PHASE = "phase"
    PROJECT = "project"


# --- Scenario ---

class Scenario(BaseModel):
    """
    A node in the branch tree.

    Baselines are roots; every other scenario hangs off exactly one parent.
    Tree position is fixed once created.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Scenario identifier")
    name: str = Field(..., min_length=1, description="Human-readable name")
    scenario_type: ScenarioType = Field(
        default=ScenarioType.BRANCH,
        description="baseline, branch or sandbox"
    )
    status: ScenarioStatus = Field(
        default=ScenarioStatus.DRAFT,
        description="Lifecycle status"
    )
    parent_scenario_id: Optional[str] = Field(
        default=None,
        description="Parent scenario (None only for baselines)"
    )
    description: Optional[str] = None
    created_at: Optional[datetime] = None

    @model_validator(mode="after")
    def check_tree_position(self) -> "Scenario":
        """Baselines are roots, everything else needs a parent."""
        if self.scenario_type == ScenarioType.BASELINE:
            if self.parent_scenario_id is not None:
                raise ValueError("baseline scenarios cannot have a parent")
        elif self.parent_scenario_id is None:
            raise ValueError(
                f"{self.scenario_type.value} scenarios require a parent_scenario_id"
            )
        if self.parent_scenario_id == self.id:
            raise ValueError("scenario cannot be its own parent")
        return self

    @property
    def is_baseline(self) -> bool:
        return self.parent_scenario_id is None


# --- Canonical entity schemas ---

class ProjectFields(BaseModel):
    """Canonical project fields compared between scenarios."""

    model_config = ConfigDict(extra="ignore")

    name: str = Field(..., min_length=1)
    priority: Optional[int] = Field(default=None, ge=1, le=5)
    aspiration_start: Optional[date] = None
    aspiration_finish: Optional[date] = None
    notes: Optional[str] = None

    @model_validator(mode="after")
    def finish_after_start(self) -> "ProjectFields":
        if (
            self.aspiration_start is not None
            and self.aspiration_finish is not None
            and self.aspiration_finish < self.aspiration_start
        ):
            raise ValueError("aspiration_finish cannot be before aspiration_start")
        return self


class AssignmentFields(BaseModel):
    """Canonical assignment fields compared between scenarios."""

    model_config = ConfigDict(extra="ignore")

    project_id: str = Field(..., min_length=1)
    person_id: str = Field(..., min_length=1)
    role_id: str = Field(..., min_length=1)
    phase_id: Optional[str] = None
    allocation_percentage: float = Field(
        ...,
        gt=0,
        le=100,
        description="Share of the person's capacity, 0 < x <= 100"
    )
    assignment_date_mode: AssignmentDateMode = AssignmentDateMode.FIXED
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    notes: Optional[str] = None

    @model_validator(mode="after")
    def end_after_start(self) -> "AssignmentFields":
        if (
            self.start_date is not None
            and self.end_date is not None
            and self.end_date < self.start_date
        ):
            raise ValueError("end_date cannot be before start_date")
        return self


ENTITY_SCHEMAS: dict[EntityType, type[BaseModel]] = {
    EntityType.PROJECT: ProjectFields,
    EntityType.ASSIGNMENT: AssignmentFields,
}


# --- Deltas ---

class AddDelta(BaseModel):
    """Introduce an entity in this scenario."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    op: Literal[DeltaOperation.ADD] = DeltaOperation.ADD
    payload: dict[str, Any]


class OverrideDelta(BaseModel):
    """Replace an inherited entity's fields in this scenario."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    op: Literal[DeltaOperation.OVERRIDE] = DeltaOperation.OVERRIDE
    payload: dict[str, Any]


class RemoveDelta(BaseModel):
    """Tombstone hiding an inherited entity."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    op: Literal[DeltaOperation.REMOVE] = DeltaOperation.REMOVE


DeltaChange = Annotated[
    Union[AddDelta, OverrideDelta, RemoveDelta],
    Field(discriminator="op"),
]

EntityKey = tuple[EntityType, str]


class DeltaRecord(BaseModel):
    """The single stored change for one (scenario, entity) pair."""

    model_config = ConfigDict(frozen=True)

    scenario_id: str
    entity_type: EntityType
    entity_id: str
    change: DeltaChange
    updated_at: datetime

    @property
    def operation(self) -> DeltaOperation:
        return self.change.op

    @property
    def payload(self) -> Optional[dict[str, Any]]:
        return getattr(self.change, "payload", None)

    @property
    def key(self) -> EntityKey:
        return (self.entity_type, self.entity_id)


# --- Resolution ---

class ResolvedEntity(BaseModel):
    """Effective state of one entity plus the scenario that supplied it."""

    entity_type: EntityType
    entity_id: str
    fields: dict[str, Any]
    provenance: str = Field(description="Scenario that last contributed the value")


class ResolvedScenario(BaseModel):
    """Effective projects and assignments of one scenario."""

    scenario_id: str
    path: list[str] = Field(
        default_factory=list,
        description="Scenario ids from root baseline down to this scenario"
    )
    projects: dict[str, ResolvedEntity] = Field(default_factory=dict)
    assignments: dict[str, ResolvedEntity] = Field(default_factory=dict)

    def entities(self, entity_type: EntityType) -> dict[str, ResolvedEntity]:
        if entity_type == EntityType.PROJECT:
            return self.projects
        return self.assignments

    def iter_entities(self) -> Iterator[ResolvedEntity]:
        """All entities in (entity_type, entity_id) order."""
        for entity_type in EntityType:
            entities = self.entities(entity_type)
            for entity_id in sorted(entities):
                yield entities[entity_id]

    def field_values(self) -> dict[str, dict[str, dict[str, Any]]]:
        """Field values per kind with provenance stripped."""
        return {
            entity_type.value: {
                entity_id: entity.fields
                for entity_id, entity in self.entities(entity_type).items()
            }
            for entity_type in EntityType
        }


# --- Comparison ---

class ChangeType(str, Enum):
    """Classification of an entity in a diff."""
    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"


class FieldChange(BaseModel):
    """One canonical field that differs between the two sides."""

    field: str
    old: Any = None
    new: Any = None


class EntityDiff(BaseModel):
    """Per-entity difference between scenario A (old) and B (new)."""

    entity_type: EntityType
    entity_id: str
    change_type: ChangeType
    old: Optional[dict[str, Any]] = Field(
        default=None,
        description="Canonical fields in scenario A (None when added)"
    )
    new: Optional[dict[str, Any]] = Field(
        default=None,
        description="Canonical fields in scenario B (None when removed)"
    )
    field_changes: list[FieldChange] = Field(default_factory=list)

    @property
    def key(self) -> EntityKey:
        return (self.entity_type, self.entity_id)


class ImpactSummary(BaseModel):
    """Aggregate impact, always folded from the itemized diff."""

    added_count: int = 0
    removed_count: int = 0
    modified_count: int = 0
    projects_added: int = 0
    projects_removed: int = 0
    projects_modified: int = 0
    assignments_added: int = 0
    assignments_removed: int = 0
    assignments_modified: int = 0
    net_allocation_change: float = Field(
        default=0.0,
        description="Sum of allocation_percentage changes across assignments"
    )
    allocation_change_by_person: dict[str, float] = Field(
        default_factory=dict,
        description="Net allocation change per person (zero entries omitted)"
    )


class Diff(BaseModel):
    """Result of comparing scenario A against scenario B."""

    scenario_a: str
    scenario_b: str
    added: list[EntityDiff] = Field(default_factory=list)
    removed: list[EntityDiff] = Field(default_factory=list)
    modified: list[EntityDiff] = Field(default_factory=list)
    impact: ImpactSummary = Field(default_factory=ImpactSummary)

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.modified)


# --- Apply ---

class ApplyConflict(BaseModel):
    """Parent already holds its own, different delta for an entity."""

    entity_type: EntityType
    entity_id: str
    child_change: DeltaChange
    parent_change: DeltaChange


class DeltaWrite(BaseModel):
    """Request to record a delta, used by the API layer."""

    operation: DeltaOperation
    payload: Optional[dict[str, Any]] = None
    expected_updated_at: Optional[datetime] = Field(
        default=None,
        description="updated_at the caller last read, for lost-update detection"
    )

    @field_validator("payload")
    @classmethod
    def empty_payload_is_none(cls, v: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
        return v or None
