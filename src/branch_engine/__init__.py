"""
Scenario Branching Engine

Stores only the deltas a scenario introduces relative to its parent,
resolves a deterministic effective state anywhere in the branch tree,
and compares or folds scenarios back into their parents.
"""

__version__ = "0.1.0"

from .errors import (
    AlreadyApplying,
    Conflict,
    CycleDetected,
    DepthExceeded,
    InvalidDelta,
    NoParent,
    ScenarioEngineError,
    StoreUnavailable,
    UnknownScenario,
)
from .models import (
    AddDelta,
    ApplyConflict,
    AssignmentFields,
    ChangeType,
    DeltaOperation,
    DeltaRecord,
    Diff,
    EntityDiff,
    EntityType,
    FieldChange,
    ImpactSummary,
    OverrideDelta,
    ProjectFields,
    RemoveDelta,
    ResolvedEntity,
    ResolvedScenario,
    Scenario,
    ScenarioStatus,
    ScenarioType,
)
from .store import DeltaStore, InMemoryDeltaStore
from .resolution import ResolutionCache, ancestor_path, resolve
from .comparison import compare, diff_resolved, summarize_impact
from .merge import ApplyGuard, ConflictPolicy, apply_to_parent, detect_apply_conflicts
from .service import ScenarioEngine

__all__ = [
    "__version__",
    "AlreadyApplying",
    "Conflict",
    "CycleDetected",
    "DepthExceeded",
    "InvalidDelta",
    "NoParent",
    "ScenarioEngineError",
    "StoreUnavailable",
    "UnknownScenario",
    "AddDelta",
    "ApplyConflict",
    "AssignmentFields",
    "ChangeType",
    "DeltaOperation",
    "DeltaRecord",
    "Diff",
    "EntityDiff",
    "EntityType",
    "FieldChange",
    "ImpactSummary",
    "OverrideDelta",
    "ProjectFields",
    "RemoveDelta",
    "ResolvedEntity",
    "ResolvedScenario",
    "Scenario",
    "ScenarioStatus",
    "ScenarioType",
    "DeltaStore",
    "InMemoryDeltaStore",
    "ResolutionCache",
    "ancestor_path",
    "resolve",
    "compare",
    "diff_resolved",
    "summarize_impact",
    "ApplyGuard",
    "ConflictPolicy",
    "apply_to_parent",
    "detect_apply_conflicts",
    "ScenarioEngine",
]
