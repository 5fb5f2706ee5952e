"""
Engine error types.

Every error carries a ``category`` so the transport layer can map it to a
distinct user-visible class (not-found / conflict / structural / ...)
without inspecting concrete types.
"""

from typing import Any, Optional


class ScenarioEngineError(Exception):
    """Base class for all scenario engine failures."""

    category: str = "internal"

    def __init__(self, message: str, **detail: Any):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> dict[str, Any]:
        """Serializable representation used in API error bodies."""
        return {
            "error": self.category,
            "message": self.message,
            "detail": self.detail or None,
        }


class UnknownScenario(ScenarioEngineError):
    """Referenced scenario does not exist."""

    category = "not_found"

    def __init__(self, scenario_id: str):
        super().__init__(f"Scenario not found: {scenario_id}", scenario_id=scenario_id)
        self.scenario_id = scenario_id


class CycleDetected(ScenarioEngineError):
    """Ancestor traversal revisited a scenario."""

    category = "structural"

    def __init__(self, scenario_id: str, path: list[str]):
        super().__init__(
            f"Cycle detected in scenario ancestry at {scenario_id}",
            scenario_id=scenario_id,
            path=path,
        )
        self.scenario_id = scenario_id
        self.path = path


class DepthExceeded(ScenarioEngineError):
    """Ancestor chain is deeper than the configured bound."""

    category = "structural"

    def __init__(self, scenario_id: str, max_depth: int):
        super().__init__(
            f"Scenario {scenario_id} exceeds maximum branch depth of {max_depth}",
            scenario_id=scenario_id,
            max_depth=max_depth,
        )
        self.scenario_id = scenario_id
        self.max_depth = max_depth


class NoParent(ScenarioEngineError):
    """Scenario has no parent to apply into."""

    category = "structural"

    def __init__(self, scenario_id: str):
        super().__init__(
            f"Scenario {scenario_id} has no parent scenario",
            scenario_id=scenario_id,
        )
        self.scenario_id = scenario_id


class Conflict(ScenarioEngineError):
    """Write was based on stale state or collides with the parent."""

    category = "conflict"


class AlreadyApplying(ScenarioEngineError):
    """Another apply for the same child scenario is in progress."""

    category = "conflict"

    def __init__(self, scenario_id: str):
        super().__init__(
            f"Scenario {scenario_id} is already being applied to its parent",
            scenario_id=scenario_id,
        )
        self.scenario_id = scenario_id


class StoreUnavailable(ScenarioEngineError):
    """Underlying store could not be reached."""

    category = "unavailable"

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class InvalidDelta(ScenarioEngineError, ValueError):
    """Delta or scenario payload failed validation."""

    category = "invalid"
