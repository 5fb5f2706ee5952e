"""
Scenario branching endpoints.

Thin HTTP layer over the scenario engine: delta edits, resolution,
comparison and apply-to-parent. Handlers are plain ``def`` so the blocking
store calls run in FastAPI's threadpool.
"""

import logging
from typing import Any, NoReturn, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field

from app.database import get_scenario_engine
from src.branch_engine import (
    ApplyConflict,
    ConflictPolicy,
    DeltaRecord,
    Diff,
    EntityType,
    ResolvedScenario,
    Scenario,
    ScenarioEngine,
    ScenarioEngineError,
    ScenarioStatus,
    ScenarioType,
)
from src.branch_engine.models import DeltaWrite

logger = logging.getLogger(__name__)

router = APIRouter()

CATEGORY_STATUS = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "conflict": status.HTTP_409_CONFLICT,
    "structural": 422,
    "invalid": 422,
    "unavailable": status.HTTP_503_SERVICE_UNAVAILABLE,
}


# --- Request/Response Models ---

class ScenarioCreateRequest(BaseModel):
    """Register a scenario in the branch tree."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": "hiring-freeze",
                "name": "Hiring freeze Q3",
                "scenario_type": "branch",
                "parent_scenario_id": "baseline-2025",
            }
        }
    )

    id: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=255)
    scenario_type: ScenarioType = ScenarioType.BRANCH
    status: ScenarioStatus = ScenarioStatus.DRAFT
    parent_scenario_id: Optional[str] = None
    description: Optional[str] = None


class DeleteDeltaResponse(BaseModel):
    deleted: bool


class ApplyRequest(BaseModel):
    """Options for applying a scenario to its parent."""

    on_conflict: ConflictPolicy = Field(
        default=ConflictPolicy.OVERWRITE,
        description="'overwrite' replaces parent records, 'fail' aborts on divergence"
    )


class ApplyResponse(BaseModel):
    scenario_id: str
    parent_scenario_id: str
    applied_count: int


class ErrorResponse(BaseModel):
    """Error response model."""

    error: str = Field(description="Error category")
    message: str = Field(description="Error message")
    detail: Any = Field(default=None, description="Additional error details")


ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    404: {"model": ErrorResponse, "description": "Scenario not found"},
    409: {"model": ErrorResponse, "description": "Conflicting write or apply"},
    422: {"model": ErrorResponse, "description": "Invalid input or broken tree"},
    503: {"model": ErrorResponse, "description": "Store unavailable"},
}


def _raise_http(exc: ScenarioEngineError) -> NoReturn:
    status_code = CATEGORY_STATUS.get(
        exc.category, status.HTTP_500_INTERNAL_SERVER_ERROR
    )
    if status_code >= 500:
        logger.error("Engine failure | category=%s message=%s", exc.category, exc.message)
    else:
        logger.info("Request rejected | category=%s message=%s", exc.category, exc.message)
    raise HTTPException(status_code=status_code, detail=exc.to_dict()) from exc


# --- Endpoints ---

@router.post(
    "",
    response_model=Scenario,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
    summary="Register a scenario",
)
def create_scenario(
    request: ScenarioCreateRequest,
    engine: ScenarioEngine = Depends(get_scenario_engine),
) -> Scenario:
    try:
        scenario = Scenario(**request.model_dump())
    except ValueError as e:
        raise HTTPException(
            status_code=422,
            detail={"error": "validation_error", "message": str(e)},
        )

    try:
        return engine.add_scenario(scenario)
    except ScenarioEngineError as e:
        _raise_http(e)


@router.get("/{scenario_id}", response_model=Scenario, responses=ERROR_RESPONSES)
def get_scenario(
    scenario_id: str,
    engine: ScenarioEngine = Depends(get_scenario_engine),
) -> Scenario:
    try:
        return engine.get_scenario(scenario_id)
    except ScenarioEngineError as e:
        _raise_http(e)


@router.get(
    "/{scenario_id}/deltas",
    response_model=list[DeltaRecord],
    responses=ERROR_RESPONSES,
    summary="List the deltas a scenario owns",
)
def list_deltas(
    scenario_id: str,
    engine: ScenarioEngine = Depends(get_scenario_engine),
) -> list[DeltaRecord]:
    try:
        return engine.get_deltas(scenario_id)
    except ScenarioEngineError as e:
        _raise_http(e)


@router.put(
    "/{scenario_id}/deltas/{entity_type}/{entity_id}",
    response_model=DeltaRecord,
    responses=ERROR_RESPONSES,
    summary="Record an add, override or remove",
    description="""
Upserts the single delta for this (scenario, entity) pair. A later write
replaces the earlier one; there is no per-edit history.

Pass `expected_updated_at` (the `updated_at` you last read) to get a 409
instead of silently overwriting someone else's edit.
""",
)
def put_delta(
    scenario_id: str,
    entity_type: EntityType,
    entity_id: str,
    request: DeltaWrite,
    engine: ScenarioEngine = Depends(get_scenario_engine),
) -> DeltaRecord:
    logger.info(
        "Writing delta | scenario=%s %s=%s op=%s",
        scenario_id, entity_type.value, entity_id, request.operation.value,
    )
    try:
        return engine.put_delta(
            scenario_id,
            entity_type,
            entity_id,
            request.operation,
            request.payload,
            request.expected_updated_at,
        )
    except ScenarioEngineError as e:
        _raise_http(e)


@router.delete(
    "/{scenario_id}/deltas/{entity_type}/{entity_id}",
    response_model=DeleteDeltaResponse,
    responses=ERROR_RESPONSES,
)
def delete_delta(
    scenario_id: str,
    entity_type: EntityType,
    entity_id: str,
    engine: ScenarioEngine = Depends(get_scenario_engine),
) -> DeleteDeltaResponse:
    try:
        return DeleteDeltaResponse(
            deleted=engine.delete_delta(scenario_id, entity_type, entity_id)
        )
    except ScenarioEngineError as e:
        _raise_http(e)


@router.get(
    "/{scenario_id}/resolved",
    response_model=ResolvedScenario,
    responses=ERROR_RESPONSES,
    summary="Effective projects and assignments of a scenario",
)
def resolve_scenario(
    scenario_id: str,
    engine: ScenarioEngine = Depends(get_scenario_engine),
) -> ResolvedScenario:
    try:
        return engine.resolve(scenario_id)
    except ScenarioEngineError as e:
        _raise_http(e)


@router.get(
    "/{scenario_a}/compare/{scenario_b}",
    response_model=Diff,
    responses=ERROR_RESPONSES,
    summary="Diff two scenarios",
    description="""
Entities only in `scenario_b` are **added**, only in `scenario_a` are
**removed**, and entities whose canonical fields differ are **modified**.
The `impact` summary is folded from those items.
""",
)
def compare_scenarios(
    scenario_a: str,
    scenario_b: str,
    engine: ScenarioEngine = Depends(get_scenario_engine),
) -> Diff:
    try:
        return engine.compare(scenario_a, scenario_b)
    except ScenarioEngineError as e:
        _raise_http(e)


@router.get(
    "/{scenario_id}/apply/conflicts",
    response_model=list[ApplyConflict],
    responses=ERROR_RESPONSES,
    summary="Preview parent records an apply would overwrite",
)
def apply_conflicts(
    scenario_id: str,
    engine: ScenarioEngine = Depends(get_scenario_engine),
) -> list[ApplyConflict]:
    try:
        return engine.detect_apply_conflicts(scenario_id)
    except ScenarioEngineError as e:
        _raise_http(e)


@router.post(
    "/{scenario_id}/apply",
    response_model=ApplyResponse,
    responses=ERROR_RESPONSES,
    summary="Fold a scenario's deltas into its parent",
)
def apply_scenario(
    scenario_id: str,
    request: Optional[ApplyRequest] = None,
    engine: ScenarioEngine = Depends(get_scenario_engine),
) -> ApplyResponse:
    request = request or ApplyRequest()
    try:
        scenario = engine.get_scenario(scenario_id)
        applied = engine.apply_to_parent(scenario_id, request.on_conflict)
    except ScenarioEngineError as e:
        _raise_http(e)

    return ApplyResponse(
        scenario_id=scenario_id,
        parent_scenario_id=scenario.parent_scenario_id,
        applied_count=applied,
    )
