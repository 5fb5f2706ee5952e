"""Health check endpoints."""

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app import __version__
from app.database import get_scenario_engine
from src.branch_engine import ScenarioEngine, StoreUnavailable

logger = logging.getLogger(__name__)

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str


class ReadinessResponse(HealthResponse):
    """Readiness response with delta store status."""

    store: str
    database: str


@router.get("/health", response_model=HealthResponse)
def health_check() -> HealthResponse:
    """Basic health check."""
    return HealthResponse(status="ok", version=__version__)


@router.get("/health/ready", response_model=ReadinessResponse)
def readiness_check(
    engine: ScenarioEngine = Depends(get_scenario_engine),
) -> ReadinessResponse:
    """Readiness check: the scenario engine can reach its delta store."""
    try:
        engine.ping()
        db_status = "connected"
    except StoreUnavailable as e:
        logger.warning(
            "Store ping failed | store=%s error=%s",
            type(engine.store).__name__, e.cause,
        )
        db_status = "disconnected"

    return ReadinessResponse(
        status="ok" if db_status == "connected" else "degraded",
        version=__version__,
        store=type(engine.store).__name__,
        database=db_status,
    )
