"""FastAPI application entry point."""

import logging

from fastapi import FastAPI

from app import __version__
from app.api import health, scenarios
from app.config import settings

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(
    title="Scenario Planner",
    description="What-if branching, comparison and apply for resource plans",
    version=__version__,
)

app.include_router(health.router, tags=["health"])
app.include_router(scenarios.router, prefix="/scenarios", tags=["scenarios"])
