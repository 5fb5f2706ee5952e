"""Health endpoint tests."""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app import __version__
from app.database import get_scenario_engine
from app.main import app
from src.branch_engine import ScenarioEngine
from src.branch_engine.sql_store import SqlDeltaStore


@pytest.mark.asyncio
async def test_health_check(client):
    """Test basic health check endpoint."""
    response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["version"] == __version__


@pytest.mark.asyncio
async def test_readiness_check_connected(client):
    """Readiness reports the engine's store as reachable."""
    response = await client.get("/health/ready")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["store"] == "InMemoryDeltaStore"
    assert data["database"] == "connected"


@pytest.mark.asyncio
async def test_readiness_check_unreachable_store(client, tmp_path):
    """An unreachable SQL store degrades readiness instead of failing."""
    engine = create_engine(f"sqlite:///{tmp_path / 'missing' / 'db.sqlite'}")
    unreachable = ScenarioEngine(SqlDeltaStore(sessionmaker(bind=engine)))
    app.dependency_overrides[get_scenario_engine] = lambda: unreachable

    response = await client.get("/health/ready")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "degraded"
    assert data["store"] == "SqlDeltaStore"
    assert data["database"] == "disconnected"
