"""Pytest configuration and fixtures."""

import pytest
from httpx import ASGITransport, AsyncClient

from app.database import get_scenario_engine
from app.main import app
from src.branch_engine import InMemoryDeltaStore, Scenario, ScenarioEngine


@pytest.fixture
def assignment():
    """Factory for assignment payloads."""
    def make(allocation, person_id="p1", project_id="proj-1", role_id="dev", **extra):
        return {
            "project_id": project_id,
            "person_id": person_id,
            "role_id": role_id,
            "allocation_percentage": allocation,
            **extra,
        }
    return make


@pytest.fixture
def project():
    """Factory for project payloads."""
    def make(name, **extra):
        return {"name": name, **extra}
    return make


@pytest.fixture
def store():
    return InMemoryDeltaStore()


@pytest.fixture
def base_and_child(store):
    """Baseline 'base' with branch 'child' under it."""
    store.add_scenario(Scenario(id="base", name="Base", scenario_type="baseline"))
    store.add_scenario(Scenario(id="child", name="Child", parent_scenario_id="base"))
    return store


@pytest.fixture
def engine():
    """In-memory engine shared with the API under test."""
    return ScenarioEngine(InMemoryDeltaStore(), max_depth=16, cache_size=32)


@pytest.fixture
async def client(engine):
    """Async test client fixture."""
    app.dependency_overrides[get_scenario_engine] = lambda: engine
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()
