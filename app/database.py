"""Database engine, sessions and the shared scenario engine."""

import logging
from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from app.config import settings
from src.branch_engine import ScenarioEngine
from src.branch_engine.sql_store import SqlDeltaStore

logger = logging.getLogger(__name__)


@lru_cache
def get_engine() -> Engine:
    """Create the SQLAlchemy engine on first use."""
    logger.info("Creating database engine | env=%s", settings.app_env)
    return create_engine(
        settings.database_url,
        pool_pre_ping=True,
        echo=settings.debug,
    )


@lru_cache
def get_session_factory() -> sessionmaker:
    return sessionmaker(bind=get_engine(), autoflush=False)


@lru_cache
def get_scenario_engine() -> ScenarioEngine:
    """Dependency returning the process-wide scenario engine."""
    return ScenarioEngine(
        SqlDeltaStore(get_session_factory()),
        max_depth=settings.max_resolution_depth,
        cache_size=settings.resolution_cache_size,
    )
