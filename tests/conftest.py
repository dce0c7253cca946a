"""
Shared fixtures: an isolated in-memory database per test, the SQL store over
it, a realtime hub and scoped settings.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("LOG_TO_FILE", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import order_desk.models  # noqa: F401
from order_desk.config import Settings
from order_desk.connectors.realtime import RealtimeHub
from order_desk.connectors.sql_store import SqlStore
from order_desk.models.base import Base
from order_desk.services.schema_resolver import ResolvedSchema
from order_desk.utils.cache import clear_cache


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def hub():
    return RealtimeHub()


@pytest.fixture
def store(session_factory, hub):
    return SqlStore(session_factory, hub)


@pytest.fixture
def settings():
    return Settings(require_scope=True, bulk_chunk_size=2, log_to_file=False)


@pytest.fixture
def schema():
    return ResolvedSchema()


@pytest.fixture(autouse=True)
def _fresh_cache():
    clear_cache()
    yield
    clear_cache()
