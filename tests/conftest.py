"""
Pytest configuration and fixtures for relmap tests.

Every test that touches the store gets its own in-memory SQLite database with
the catalog schema from ``tests/utils/catalog_models.py`` already created.
"""

import os

# Keep settings deterministic regardless of a developer's .env
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ERROR_POLICY", "continue")

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from relmap.db.registry import EntityRegistry
from relmap.db.session import enable_sqlite_savepoints
from relmap.domain.loading.loader import RelationLoader
from tests.utils.catalog_models import CatalogBase


@pytest.fixture
def engine():
    """Fresh in-memory database with savepoint support and the catalog tables."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_savepoints(engine)
    CatalogBase.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    SessionLocal = sessionmaker(autocommit=False, autoflush=True, bind=engine)
    db = SessionLocal()
    try:
        yield db
    finally:
        db.rollback()
        db.close()


@pytest.fixture
def registry():
    return EntityRegistry(CatalogBase)


@pytest.fixture
def loader(session, registry):
    return RelationLoader(session, registry=registry)


@pytest.fixture
def statements(engine):
    """Record every SQL statement sent to the database during the test."""
    captured = []

    def _capture(conn, cursor, statement, parameters, context, executemany):
        captured.append(statement)

    event.listen(engine, "before_cursor_execute", _capture)
    yield captured
    event.remove(engine, "before_cursor_execute", _capture)
