"""Pytest configuration for the analytics core tests

WHAT: Shared fixtures for compiler, executor, legend and intent tests
WHY: Consistent test environment (no real PostgreSQL, no real OpenAI)
REFERENCES:
    - app/config.py: Settings read from the environment set here
    - app/models.py: Tables created on the SQLite engine
    - app/semantic/executor.py: Runs statements on test_db_session
"""

import os
import sys
from pathlib import Path
from typing import Generator
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.dialects import postgresql
from sqlalchemy.orm import Session, sessionmaker

# Ensure backend is in path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("OPENAI_API_KEY", "test-api-key")


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """In-memory SQLite engine with every relation created."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False}
    )

    from app.models import GEOMETRY_TABLES, Base
    # PostGIS geometry columns have no SQLite type
    tables = [t for t in Base.metadata.sorted_tables if t not in GEOMETRY_TABLES.values()]
    Base.metadata.create_all(bind=engine, tables=tables)

    yield engine

    Base.metadata.drop_all(bind=engine, tables=tables)


@pytest.fixture
def test_db_session(test_db_engine) -> Generator[Session, None, None]:
    """Test database session with rollback."""
    SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_db_engine
    )

    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# SQL rendering
# ============================================================================

@pytest.fixture
def render_pg():
    """Render a statement with the PostgreSQL dialect and inline literals."""
    def _render(statement) -> str:
        return str(statement.compile(dialect=postgresql.dialect(), compile_kwargs={"literal_binds": True}))
    return _render


@pytest.fixture
def compile_pg():
    """Compile with the PostgreSQL dialect, keeping bound parameters."""
    def _compile(statement):
        return statement.compile(dialect=postgresql.dialect())
    return _compile


# ============================================================================
# OpenAI Fixtures
# ============================================================================

@pytest.fixture
def mock_openai():
    """OpenAI client whose next completion returns `mock_openai.reply`."""
    client = MagicMock()

    def reply(content):
        message = MagicMock()
        message.content = content
        choice = MagicMock()
        choice.message = message
        response = MagicMock()
        response.choices = [choice]
        client.chat.completions.create.return_value = response

    client.reply = reply
    return client
