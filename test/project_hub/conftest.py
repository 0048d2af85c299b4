"""
Shared fixtures for the Project Hub test suite.

Each test gets its own temporary SQLite database; API tests talk to the
FastAPI app through TestClient with the database dependency overridden, so
the lifespan (and its background worker) never starts.
"""

import sys
import tempfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Import project components
project_root = Path(__file__).parent.parent.parent / "src"
sys.path.insert(0, str(project_root))

from project_hub.api import app, get_database
from project_hub.database import ProjectDatabase


@pytest.fixture
def temp_db():
    """Create temporary database for testing."""
    with tempfile.NamedTemporaryFile(delete=False, suffix=".db") as f:
        db_path = f.name

    db = ProjectDatabase(db_path)
    yield db
    db.close()
    for suffix in ("", "-wal", "-shm"):
        Path(db_path + suffix).unlink(missing_ok=True)


@pytest.fixture
def client(temp_db):
    """TestClient bound to the temporary database."""
    app.dependency_overrides[get_database] = lambda: temp_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(temp_db):
    """Factory creating users directly in the database (no password hashing)."""
    counter = {"n": 0}

    def _make(name=None, role="member", email=None):
        counter["n"] += 1
        name = name or f"User {counter['n']}"
        email = email or f"user{counter['n']}@example.com"
        return temp_db.create_user(name, email, role=role)

    return _make
