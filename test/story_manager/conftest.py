"""
Shared fixtures for the Story Manager test suite.

Every test gets its own temporary SQLite file; the seeded fixtures build the
small project most tests start from:

    project P, epic 1, story P:1-1 with root tasks
        1 "Write schema" (subtasks 1 "tables", 2 "indexes")
        2 "Write queries"
"""

import os
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from story_manager.api import ConnectionManager
from story_manager.database import StoryDatabase


@pytest.fixture
def db_path():
    """Path of a fresh temporary database file, removed afterwards."""
    fd, path = tempfile.mkstemp(suffix='.db')
    os.close(fd)
    yield path
    for suffix in ('', '-wal', '-shm'):
        Path(path + suffix).unlink(missing_ok=True)


@pytest.fixture
def temp_db(db_path):
    db = StoryDatabase(db_path)
    yield db
    db.close()


@pytest.fixture
def seeded_db(temp_db):
    temp_db.register_project("P", "Project P", "/tmp/p")
    result = temp_db.create_story(
        "P", 1, "1-1", "First story",
        description="Schema work",
        acceptance_criteria=[{"criterion": "Tables exist"}],
        tasks=[
            {"description": "Write schema", "subtasks": ["tables", "indexes"]},
            {"description": "Write queries"},
        ],
    )
    assert result["success"], result
    return temp_db


@pytest.fixture
def story_id(seeded_db):
    return "P:1-1"


@pytest.fixture
def mock_websocket_manager():
    """Mock ConnectionManager whose broadcasts can be inspected."""
    manager = MagicMock(spec=ConnectionManager)
    manager.broadcast = AsyncMock()
    return manager
