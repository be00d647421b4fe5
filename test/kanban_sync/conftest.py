"""
Shared fixtures for kanban-sync tests.

Every test gets its own temporary SQLite database. Components are wired the
same way the application wires them, with a MagicMock ConnectionManager whose
``broadcast_to_board`` is an AsyncMock so published events can be asserted.
"""

import os
import tempfile
from unittest.mock import AsyncMock, MagicMock

import pytest

from kanban_sync.action_log import ActionLogRecorder
from kanban_sync.broadcaster import ConnectionManager
from kanban_sync.conflicts import ConflictResolver
from kanban_sync.database import BoardDatabase
from kanban_sync.locks import LockManager
from kanban_sync.monitoring import performance_monitor
from kanban_sync.tasks import BoardService, TaskService
from kanban_sync.version_guard import VersionGuard


@pytest.fixture
def db_path():
    fd, path = tempfile.mkstemp(suffix=".db", prefix="test_kanban_")
    os.close(fd)
    yield path
    for suffix in ("", "-wal", "-shm"):
        if os.path.exists(path + suffix):
            os.unlink(path + suffix)


@pytest.fixture
def db(db_path):
    """Create temporary database for testing."""
    database = BoardDatabase(db_path)
    yield database
    database.close()


@pytest.fixture(autouse=True)
def reset_performance_monitor():
    performance_monitor.reset()
    yield
    performance_monitor.reset()


@pytest.fixture
def broadcaster():
    """Mock ConnectionManager for isolated testing."""
    manager = MagicMock(spec=ConnectionManager)
    manager.broadcast_to_board = AsyncMock(return_value=1)
    return manager


@pytest.fixture
def users(db):
    """Alice (1), Bob (2) and Carol (3)."""
    return {
        "alice": db.create_user("Alice", "alice@example.com", "admin"),
        "bob": db.create_user("Bob", "bob@example.com"),
        "carol": db.create_user("Carol", "carol@example.com"),
    }


@pytest.fixture
def board_id(db, users):
    return db.create_board("Sprint 12", "Current sprint", users["alice"])


@pytest.fixture
def task(db, users, board_id):
    return db.create_task("Setup", board_id, users["alice"], description="Install toolchain")


@pytest.fixture
def action_log(db, broadcaster):
    return ActionLogRecorder(db, broadcaster)


@pytest.fixture
def guard(db, broadcaster):
    return VersionGuard(db, broadcaster)


@pytest.fixture
def task_service(db, broadcaster, action_log, guard):
    return TaskService(db, broadcaster, action_log, guard)


@pytest.fixture
def board_service(db, broadcaster):
    return BoardService(db, broadcaster)


@pytest.fixture
def lock_manager(db, broadcaster):
    return LockManager(db, broadcaster, ttl_seconds=300)


@pytest.fixture
def resolver(db, broadcaster, action_log):
    return ConflictResolver(db, broadcaster, action_log)
