"""
Test suite for BoardDatabase.

Tests cover:
- Database initialization and schema constraints
- Compare-and-swap task updates
- Unique edit locks under concurrent acquirers
- Ordered board and task cascades
- Least-loaded user selection
"""

import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from kanban_sync.database import BoardDatabase, format_timestamp, parse_timestamp, utc_now_str


def _count(db, table):
    return db._connection.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


class TestInitialization:

    def test_wal_mode_and_pragmas(self, db):
        cursor = db._connection.cursor()
        assert cursor.execute("PRAGMA journal_mode").fetchone()[0].upper() == "WAL"
        assert cursor.execute("PRAGMA busy_timeout").fetchone()[0] == 5000
        assert cursor.execute("PRAGMA foreign_keys").fetchone()[0] == 1

    def test_schema_tables(self, db):
        rows = db._connection.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table'"
        ).fetchall()
        tables = {row[0] for row in rows}
        assert {"users", "boards", "tasks", "action_logs", "task_conflicts", "task_locks"} <= tables

    def test_reopen_keeps_data(self, db_path):
        with BoardDatabase(db_path) as first:
            first.create_user("Alice", "alice@example.com")
        with BoardDatabase(db_path) as second:
            assert second.get_user_by_email("alice@example.com")["name"] == "Alice"

    def test_initialize_fresh_drops_everything(self, db, users, task):
        db.initialize_fresh()
        assert db.list_users() == []
        assert db.get_task(task["id"]) is None

    def test_timestamps_sort_lexically(self):
        earlier = utc_now_str()
        later = format_timestamp(parse_timestamp(earlier).replace(microsecond=999999))
        assert earlier.endswith("Z")
        assert len(earlier) == len(later)
        assert parse_timestamp(earlier) <= parse_timestamp(later)


class TestConstraints:

    def test_user_email_is_unique(self, db, users):
        with pytest.raises(sqlite3.IntegrityError):
            db.create_user("Another Alice", "alice@example.com")

    def test_task_title_unique_within_board(self, db, users, board_id, task):
        with pytest.raises(sqlite3.IntegrityError):
            db.create_task("Setup", board_id, users["bob"])

    def test_same_title_allowed_on_other_board(self, db, users, task):
        other_board = db.create_board("Other", None, users["bob"])
        other = db.create_task("Setup", other_board, users["bob"])
        assert other["title"] == "Setup"

    def test_task_title_exists_excludes_self(self, db, board_id, task):
        assert db.task_title_exists(board_id, "Setup")
        assert not db.task_title_exists(board_id, "Setup", exclude_task_id=task["id"])

    def test_status_check_constraint(self, db, users, board_id):
        with pytest.raises(sqlite3.IntegrityError):
            db.create_task("Bad", board_id, users["alice"], status="Blocked")


class TestTaskUpdates:

    def test_new_task_starts_at_version_one(self, task):
        assert task["version"] == 1
        assert task["status"] == "Todo"
        assert task["priority"] == "Medium"
        assert task["creator_name"] == "Alice"

    def test_conditional_update_advances_version(self, db, task):
        updated = db.update_task_fields(task["id"], {"title": "Setup v2"}, expected_version=1)
        assert updated["version"] == 2
        assert updated["title"] == "Setup v2"

    def test_stale_conditional_update_changes_nothing(self, db, task):
        db.update_task_fields(task["id"], {"title": "Setup v2"}, expected_version=1)

        assert db.update_task_fields(task["id"], {"title": "Setup v3"}, expected_version=1) is None
        current = db.get_task(task["id"])
        assert current["title"] == "Setup v2"
        assert current["version"] == 2

    def test_unconditional_update_still_advances_version(self, db, task):
        updated = db.update_task_fields(task["id"], {"priority": "High"})
        assert updated["version"] == 2

    def test_update_missing_task_returns_none(self, db):
        assert db.update_task_fields(999, {"title": "Ghost"}, expected_version=1) is None

    def test_concurrent_writers_with_same_base_version(self, db, task):
        """Exactly one of several writers holding version 1 succeeds."""
        barrier = threading.Barrier(8)

        def write(n):
            barrier.wait()
            return db.update_task_fields(task["id"], {"description": f"writer {n}"}, expected_version=1)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(write, range(8)))

        assert sum(1 for result in results if result is not None) == 1
        assert db.get_task(task["id"])["version"] == 2


class TestLocks:

    def test_concurrent_acquirers_single_winner(self, db, task):
        user_ids = [db.create_user(f"User {n}", f"user{n}@example.com") for n in range(10)]
        barrier = threading.Barrier(len(user_ids))

        def acquire(user_id):
            barrier.wait()
            return db.insert_lock(task["id"], user_id, f"User {user_id}")

        with ThreadPoolExecutor(max_workers=len(user_ids)) as pool:
            results = list(pool.map(acquire, user_ids))

        assert results.count(True) == 1
        assert _count(db, "task_locks") == 1
        winner = user_ids[results.index(True)]
        assert db.get_lock(task["id"])["user_id"] == winner

    def test_refresh_never_adds_a_row(self, db, users, task):
        assert db.insert_lock(task["id"], users["bob"], "Bob")
        for _ in range(3):
            assert db.refresh_lock(task["id"], users["bob"])
        assert _count(db, "task_locks") == 1

    def test_refresh_by_non_holder_fails(self, db, users, task):
        db.insert_lock(task["id"], users["bob"], "Bob")
        assert not db.refresh_lock(task["id"], users["carol"])

    def test_insert_lock_for_missing_task_raises(self, db, users):
        with pytest.raises(sqlite3.IntegrityError):
            db.insert_lock(999, users["bob"], "Bob")

    def test_delete_lock_only_for_holder(self, db, users, task):
        db.insert_lock(task["id"], users["bob"], "Bob")
        assert not db.delete_lock(task["id"], users["carol"])
        assert db.delete_lock(task["id"], users["bob"])
        assert db.get_lock(task["id"]) is None

    def test_delete_locks_older_than(self, db, users, board_id, task):
        second = db.create_task("Deploy", board_id, users["alice"])
        db.insert_lock(task["id"], users["bob"], "Bob")
        db.insert_lock(second["id"], users["carol"], "Carol")
        db._connection.execute(
            "UPDATE task_locks SET locked_at = ? WHERE task_id = ?",
            ("2020-01-01T00:00:00.000000Z", task["id"])
        )

        expired = db.delete_locks_older_than("2021-01-01T00:00:00.000000Z")

        assert [lock["task_id"] for lock in expired] == [task["id"]]
        assert expired[0]["board_id"] == board_id
        assert db.get_lock(task["id"]) is None
        assert db.get_lock(second["id"]) is not None


class TestCascades:

    def _populate(self, db, users, task):
        db.insert_action_log(task["id"], users["alice"], "create", None, {"title": "Setup"})
        db.insert_lock(task["id"], users["bob"], "Bob")
        db.create_conflict(task["id"], users["carol"], task, {"title": "X", "base_version": 0})

    def test_delete_task_removes_dependents(self, db, users, task):
        self._populate(db, users, task)

        deleted = db.delete_task(task["id"])

        assert deleted["id"] == task["id"]
        assert db.get_task(task["id"]) is None
        for table in ("action_logs", "task_locks", "task_conflicts"):
            assert _count(db, table) == 0

    def test_delete_missing_task(self, db):
        assert db.delete_task(999) is None

    def test_delete_board_cascade(self, db, users, board_id, task):
        second = db.create_task("Deploy", board_id, users["alice"])
        self._populate(db, users, task)
        db.insert_action_log(second["id"], users["bob"], "create", None, {"title": "Deploy"})

        other_board = db.create_board("Keep", None, users["bob"])
        kept = db.create_task("Kept", other_board, users["bob"])
        db.insert_action_log(kept["id"], users["bob"], "create", None, {"title": "Kept"})

        stats = db.delete_board(board_id)

        assert stats["cascaded_tasks"] == 2
        assert stats["cascaded_logs"] == 2
        assert stats["cascaded_locks"] == 1
        assert stats["cascaded_conflicts"] == 1
        assert sorted(stats["deleted_task_ids"]) == sorted([task["id"], second["id"]])
        assert db.get_board(board_id) is None
        assert db.get_task(kept["id"]) is not None
        assert db.count_task_logs(kept["id"]) == 1

    def test_delete_board_with_no_tasks(self, db, board_id):
        stats = db.delete_board(board_id)
        assert stats["cascaded_tasks"] == 0
        assert db.get_board(board_id) is None

    def test_delete_missing_board(self, db):
        assert db.delete_board(999) is None

    def test_task_delete_without_cascade_is_refused(self, db, users, task):
        """Dependents are not cascaded by the schema itself."""
        db.insert_action_log(task["id"], users["alice"], "create", None, None)
        with pytest.raises(sqlite3.IntegrityError):
            db._connection.execute("DELETE FROM tasks WHERE id = ?", (task["id"],))


class TestQueries:

    def test_find_least_loaded_user(self, db, users, board_id):
        for n in range(2):
            db.create_task(f"A{n}", board_id, users["alice"], assigned_user_id=users["alice"])
        db.create_task("C0", board_id, users["alice"], assigned_user_id=users["carol"])

        candidate = db.find_least_loaded_user()

        assert candidate["id"] == users["bob"]
        assert candidate["active_task_count"] == 0

    def test_least_loaded_ignores_done_and_breaks_ties_by_id(self, db, users, board_id):
        db.create_task("B done", board_id, users["alice"], status="Done", assigned_user_id=users["bob"])
        db.create_task("C open", board_id, users["alice"], assigned_user_id=users["carol"])
        db.create_task("A open", board_id, users["alice"], assigned_user_id=users["alice"])

        # Alice and Carol have one open task each, Bob none
        assert db.find_least_loaded_user()["id"] == users["bob"]
        db.create_task("B open", board_id, users["alice"], assigned_user_id=users["bob"])
        assert db.find_least_loaded_user()["id"] == users["alice"]

    def test_find_least_loaded_user_without_users(self, db):
        assert db.find_least_loaded_user() is None

    def test_list_boards_with_counts(self, db, users, board_id, task):
        boards = db.list_boards()
        assert boards[0]["task_count"] == 1
        assert boards[0]["owner_name"] == "Alice"

    def test_recent_logs_newest_first(self, db, users, task):
        ids = [
            db.insert_action_log(task["id"], users["alice"], "update", {"n": n}, {"n": n + 1})
            for n in range(25)
        ]

        recent = db.get_recent_logs(20)

        assert [entry["id"] for entry in recent] == list(reversed(ids))[:20]
        assert recent[0]["user_name"] == "Alice"
        assert recent[0]["task_title"] == "Setup"
        assert recent[0]["new_value"] == {"n": 25}

    def test_recent_logs_board_filter(self, db, users, board_id, task):
        other_board = db.create_board("Other", None, users["bob"])
        other = db.create_task("Other task", other_board, users["bob"])
        db.insert_action_log(task["id"], users["alice"], "create", None, None)
        db.insert_action_log(other["id"], users["bob"], "create", None, None)

        entries = db.get_recent_logs(20, board_id=other_board)

        assert [entry["task_id"] for entry in entries] == [other["id"]]

    def test_conflict_round_trip(self, db, users, task):
        conflict_id = db.create_conflict(task["id"], users["bob"], task, {"title": "Mine", "base_version": 0})

        conflict = db.get_conflict(conflict_id)

        assert conflict["resolved"] is False
        assert conflict["server_version"]["title"] == "Setup"
        assert conflict["client_version"] == {"title": "Mine", "base_version": 0}
        assert conflict["task_title"] == "Setup"
        assert [c["id"] for c in db.list_unresolved_conflicts(users["bob"])] == [conflict_id]
        assert db.list_unresolved_conflicts(users["carol"]) == []
