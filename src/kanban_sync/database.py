"""
Board Database Layer with Conditional Updates and Unique Edit Locks

Provides SQLite-based persistence with WAL mode for concurrent access. The two
serialization points of collaborative editing live here as SQL primitives so
they hold across processes sharing the database file:

- task versions are advanced only through a conditional UPDATE
  (``WHERE id = ? AND version = ?``), reporting whether a row changed
- edit locks are rows in ``task_locks`` with ``UNIQUE(task_id)``, so
  concurrent INSERTs resolve to exactly one winner
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import MUTABLE_TASK_FIELDS, TaskStatus

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def format_timestamp(moment: datetime) -> str:
    """Render a datetime as a fixed-width UTC string that sorts lexically."""
    return moment.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def utc_now_str() -> str:
    return format_timestamp(datetime.now(timezone.utc))


def _dumps(value: Optional[Dict[str, Any]]) -> Optional[str]:
    return None if value is None else json.dumps(value, default=str)


def _loads(text: Optional[str]) -> Any:
    if text is None:
        return None
    try:
        return json.loads(text)
    except (ValueError, TypeError):
        return {"_raw": text, "_parse_error": True}


class BoardDatabase:
    """
    SQLite persistence gateway for users, boards, tasks, locks, conflicts and
    action logs.

    Features:
    - WAL mode for concurrent read/write access
    - Compare-and-swap task updates on the version column
    - Insert-if-absent edit locks guarded by a unique constraint
    - Ordered cascade deletes (logs, locks, conflicts, tasks, board)
    - Thread-safe access through a single shared connection
    """

    def __init__(self, db_path: str):
        """
        Initialize BoardDatabase with SQLite WAL mode configuration.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self._connection_lock = threading.RLock()
        self._connection: Optional[sqlite3.Connection] = None

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_database()

    def _initialize_database(self, drop_existing: bool = False) -> None:
        """Open the connection, configure pragmas and create the schema.

        Args:
            drop_existing: If True, drops all existing tables first
        """
        try:
            # Autocommit mode; multi-statement steps use _transaction()
            self._connection = sqlite3.connect(
                str(self.db_path),
                isolation_level=None,
                check_same_thread=False
            )
            self._connection.row_factory = sqlite3.Row

            cursor = self._connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.execute("PRAGMA foreign_keys=ON")

            if drop_existing:
                self._drop_existing_tables()

            self._create_schema()

        except sqlite3.Error as e:
            raise RuntimeError(f"Failed to initialize database at {self.db_path}: {e}")

    def _create_schema(self) -> None:
        """Create database schema with indexes."""
        cursor = self._connection.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                email TEXT NOT NULL UNIQUE,
                role TEXT NOT NULL DEFAULT 'user' CHECK (role IN ('user', 'admin', 'contractor')),
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS boards (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                description TEXT,
                owner_user_id INTEGER,
                created_at TEXT NOT NULL,
                FOREIGN KEY (owner_user_id) REFERENCES users (id)
            )
        """)

        # No ON DELETE CASCADE: dependents are deleted explicitly, in order
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS tasks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                description TEXT,
                status TEXT NOT NULL DEFAULT 'Todo' CHECK (status IN ('Todo', 'In Progress', 'Done')),
                priority TEXT NOT NULL DEFAULT 'Medium' CHECK (priority IN ('Low', 'Medium', 'High')),
                assigned_user_id INTEGER,
                board_id INTEGER NOT NULL,
                created_by_id INTEGER NOT NULL,
                version INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (assigned_user_id) REFERENCES users (id),
                FOREIGN KEY (board_id) REFERENCES boards (id),
                FOREIGN KEY (created_by_id) REFERENCES users (id),
                UNIQUE (board_id, title)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS action_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                task_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                action_type TEXT NOT NULL,
                previous_value TEXT,
                new_value TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY (task_id) REFERENCES tasks (id),
                FOREIGN KEY (user_id) REFERENCES users (id),
                CONSTRAINT json_previous_value CHECK (previous_value IS NULL OR json_valid(previous_value)),
                CONSTRAINT json_new_value CHECK (new_value IS NULL OR json_valid(new_value))
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS task_conflicts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                task_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                server_version TEXT NOT NULL,
                client_version TEXT NOT NULL,
                resolved INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                FOREIGN KEY (task_id) REFERENCES tasks (id),
                FOREIGN KEY (user_id) REFERENCES users (id),
                CONSTRAINT json_server_version CHECK (json_valid(server_version)),
                CONSTRAINT json_client_version CHECK (json_valid(client_version))
            )
        """)

        # One row per task: the unique constraint is the lock.
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS task_locks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                task_id INTEGER NOT NULL UNIQUE,
                user_id INTEGER NOT NULL,
                user_name TEXT NOT NULL,
                locked_at TEXT NOT NULL,
                FOREIGN KEY (task_id) REFERENCES tasks (id),
                FOREIGN KEY (user_id) REFERENCES users (id)
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tasks_board_id ON tasks (board_id)")
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_tasks_assignee_status
            ON tasks (assigned_user_id, status)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_action_logs_created
            ON action_logs (created_at DESC, id DESC)
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_action_logs_task ON action_logs (task_id)")
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_conflicts_user_open
            ON task_conflicts (user_id, resolved)
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_task_locks_locked_at ON task_locks (locked_at)")

    def _drop_existing_tables(self) -> None:
        """Drop all tables in dependency order."""
        cursor = self._connection.cursor()
        cursor.execute("DROP TABLE IF EXISTS task_locks")
        cursor.execute("DROP TABLE IF EXISTS task_conflicts")
        cursor.execute("DROP TABLE IF EXISTS action_logs")
        cursor.execute("DROP TABLE IF EXISTS tasks")
        cursor.execute("DROP TABLE IF EXISTS boards")
        cursor.execute("DROP TABLE IF EXISTS users")

    @contextmanager
    def _transaction(self):
        """Context manager for explicit transaction control."""
        cursor = self._connection.cursor()
        try:
            cursor.execute("BEGIN")
            yield cursor
            cursor.execute("COMMIT")
        except Exception:
            cursor.execute("ROLLBACK")
            raise

    def ping(self) -> bool:
        """Run a trivial query; raises sqlite3.Error if the database is unusable."""
        with self._connection_lock:
            self._connection.execute("SELECT 1").fetchone()
            return True

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, name: str, email: str, role: str = "user") -> int:
        """Create a user and return its id."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                "INSERT INTO users (name, email, role, created_at) VALUES (?, ?, ?, ?)",
                (name, email, role, utc_now_str())
            )
            return cursor.lastrowid

    def get_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        with self._connection_lock:
            row = self._connection.execute(
                "SELECT id, name, email, role, created_at FROM users WHERE id = ?",
                (user_id,)
            ).fetchone()
            return dict(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        with self._connection_lock:
            row = self._connection.execute(
                "SELECT id, name, email, role, created_at FROM users WHERE email = ?",
                (email,)
            ).fetchone()
            return dict(row) if row else None

    def list_users(self) -> List[Dict[str, Any]]:
        with self._connection_lock:
            rows = self._connection.execute(
                "SELECT id, name, email, role, created_at FROM users ORDER BY id ASC"
            ).fetchall()
            return [dict(row) for row in rows]

    def find_least_loaded_user(self) -> Optional[Dict[str, Any]]:
        """
        Find the user with the fewest tasks not in the Done column.

        Ties are broken by ascending user id. Task counts span all boards.

        Returns:
            Dict with id, name and active_task_count, or None if there are no users
        """
        with self._connection_lock:
            row = self._connection.execute("""
                SELECT u.id, u.name, COUNT(t.id) AS active_task_count
                FROM users u
                LEFT JOIN tasks t ON t.assigned_user_id = u.id AND t.status != ?
                GROUP BY u.id, u.name
                ORDER BY active_task_count ASC, u.id ASC
                LIMIT 1
            """, (TaskStatus.DONE.value,)).fetchone()
            return dict(row) if row else None

    # ------------------------------------------------------------------
    # Boards
    # ------------------------------------------------------------------

    def create_board(self, name: str, description: Optional[str], owner_user_id: int) -> int:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                "INSERT INTO boards (name, description, owner_user_id, created_at) VALUES (?, ?, ?, ?)",
                (name, description, owner_user_id, utc_now_str())
            )
            return cursor.lastrowid

    def get_board(self, board_id: int) -> Optional[Dict[str, Any]]:
        with self._connection_lock:
            row = self._connection.execute("""
                SELECT b.id, b.name, b.description, b.owner_user_id, b.created_at,
                       u.name AS owner_name
                FROM boards b
                LEFT JOIN users u ON b.owner_user_id = u.id
                WHERE b.id = ?
            """, (board_id,)).fetchone()
            return dict(row) if row else None

    def get_board_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        with self._connection_lock:
            row = self._connection.execute(
                "SELECT id, name, description, owner_user_id, created_at FROM boards "
                "WHERE name = ? ORDER BY id ASC LIMIT 1",
                (name,)
            ).fetchone()
            return dict(row) if row else None

    def list_boards(self) -> List[Dict[str, Any]]:
        """List all boards, newest first, with owner name and task count."""
        with self._connection_lock:
            rows = self._connection.execute("""
                SELECT b.id, b.name, b.description, b.owner_user_id, b.created_at,
                       u.name AS owner_name, COUNT(t.id) AS task_count
                FROM boards b
                LEFT JOIN users u ON b.owner_user_id = u.id
                LEFT JOIN tasks t ON b.id = t.board_id
                GROUP BY b.id
                ORDER BY b.created_at DESC, b.id DESC
            """).fetchall()
            return [dict(row) for row in rows]

    def update_board(self, board_id: int, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Update name/description; returns the board or None if it does not exist."""
        allowed = {key: value for key, value in fields.items() if key in ("name", "description")}
        with self._connection_lock:
            if allowed:
                assignments = ", ".join(f"{key} = ?" for key in allowed)
                cursor = self._connection.cursor()
                cursor.execute(
                    f"UPDATE boards SET {assignments} WHERE id = ?",
                    (*allowed.values(), board_id)
                )
            return self.get_board(board_id)

    def delete_board(self, board_id: int) -> Optional[Dict[str, Any]]:
        """
        Delete a board and everything that depends on it.

        Deletion order: action logs, locks and conflicts of the board's tasks,
        then the tasks, then the board.

        Args:
            board_id: ID of the board to delete

        Returns:
            Dict with deletion statistics, or None if the board does not exist
        """
        with self._connection_lock:
            board = self.get_board(board_id)
            if not board:
                return None

            with self._transaction() as cursor:
                task_ids = [
                    row["id"] for row in cursor.execute(
                        "SELECT id FROM tasks WHERE board_id = ?", (board_id,)
                    ).fetchall()
                ]
                stats = {"logs": 0, "locks": 0, "conflicts": 0}
                if task_ids:
                    placeholders = ", ".join("?" for _ in task_ids)
                    for key, table in (("logs", "action_logs"),
                                       ("locks", "task_locks"),
                                       ("conflicts", "task_conflicts")):
                        cursor.execute(
                            f"DELETE FROM {table} WHERE task_id IN ({placeholders})",
                            task_ids
                        )
                        stats[key] = cursor.rowcount

                cursor.execute("DELETE FROM tasks WHERE board_id = ?", (board_id,))
                cursor.execute("DELETE FROM boards WHERE id = ?", (board_id,))

            return {
                "board_id": board_id,
                "board_name": board["name"],
                "deleted_task_ids": task_ids,
                "cascaded_tasks": len(task_ids),
                "cascaded_logs": stats["logs"],
                "cascaded_locks": stats["locks"],
                "cascaded_conflicts": stats["conflicts"],
            }

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    _TASK_SELECT = """
        SELECT t.id, t.title, t.description, t.status, t.priority,
               t.assigned_user_id, t.board_id, t.created_by_id, t.version,
               t.created_at, t.updated_at,
               a.name AS assigned_user_name, c.name AS creator_name
        FROM tasks t
        LEFT JOIN users a ON t.assigned_user_id = a.id
        LEFT JOIN users c ON t.created_by_id = c.id
    """

    def create_task(self, title: str, board_id: int, created_by_id: int,
                    description: Optional[str] = None, status: str = "Todo",
                    priority: str = "Medium",
                    assigned_user_id: Optional[int] = None) -> Dict[str, Any]:
        """Insert a task at version 1 and return its full row."""
        now = utc_now_str()
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                INSERT INTO tasks (title, description, status, priority, assigned_user_id,
                                   board_id, created_by_id, version, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
            """, (title, description, status, priority, assigned_user_id,
                  board_id, created_by_id, now, now))
            return self.get_task(cursor.lastrowid)

    def get_task(self, task_id: int) -> Optional[Dict[str, Any]]:
        with self._connection_lock:
            row = self._connection.execute(
                self._TASK_SELECT + " WHERE t.id = ?", (task_id,)
            ).fetchone()
            return dict(row) if row else None

    def list_board_tasks(self, board_id: int) -> List[Dict[str, Any]]:
        with self._connection_lock:
            rows = self._connection.execute(
                self._TASK_SELECT + " WHERE t.board_id = ? ORDER BY t.created_at DESC, t.id DESC",
                (board_id,)
            ).fetchall()
            return [dict(row) for row in rows]

    def task_title_exists(self, board_id: int, title: str,
                          exclude_task_id: Optional[int] = None) -> bool:
        with self._connection_lock:
            if exclude_task_id is None:
                row = self._connection.execute(
                    "SELECT 1 FROM tasks WHERE board_id = ? AND title = ?",
                    (board_id, title)
                ).fetchone()
            else:
                row = self._connection.execute(
                    "SELECT 1 FROM tasks WHERE board_id = ? AND title = ? AND id != ?",
                    (board_id, title, exclude_task_id)
                ).fetchone()
            return row is not None

    def update_task_fields(self, task_id: int, fields: Dict[str, Any],
                           expected_version: Optional[int] = None) -> Optional[Dict[str, Any]]:
        """
        Apply field changes and advance the version by exactly one.

        With ``expected_version`` the UPDATE only matches while the stored
        version still equals it, so two writers holding the same base version
        cannot both succeed.

        Args:
            task_id: Task to update
            fields: Mutable columns to set; other keys are ignored
            expected_version: Version the caller based its change on, or None

        Returns:
            Updated task row, or None when no row changed (missing task or
            version mismatch; the caller re-reads to tell them apart)
        """
        changes = {key: fields[key] for key in MUTABLE_TASK_FIELDS if key in fields}
        assignments = [f"{key} = ?" for key in changes]
        assignments.extend(["version = version + 1", "updated_at = ?"])
        params: List[Any] = list(changes.values())
        params.append(utc_now_str())

        query = f"UPDATE tasks SET {', '.join(assignments)} WHERE id = ?"
        params.append(task_id)
        if expected_version is not None:
            query += " AND version = ?"
            params.append(expected_version)

        with self._connection_lock:
            with self._transaction() as cursor:
                cursor.execute(query, params)
                if cursor.rowcount == 0:
                    return None
                row = cursor.execute(self._TASK_SELECT + " WHERE t.id = ?", (task_id,)).fetchone()
            return dict(row)

    def delete_task(self, task_id: int) -> Optional[Dict[str, Any]]:
        """
        Delete a task after its logs, locks and conflicts.

        Returns:
            The task row as it was before deletion, or None if it did not exist
        """
        with self._connection_lock:
            task = self.get_task(task_id)
            if not task:
                return None
            with self._transaction() as cursor:
                cursor.execute("DELETE FROM action_logs WHERE task_id = ?", (task_id,))
                cursor.execute("DELETE FROM task_locks WHERE task_id = ?", (task_id,))
                cursor.execute("DELETE FROM task_conflicts WHERE task_id = ?", (task_id,))
                cursor.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
            return task

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    def create_conflict(self, task_id: int, user_id: int,
                        server_version: Dict[str, Any],
                        client_version: Dict[str, Any]) -> int:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                INSERT INTO task_conflicts (task_id, user_id, server_version, client_version,
                                            resolved, created_at)
                VALUES (?, ?, ?, ?, 0, ?)
            """, (task_id, user_id, _dumps(server_version), _dumps(client_version), utc_now_str()))
            return cursor.lastrowid

    def _conflict_from_row(self, row: sqlite3.Row) -> Dict[str, Any]:
        conflict = dict(row)
        conflict["server_version"] = _loads(conflict["server_version"])
        conflict["client_version"] = _loads(conflict["client_version"])
        conflict["resolved"] = bool(conflict["resolved"])
        return conflict

    def get_conflict(self, conflict_id: int) -> Optional[Dict[str, Any]]:
        with self._connection_lock:
            row = self._connection.execute("""
                SELECT c.id, c.task_id, c.user_id, c.server_version, c.client_version,
                       c.resolved, c.created_at, t.title AS task_title, t.board_id
                FROM task_conflicts c
                LEFT JOIN tasks t ON c.task_id = t.id
                WHERE c.id = ?
            """, (conflict_id,)).fetchone()
            return self._conflict_from_row(row) if row else None

    def list_unresolved_conflicts(self, user_id: int) -> List[Dict[str, Any]]:
        """Unresolved conflicts raised for a user, newest first."""
        with self._connection_lock:
            rows = self._connection.execute("""
                SELECT c.id, c.task_id, c.user_id, c.server_version, c.client_version,
                       c.resolved, c.created_at, t.title AS task_title, t.board_id
                FROM task_conflicts c
                JOIN tasks t ON c.task_id = t.id
                WHERE c.user_id = ? AND c.resolved = 0
                ORDER BY c.created_at DESC, c.id DESC
            """, (user_id,)).fetchall()
            return [self._conflict_from_row(row) for row in rows]

    def count_unresolved_conflicts(self) -> int:
        with self._connection_lock:
            return self._connection.execute(
                "SELECT COUNT(*) FROM task_conflicts WHERE resolved = 0"
            ).fetchone()[0]

    def apply_conflict_resolution(self, conflict_id: int, task_id: int,
                                  fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Write the resolved task state and flip the conflict's resolved flag
        in one transaction. The conflict row itself is kept.

        Returns:
            Updated task row, or None if the task or the open conflict is gone
        """
        changes = {key: fields[key] for key in MUTABLE_TASK_FIELDS if key in fields}
        assignments = [f"{key} = ?" for key in changes]
        assignments.extend(["version = version + 1", "updated_at = ?"])
        params = [*changes.values(), utc_now_str(), task_id]

        with self._connection_lock:
            with self._transaction() as cursor:
                cursor.execute(
                    "UPDATE task_conflicts SET resolved = 1 WHERE id = ? AND resolved = 0",
                    (conflict_id,)
                )
                if cursor.rowcount == 0:
                    return None
                cursor.execute(f"UPDATE tasks SET {', '.join(assignments)} WHERE id = ?", params)
                if cursor.rowcount == 0:
                    raise LookupError(f"Task {task_id} disappeared during conflict resolution")
                row = cursor.execute(self._TASK_SELECT + " WHERE t.id = ?", (task_id,)).fetchone()
            return dict(row)

    # ------------------------------------------------------------------
    # Locks
    # ------------------------------------------------------------------

    def insert_lock(self, task_id: int, user_id: int, user_name: str) -> bool:
        """
        Insert a lock row if none exists for the task.

        Returns:
            True if this call created the lock, False if the task was already locked
        """
        with self._connection_lock:
            try:
                self._connection.execute(
                    "INSERT INTO task_locks (task_id, user_id, user_name, locked_at) VALUES (?, ?, ?, ?)",
                    (task_id, user_id, user_name, utc_now_str())
                )
                return True
            except sqlite3.IntegrityError:
                # Unique violation means another holder; anything else
                # (missing task or user) is re-raised.
                if self.get_lock(task_id) is not None:
                    return False
                raise

    def get_lock(self, task_id: int) -> Optional[Dict[str, Any]]:
        with self._connection_lock:
            row = self._connection.execute(
                "SELECT task_id, user_id, user_name, locked_at FROM task_locks WHERE task_id = ?",
                (task_id,)
            ).fetchone()
            return dict(row) if row else None

    def refresh_lock(self, task_id: int, user_id: int) -> bool:
        """Renew ``locked_at`` for the holder; False if they do not hold the lock."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                "UPDATE task_locks SET locked_at = ? WHERE task_id = ? AND user_id = ?",
                (utc_now_str(), task_id, user_id)
            )
            return cursor.rowcount > 0

    def delete_lock(self, task_id: int, user_id: int) -> bool:
        """Delete the lock only if ``user_id`` holds it."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                "DELETE FROM task_locks WHERE task_id = ? AND user_id = ?",
                (task_id, user_id)
            )
            return cursor.rowcount > 0

    def delete_locks_older_than(self, cutoff: str) -> List[Dict[str, Any]]:
        """
        Remove locks whose ``locked_at`` is before ``cutoff``.

        Args:
            cutoff: Timestamp string in TIMESTAMP_FORMAT

        Returns:
            The removed locks with their task's board_id
        """
        with self._connection_lock:
            with self._transaction() as cursor:
                rows = cursor.execute("""
                    SELECT l.task_id, l.user_id, l.user_name, l.locked_at, t.board_id
                    FROM task_locks l
                    JOIN tasks t ON l.task_id = t.id
                    WHERE l.locked_at < ?
                """, (cutoff,)).fetchall()
                expired = [dict(row) for row in rows]
                if expired:
                    cursor.execute("DELETE FROM task_locks WHERE locked_at < ?", (cutoff,))
            return expired

    def get_lock_statistics(self, cutoff: str) -> Dict[str, int]:
        """Count locks that are live versus awaiting the sweep."""
        with self._connection_lock:
            row = self._connection.execute("""
                SELECT
                    COUNT(*) AS total,
                    COALESCE(SUM(CASE WHEN locked_at < ? THEN 1 ELSE 0 END), 0) AS expired
                FROM task_locks
            """, (cutoff,)).fetchone()
            return {"active": row["total"] - row["expired"], "expired": row["expired"]}

    # ------------------------------------------------------------------
    # Action logs
    # ------------------------------------------------------------------

    _LOG_SELECT = """
        SELECT l.id, l.task_id, l.user_id, l.action_type, l.previous_value, l.new_value,
               l.created_at, t.title AS task_title, t.board_id, u.name AS user_name
        FROM action_logs l
        JOIN tasks t ON l.task_id = t.id
        LEFT JOIN users u ON l.user_id = u.id
    """

    def _log_from_row(self, row: sqlite3.Row) -> Dict[str, Any]:
        entry = dict(row)
        entry["previous_value"] = _loads(entry["previous_value"])
        entry["new_value"] = _loads(entry["new_value"])
        return entry

    def insert_action_log(self, task_id: int, user_id: int, action_type: str,
                          previous_value: Optional[Dict[str, Any]],
                          new_value: Optional[Dict[str, Any]]) -> int:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                INSERT INTO action_logs (task_id, user_id, action_type, previous_value,
                                         new_value, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (task_id, user_id, action_type, _dumps(previous_value), _dumps(new_value),
                  utc_now_str()))
            return cursor.lastrowid

    def get_action_log(self, log_id: int) -> Optional[Dict[str, Any]]:
        """Fetch one log entry enriched with task title and user name."""
        with self._connection_lock:
            row = self._connection.execute(
                self._LOG_SELECT + " WHERE l.id = ?", (log_id,)
            ).fetchone()
            return self._log_from_row(row) if row else None

    def get_recent_logs(self, limit: int, board_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Newest-first action log page, optionally limited to one board.

        Args:
            limit: Maximum number of entries
            board_id: Optional board filter

        Returns:
            List of enriched log entries
        """
        with self._connection_lock:
            if board_id is None:
                rows = self._connection.execute(
                    self._LOG_SELECT + " ORDER BY l.created_at DESC, l.id DESC LIMIT ?",
                    (limit,)
                ).fetchall()
            else:
                rows = self._connection.execute(
                    self._LOG_SELECT + " WHERE t.board_id = ? ORDER BY l.created_at DESC, l.id DESC LIMIT ?",
                    (board_id, limit)
                ).fetchall()
            return [self._log_from_row(row) for row in rows]

    def count_task_logs(self, task_id: int) -> int:
        with self._connection_lock:
            return self._connection.execute(
                "SELECT COUNT(*) FROM action_logs WHERE task_id = ?", (task_id,)
            ).fetchone()[0]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self):
        """Close database connection."""
        if self._connection:
            self._connection.close()
            self._connection = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def initialize_fresh(self) -> None:
        """Drop and recreate every table."""
        with self._connection_lock:
            self.close()
            self._initialize_database(drop_existing=True)
