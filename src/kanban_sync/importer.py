"""
YAML Seed Importer with UPSERT Logic

Loads users, boards and their tasks from a YAML document in one transaction.
Users are matched by email, boards by name, tasks by title within their
board. Existing tasks are updated in place and their version advances, so a
client editing the same task during an import sees a conflict rather than a
silent overwrite. Every created or updated task gets an action log entry;
locks and conflicts are never touched.

Example document::

    users:
      - {name: Alice, email: alice@example.com, role: admin}
      - {name: Bob, email: bob@example.com}
    boards:
      - name: Sprint 12
        owner: alice@example.com
        tasks:
          - title: Setup
            status: In Progress
            priority: High
            assignee: bob@example.com
"""

import sqlite3
from typing import Any, Dict, Optional

import yaml

from .database import BoardDatabase, utc_now_str
from .models import RESERVED_TITLES, ActionType, TaskPriority, TaskStatus, UserRole

_STATUSES = {status.value for status in TaskStatus}
_PRIORITIES = {priority.value for priority in TaskPriority}
_ROLES = {role.value for role in UserRole}


def import_seed(db: BoardDatabase, data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Import users, boards and tasks with UPSERT semantics.

    Args:
        db: BoardDatabase instance
        data: Parsed YAML document

    Returns:
        Dict with created/updated counters and per-item error messages

    Raises:
        ValueError: For malformed top-level structure
        RuntimeError: If the import transaction fails
    """
    now = utc_now_str()
    stats = {
        "users_created": 0,
        "users_updated": 0,
        "boards_created": 0,
        "boards_updated": 0,
        "tasks_created": 0,
        "tasks_updated": 0,
        "errors": [],
    }

    users = data.get("users") or []
    boards = data.get("boards") or []
    if not isinstance(users, list):
        raise ValueError("YAML 'users' must be a list")
    if not isinstance(boards, list):
        raise ValueError("YAML 'boards' must be a list")

    with db._connection_lock:
        cursor = db._connection.cursor()
        try:
            cursor.execute("BEGIN")

            for user_data in users:
                try:
                    created = _import_user(cursor, user_data, now)
                    stats["users_created" if created else "users_updated"] += 1
                except (ValueError, sqlite3.IntegrityError) as e:
                    stats["errors"].append(f"Failed to import user {_label(user_data, 'email')}: {e}")

            for board_data in boards:
                try:
                    board_id, owner_id, created = _import_board(cursor, board_data, now)
                    stats["boards_created" if created else "boards_updated"] += 1
                except (ValueError, sqlite3.IntegrityError) as e:
                    stats["errors"].append(f"Failed to import board {_label(board_data, 'name')}: {e}")
                    continue

                tasks = board_data.get("tasks") or []
                if not isinstance(tasks, list):
                    stats["errors"].append(f"Board {_label(board_data, 'name')}: 'tasks' must be a list")
                    continue

                for task_data in tasks:
                    try:
                        created = _import_task(db, cursor, task_data, board_id, owner_id, now)
                        stats["tasks_created" if created else "tasks_updated"] += 1
                    except (ValueError, sqlite3.IntegrityError) as e:
                        stats["errors"].append(f"Failed to import task {_label(task_data, 'title')}: {e}")

            cursor.execute("COMMIT")
        except Exception as e:
            cursor.execute("ROLLBACK")
            raise RuntimeError(f"Import transaction failed: {e}")

    return stats


def _label(item: Any, key: str) -> str:
    if isinstance(item, dict) and item.get(key):
        return f"'{item[key]}'"
    return "(unnamed)"


def _user_id_by_email(cursor: sqlite3.Cursor, email: Optional[str]) -> Optional[int]:
    if not email:
        return None
    row = cursor.execute("SELECT id FROM users WHERE email = ?", (email.strip().lower(),)).fetchone()
    if row is None:
        raise ValueError(f"Unknown user email '{email}'")
    return row["id"]


def _import_user(cursor: sqlite3.Cursor, user_data: Any, now: str) -> bool:
    if not isinstance(user_data, dict):
        raise ValueError("User data must be a dictionary")
    name = (user_data.get("name") or "").strip()
    email = (user_data.get("email") or "").strip().lower()
    role = user_data.get("role", UserRole.USER.value)
    if not name or "@" not in email:
        raise ValueError("User needs a 'name' and a valid 'email'")
    if role not in _ROLES:
        raise ValueError(f"Unknown role '{role}'")

    existing = cursor.execute("SELECT id FROM users WHERE email = ?", (email,)).fetchone()
    if existing is None:
        cursor.execute(
            "INSERT INTO users (name, email, role, created_at) VALUES (?, ?, ?, ?)",
            (name, email, role, now)
        )
        return True

    cursor.execute("UPDATE users SET name = ?, role = ? WHERE id = ?", (name, role, existing["id"]))
    return False


def _import_board(cursor: sqlite3.Cursor, board_data: Any, now: str):
    """Returns (board_id, owner_id, created)."""
    if not isinstance(board_data, dict):
        raise ValueError("Board data must be a dictionary")
    name = (board_data.get("name") or "").strip()
    if not name:
        raise ValueError("Board must have 'name' field")
    owner_id = _user_id_by_email(cursor, board_data.get("owner"))
    if owner_id is None:
        raise ValueError("Board must have an 'owner' email")
    description = board_data.get("description")

    existing = cursor.execute(
        "SELECT id FROM boards WHERE name = ? ORDER BY id ASC LIMIT 1", (name,)
    ).fetchone()
    if existing is None:
        cursor.execute(
            "INSERT INTO boards (name, description, owner_user_id, created_at) VALUES (?, ?, ?, ?)",
            (name, description, owner_id, now)
        )
        return cursor.lastrowid, owner_id, True

    if description is not None:
        cursor.execute("UPDATE boards SET description = ? WHERE id = ?", (description, existing["id"]))
    return existing["id"], owner_id, False


def _import_task(db: BoardDatabase, cursor: sqlite3.Cursor, task_data: Any, board_id: int,
                 owner_id: int, now: str) -> bool:
    """
    Import a single task keyed by (board, title).

    The write is logged as a create or update by the board owner, with the
    same before/after snapshots an API edit would record.
    """
    if not isinstance(task_data, dict):
        raise ValueError("Task data must be a dictionary")
    title = (task_data.get("title") or "").strip()
    if not title:
        raise ValueError("Task must have 'title' field")
    if title in RESERVED_TITLES:
        raise ValueError("Task title cannot match column names")

    status = task_data.get("status")
    priority = task_data.get("priority")
    if status is not None and status not in _STATUSES:
        raise ValueError(f"Unknown status '{status}'")
    if priority is not None and priority not in _PRIORITIES:
        raise ValueError(f"Unknown priority '{priority}'")
    assignee_id = _user_id_by_email(cursor, task_data.get("assignee"))
    description = task_data.get("description")

    existing = cursor.execute(
        "SELECT id FROM tasks WHERE board_id = ? AND title = ?", (board_id, title)
    ).fetchone()

    if existing is None:
        cursor.execute("""
            INSERT INTO tasks (title, description, status, priority, assigned_user_id,
                               board_id, created_by_id, version, created_at, updated_at)
            VALUES (?, ?, COALESCE(?, 'Todo'), COALESCE(?, 'Medium'), ?, ?, ?, 1, ?, ?)
        """, (title, description, status, priority, assignee_id, board_id, owner_id, now, now))
        task_id = cursor.lastrowid
        db.insert_action_log(task_id, owner_id, ActionType.CREATE.value, None, db.get_task(task_id))
        return True

    update_parts = ["version = version + 1", "updated_at = ?"]
    update_values = [now]
    for column, value in (("description", description), ("status", status),
                          ("priority", priority), ("assigned_user_id", assignee_id)):
        if value is not None:
            update_parts.append(f"{column} = ?")
            update_values.append(value)
    update_values.append(existing["id"])

    before = db.get_task(existing["id"])
    cursor.execute(f"UPDATE tasks SET {', '.join(update_parts)} WHERE id = ?", update_values)
    db.insert_action_log(
        existing["id"], owner_id, ActionType.UPDATE.value, before, db.get_task(existing["id"])
    )
    return False


def import_seed_from_file(db: BoardDatabase, yaml_file_path: str) -> Dict[str, Any]:
    """
    Import a seed document from a YAML file.

    Args:
        db: BoardDatabase instance
        yaml_file_path: Path to YAML file

    Returns:
        Dict with import results
    """
    try:
        with open(yaml_file_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise FileNotFoundError(f"YAML file not found: {yaml_file_path}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML format: {e}")

    if not isinstance(data, dict):
        raise ValueError("YAML file must contain a dictionary at root level")

    return import_seed(db, data)
