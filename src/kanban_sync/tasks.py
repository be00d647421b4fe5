"""
Task and board operations.

Thin glue over the persistence gateway: each mutation goes through the
VersionGuard, is recorded by the ActionLogRecorder and published on the
board channel once the write has committed.
"""

import logging
import sqlite3
from typing import Any, Dict, List, Optional

from .action_log import ActionLogRecorder
from .broadcaster import (
    TASK_ASSIGNED, TASK_CREATED, TASK_DELETED, TASK_STATUS_CHANGED, TASK_UPDATED,
    ConnectionManager,
)
from .components import BoardComponent
from .database import BoardDatabase
from .exceptions import NotFoundError, ValidationError
from .models import ActionType, TaskStatus
from .version_guard import VersionGuard, validate_task_fields

logger = logging.getLogger(__name__)


class TaskService(BoardComponent):
    """Create, edit, move, assign and delete tasks."""

    def __init__(self, database: BoardDatabase, broadcaster: Optional[ConnectionManager],
                 action_log: ActionLogRecorder, guard: VersionGuard):
        super().__init__(database, broadcaster)
        self.action_log = action_log
        self.guard = guard

    def _require_board(self, board_id: int) -> Dict[str, Any]:
        board = self.db.get_board(board_id)
        if board is None:
            raise NotFoundError(f"Board {board_id} not found")
        return board

    async def create(self, title: str, board_id: int, created_by_id: int,
                     description: Optional[str] = None,
                     status: str = TaskStatus.TODO.value,
                     priority: str = "Medium",
                     assigned_user_id: Optional[int] = None) -> Dict[str, Any]:
        """
        Create a task at version 1.

        Raises:
            NotFoundError: board or creator does not exist
            ValidationError: title, status, priority or assignee rejected
        """
        self._require_board(board_id)
        self._require_user(created_by_id)

        fields = {
            "title": title,
            "description": description,
            "status": status,
            "priority": priority,
            "assigned_user_id": assigned_user_id,
        }
        validate_task_fields(self.db, board_id, fields)

        try:
            task = self.db.create_task(board_id=board_id, created_by_id=created_by_id, **fields)
        except sqlite3.IntegrityError as e:
            raise ValidationError(f"Task creation rejected: {e}")

        logger.info(f"Task {task['id']} '{title}' created on board {board_id} by user {created_by_id}")
        await self.action_log.record(task["id"], created_by_id, ActionType.CREATE, None, task)
        await self._publish(board_id, TASK_CREATED, task)
        return task

    def get(self, task_id: int) -> Dict[str, Any]:
        return self._require_task(task_id)

    def list_board(self, board_id: int) -> List[Dict[str, Any]]:
        self._require_board(board_id)
        return self.db.list_board_tasks(board_id)

    async def update(self, task_id: int, user_id: int, fields: Dict[str, Any],
                     base_version: Optional[int] = None) -> Dict[str, Any]:
        """
        Edit task fields behind the version check.

        Args:
            task_id: Task to edit
            user_id: Acting user
            fields: Fields the client sent; absent fields stay unchanged
            base_version: Version the client edited, or None for an unconditional write
        """
        self._require_user(user_id)
        if not fields:
            raise ValidationError("No task fields to update")
        before, after = await self.guard.apply(task_id, user_id, fields, base_version)
        await self.action_log.record(task_id, user_id, ActionType.UPDATE, before, after)
        await self._publish(after["board_id"], TASK_UPDATED, after)
        return after

    async def change_status(self, task_id: int, status: str, user_id: int,
                            base_version: Optional[int] = None) -> Dict[str, Any]:
        """Move a task to another column (the side effect of a drag and drop)."""
        self._require_user(user_id)
        before, after = await self.guard.apply(task_id, user_id, {"status": status}, base_version)

        await self.action_log.record(
            task_id, user_id, ActionType.STATUS_CHANGE,
            {"status": before["status"]}, {"status": after["status"]}
        )
        await self._publish(after["board_id"], TASK_STATUS_CHANGED, {
            "task": after,
            "old_status": before["status"],
            "new_status": after["status"],
            "user_id": user_id,
        })
        return after

    async def assign(self, task_id: int, assignee_id: int, user_id: int,
                     base_version: Optional[int] = None) -> Dict[str, Any]:
        """
        Assign a task to ``assignee_id`` on behalf of ``user_id``.

        Raises:
            NotFoundError: task, assignee or acting user does not exist
        """
        self._require_task(task_id)
        self._require_user(assignee_id)
        self._require_user(user_id)

        before, after = await self.guard.apply(
            task_id, user_id, {"assigned_user_id": assignee_id}, base_version
        )
        await self.action_log.record(
            task_id, user_id, ActionType.ASSIGN,
            {"assigned_user_id": before["assigned_user_id"]},
            {"assigned_user_id": after["assigned_user_id"]}
        )
        await self._publish(after["board_id"], TASK_ASSIGNED, {
            "task": after,
            "assigned_user_id": after["assigned_user_id"],
            "assigned_user_name": after["assigned_user_name"],
            "user_id": user_id,
            "smart": False,
        })
        return after

    async def smart_assign(self, task_id: int, user_id: int) -> Dict[str, Any]:
        """
        Assign a task to the user with the fewest unfinished tasks.

        Counts span all boards; ties go to the lowest user id.

        Returns:
            The updated task with a human-readable ``message``
        """
        self._require_task(task_id)
        self._require_user(user_id)

        candidate = self.db.find_least_loaded_user()
        if candidate is None:
            raise NotFoundError("No users available for assignment")

        before, after = await self.guard.apply(task_id, user_id, {"assigned_user_id": candidate["id"]})
        logger.info(
            f"Task {task_id} smart-assigned to user {candidate['id']} "
            f"({candidate['active_task_count']} active tasks)"
        )

        await self.action_log.record(
            task_id, user_id, ActionType.SMART_ASSIGN,
            {"assigned_user_id": before["assigned_user_id"]},
            {"assigned_user_id": candidate["id"]}
        )
        await self._publish(after["board_id"], TASK_ASSIGNED, {
            "task": after,
            "assigned_user_id": candidate["id"],
            "assigned_user_name": candidate["name"],
            "user_id": user_id,
            "smart": True,
        })

        result = dict(after)
        result["message"] = (
            f"Task smartly assigned to {candidate['name']} who has "
            f"{candidate['active_task_count']} active tasks"
        )
        return result

    async def delete(self, task_id: int, user_id: int) -> Dict[str, Any]:
        """Delete a task together with its logs, locks and conflicts."""
        self._require_user(user_id)
        task = self.db.delete_task(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")

        logger.info(f"Task {task_id} deleted by user {user_id}")
        await self.action_log.record_deletion(task, user_id)
        await self._publish(task["board_id"], TASK_DELETED, {"task_id": task_id, "user_id": user_id})
        return {"message": "Task deleted successfully", "task_id": task_id}


class BoardService(BoardComponent):
    """Board CRUD with the ordered cascade on delete."""

    def create(self, name: str, owner_user_id: int, description: Optional[str] = None) -> Dict[str, Any]:
        self._require_user(owner_user_id)
        board_id = self.db.create_board(name, description, owner_user_id)
        logger.info(f"Board {board_id} '{name}' created by user {owner_user_id}")
        return self.db.get_board(board_id)

    def list(self) -> List[Dict[str, Any]]:
        return self.db.list_boards()

    def get(self, board_id: int) -> Dict[str, Any]:
        board = self.db.get_board(board_id)
        if board is None:
            raise NotFoundError(f"Board {board_id} not found")
        return board

    def view(self, board_id: int) -> Dict[str, Any]:
        """Board plus its tasks grouped by status column, in column order."""
        board = self.get(board_id)
        columns: Dict[str, List[Dict[str, Any]]] = {status.value: [] for status in TaskStatus}
        for task in self.db.list_board_tasks(board_id):
            columns.setdefault(task["status"], []).append(task)
        return {"board": board, "tasks": columns}

    def update(self, board_id: int, fields: Dict[str, Any]) -> Dict[str, Any]:
        board = self.db.update_board(board_id, fields)
        if board is None:
            raise NotFoundError(f"Board {board_id} not found")
        return board

    async def delete(self, board_id: int, user_id: Optional[int] = None) -> Dict[str, Any]:
        """
        Delete a board, its tasks and everything attached to them.

        Subscribers of the board channel get one ``task-deleted`` per task.
        """
        stats = self.db.delete_board(board_id)
        if stats is None:
            raise NotFoundError(f"Board {board_id} not found")

        logger.info(
            f"Board {board_id} deleted: {stats['cascaded_tasks']} tasks, "
            f"{stats['cascaded_logs']} logs, {stats['cascaded_locks']} locks, "
            f"{stats['cascaded_conflicts']} conflicts"
        )
        for task_id in stats["deleted_task_ids"]:
            await self._publish(board_id, TASK_DELETED, {
                "task_id": task_id,
                "user_id": user_id,
                "reason": "board_deleted",
            })
        return stats
