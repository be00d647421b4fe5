"""
Version Guard: optimistic concurrency for task mutations.

A client that read a task at version N submits its change with base version
N. The change is written only if the stored version is still N, and the same
UPDATE advances it to N+1. Any other outcome leaves the task untouched and
persists a Conflict row holding the full server state and the rejected
payload, so the client can show a diff and later resolve it.

The version counter is used for this compare-and-swap only.
"""

import logging
import sqlite3
from typing import Any, Dict, Optional, Tuple

from .broadcaster import CONFLICT_DETECTED
from .components import BoardComponent
from .database import BoardDatabase
from .exceptions import NotFoundError, ValidationError, VersionConflictError
from .models import MUTABLE_TASK_FIELDS, RESERVED_TITLES, TaskPriority, TaskStatus
from .monitoring import performance_monitor

logger = logging.getLogger(__name__)

_STATUS_VALUES = {status.value for status in TaskStatus}
_PRIORITY_VALUES = {priority.value for priority in TaskPriority}


def validate_task_fields(db: BoardDatabase, board_id: int, fields: Dict[str, Any],
                         exclude_task_id: Optional[int] = None) -> None:
    """
    Reject invalid task field values before any write.

    Args:
        db: Database used for uniqueness and user checks
        board_id: Board the task belongs to
        fields: Proposed field values (only present keys are checked)
        exclude_task_id: Task being edited, ignored by the title uniqueness check

    Raises:
        ValidationError: on any rule violation
    """
    unknown = set(fields) - set(MUTABLE_TASK_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown task fields: {', '.join(sorted(unknown))}")

    if "title" in fields:
        title = fields["title"]
        if not isinstance(title, str) or not title.strip():
            raise ValidationError("Task title cannot be empty")
        if title in RESERVED_TITLES:
            raise ValidationError("Task title cannot match column names")
        if db.task_title_exists(board_id, title, exclude_task_id=exclude_task_id):
            raise ValidationError("Task title must be unique within a board")

    if "status" in fields and fields["status"] not in _STATUS_VALUES:
        raise ValidationError(f"Status must be one of: {', '.join(sorted(_STATUS_VALUES))}")

    if "priority" in fields and fields["priority"] not in _PRIORITY_VALUES:
        raise ValidationError(f"Priority must be one of: {', '.join(sorted(_PRIORITY_VALUES))}")

    assignee = fields.get("assigned_user_id")
    if assignee is not None and db.get_user(assignee) is None:
        raise ValidationError(f"Assigned user {assignee} does not exist")


class VersionGuard(BoardComponent):
    """Compare-and-swap gate in front of every task field write."""

    async def apply(self, task_id: int, user_id: int, fields: Dict[str, Any],
                    base_version: Optional[int] = None) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """
        Apply a task mutation guarded by the caller's base version.

        Args:
            task_id: Task to change
            user_id: Acting user, recorded on any conflict
            fields: Mutable fields to set; absent fields are left untouched
            base_version: Version the caller last observed, or None to write unconditionally

        Returns:
            Tuple of (task before, task after)

        Raises:
            NotFoundError: the task does not exist
            VersionConflictError: the base version is stale; a Conflict row was created
            ValidationError: a field value was rejected
        """
        current = self._require_task(task_id)
        validate_task_fields(self.db, current["board_id"], fields, exclude_task_id=task_id)

        if base_version is not None and base_version != current["version"]:
            await self._reject(current, user_id, fields, base_version)

        try:
            updated = self.db.update_task_fields(task_id, fields, expected_version=base_version)
        except sqlite3.IntegrityError as e:
            # Lost a race on the (board_id, title) unique index
            raise ValidationError(f"Task update rejected: {e}")

        if updated is None:
            # Zero rows: either the task vanished or another writer got there first
            latest = self.db.get_task(task_id)
            if latest is None:
                raise NotFoundError(f"Task {task_id} not found")
            await self._reject(latest, user_id, fields, base_version)

        logger.info(
            f"Task {task_id} updated by user {user_id}: version {current['version']} -> {updated['version']}"
        )
        return current, updated

    async def _reject(self, server_task: Dict[str, Any], user_id: int,
                      fields: Dict[str, Any], base_version: Optional[int]) -> None:
        """Persist a Conflict row, publish it, and raise VersionConflictError."""
        client_payload = dict(fields)
        client_payload["base_version"] = base_version
        client_payload["user_id"] = user_id

        conflict_id = self.db.create_conflict(server_task["id"], user_id, server_task, client_payload)
        performance_monitor.increment_daily_stat("conflicts_detected")
        logger.warning(
            f"Version conflict on task {server_task['id']}: user {user_id} based on "
            f"{base_version}, server at {server_task['version']} (conflict {conflict_id})"
        )

        await self._publish(server_task["board_id"], CONFLICT_DETECTED, {
            "task_id": server_task["id"],
            "conflict_id": conflict_id,
            "user_id": user_id,
            "server_version": server_task,
            "client_version": client_payload,
        })

        raise VersionConflictError(server_task["id"], server_task, client_payload, conflict_id)
