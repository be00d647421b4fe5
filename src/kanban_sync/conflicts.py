"""
Conflict Resolver

Turns a pending Conflict into a new task state. Two modes are supported and
both are shallow, field-by-field choices between snapshots (there is no
three-way merge over intermediate versions):

- overwrite: every mutable field present in the client snapshot replaces the
  task's current value; fields the client did not send keep the current value
- merge: per field, the client value if present, otherwise the server
  snapshot taken when the conflict was detected, otherwise the current value

Either way the task version advances by one, the change is logged, and the
conflict is flagged resolved. Conflict rows are never deleted here.
"""

import logging
from typing import Any, Dict, List, Optional

from .action_log import ActionLogRecorder
from .broadcaster import TASK_UPDATED, ConnectionManager
from .components import BoardComponent
from .database import BoardDatabase
from .exceptions import NotFoundError, ValidationError
from .models import MUTABLE_TASK_FIELDS, ActionType, ResolutionMode
from .version_guard import validate_task_fields

logger = logging.getLogger(__name__)

_LOG_ACTIONS = {
    ResolutionMode.OVERWRITE: ActionType.CONFLICT_RESOLVE_OVERWRITE,
    ResolutionMode.MERGE: ActionType.CONFLICT_RESOLVE_MERGE,
}


def overwrite_fields(client: Dict[str, Any], current: Dict[str, Any]) -> Dict[str, Any]:
    """Client snapshot wins for every field it carries."""
    return {
        field: client[field] if field in client else current.get(field)
        for field in MUTABLE_TASK_FIELDS
    }


def merge_fields(client: Dict[str, Any], server: Dict[str, Any],
                 current: Dict[str, Any]) -> Dict[str, Any]:
    """Client beats the server snapshot, which beats the current task."""
    merged = {}
    for field in MUTABLE_TASK_FIELDS:
        if field in client:
            merged[field] = client[field]
        elif field in server:
            merged[field] = server[field]
        else:
            merged[field] = current.get(field)
    return merged


class ConflictResolver(BoardComponent):
    """Applies overwrite or merge resolutions to stored conflicts."""

    def __init__(self, database: BoardDatabase, broadcaster: Optional[ConnectionManager],
                 action_log: ActionLogRecorder):
        super().__init__(database, broadcaster)
        self.action_log = action_log

    def list_open(self, user_id: int) -> List[Dict[str, Any]]:
        """Unresolved conflicts raised for a user, newest first."""
        return self.db.list_unresolved_conflicts(user_id)

    async def resolve(self, conflict_id: int, resolution: str, user_id: int) -> Dict[str, Any]:
        """
        Resolve a conflict against the task's current state.

        Args:
            conflict_id: Conflict to resolve
            resolution: "overwrite" or "merge"
            user_id: Resolving user

        Returns:
            Dict with the conflict id, mode and the updated task

        Raises:
            NotFoundError: unknown conflict, unknown user, or the task no longer exists
            ValidationError: unknown mode or conflict already resolved
        """
        conflict = self.db.get_conflict(conflict_id)
        if conflict is None:
            raise NotFoundError(f"Conflict {conflict_id} not found")
        self._require_user(user_id)

        try:
            mode = ResolutionMode(resolution)
        except ValueError:
            raise ValidationError(
                f"Unknown resolution '{resolution}'. Use one of: "
                f"{', '.join(m.value for m in ResolutionMode)}"
            )

        if conflict["resolved"]:
            raise ValidationError(f"Conflict {conflict_id} is already resolved")

        current = self._require_task(conflict["task_id"])
        client = conflict["client_version"] or {}
        server = conflict["server_version"] or {}

        if mode is ResolutionMode.OVERWRITE:
            fields = overwrite_fields(client, current)
        else:
            fields = merge_fields(client, server, current)

        changed = {key: value for key, value in fields.items() if current.get(key) != value}
        validate_task_fields(self.db, current["board_id"], changed, exclude_task_id=current["id"])

        try:
            updated = self.db.apply_conflict_resolution(conflict_id, current["id"], fields)
        except LookupError as e:
            raise NotFoundError(str(e))
        if updated is None:
            # Another resolver flipped the flag between our read and write
            raise ValidationError(f"Conflict {conflict_id} is already resolved")

        logger.info(
            f"Conflict {conflict_id} on task {current['id']} resolved by user {user_id} "
            f"with {mode.value}; version {current['version']} -> {updated['version']}"
        )

        await self.action_log.record(current["id"], user_id, _LOG_ACTIONS[mode], current, updated)
        await self._publish(updated["board_id"], TASK_UPDATED, updated)

        return {"conflict_id": conflict_id, "resolution": mode.value, "task": updated}
