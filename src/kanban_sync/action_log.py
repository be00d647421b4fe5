"""
Action Log Recorder

Appends an audit entry for every successful task mutation and publishes it to
the board's activity feed. Audit completeness is best-effort: a failure here
is logged server-side and never reaches the caller of the primary operation.
"""

import logging
from typing import Any, Dict, List, Optional

from .broadcaster import ACTION_LOGGED, ConnectionManager
from .components import BoardComponent
from .database import BoardDatabase, utc_now_str
from .models import ActionType

logger = logging.getLogger(__name__)

RECENT_LOG_LIMIT = 20


class ActionLogRecorder(BoardComponent):
    """Append-only audit trail with before/after snapshots."""

    def __init__(self, database: BoardDatabase, broadcaster: Optional[ConnectionManager],
                 recent_limit: int = RECENT_LOG_LIMIT):
        super().__init__(database, broadcaster)
        self.recent_limit = recent_limit

    async def record(self, task_id: int, user_id: int, action_type: ActionType,
                     previous_value: Optional[Dict[str, Any]],
                     new_value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """
        Persist an audit entry and publish ``action-logged``.

        Args:
            task_id: Task the mutation applied to
            user_id: Acting user
            action_type: Mutation kind
            previous_value: Snapshot before the mutation (None for create)
            new_value: Snapshot after the mutation (None for delete)

        Returns:
            The enriched entry, or None if logging failed
        """
        try:
            log_id = self.db.insert_action_log(
                task_id, user_id, ActionType(action_type).value, previous_value, new_value
            )
            entry = self.db.get_action_log(log_id)
        except Exception as e:
            logger.error(f"Failed to record {action_type} for task {task_id} by user {user_id}: {e}")
            return None

        if entry is not None:
            await self._publish(entry["board_id"], ACTION_LOGGED, entry)
        return entry

    async def record_deletion(self, task: Dict[str, Any], user_id: int) -> Optional[Dict[str, Any]]:
        """
        Publish the audit entry for a deleted task.

        A task's log rows are removed together with the task, so this entry
        only travels over the board channel.
        """
        try:
            user = self.db.get_user(user_id)
            entry = {
                "id": None,
                "task_id": task["id"],
                "user_id": user_id,
                "action_type": ActionType.DELETE.value,
                "previous_value": task,
                "new_value": None,
                "created_at": utc_now_str(),
                "task_title": task.get("title"),
                "board_id": task.get("board_id"),
                "user_name": user["name"] if user else None,
            }
        except Exception as e:
            logger.error(f"Failed to build delete log for task {task.get('id')}: {e}")
            return None

        await self._publish(entry["board_id"], ACTION_LOGGED, entry)
        return entry

    def recent(self, board_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        The newest entries, newest first, enriched with user name and task title.

        Args:
            board_id: Optional board filter
        """
        return self.db.get_recent_logs(self.recent_limit, board_id=board_id)
