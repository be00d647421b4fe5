"""
Shared base for the concurrency-control components.

Every component that changes board state holds the database gateway and the
application's ConnectionManager, both injected at construction. Publishing
goes through ``_publish`` so a realtime failure can never undo or fail a
write that has already committed.
"""

import logging
from abc import ABC
from typing import Any, Dict, Optional

from .broadcaster import ConnectionManager
from .database import BoardDatabase
from .exceptions import NotFoundError

logger = logging.getLogger(__name__)


class BoardComponent(ABC):
    """
    Base class with database and broadcaster dependencies.

    Subclasses call ``_publish`` only after the corresponding write returned,
    so clients never observe a change before it is readable.
    """

    def __init__(self, database: BoardDatabase, broadcaster: Optional[ConnectionManager]):
        """
        Args:
            database: BoardDatabase instance for data operations
            broadcaster: ConnectionManager for board channels, or None to run silent
        """
        self.db = database
        self.broadcaster = broadcaster

    async def _publish(self, board_id: Optional[int], event_type: str, data: Dict[str, Any]) -> None:
        """
        Publish an event to a board channel without raising.

        Args:
            board_id: Board whose subscribers receive the event
            event_type: Event name
            data: Event payload
        """
        if self.broadcaster is None or board_id is None:
            return
        try:
            await self.broadcaster.broadcast_to_board(board_id, event_type, data)
        except Exception as e:
            logger.warning(f"Failed to broadcast {event_type} to board {board_id}: {e}")

    def _require_task(self, task_id: int) -> Dict[str, Any]:
        task = self.db.get_task(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        return task

    def _require_user(self, user_id: int) -> Dict[str, Any]:
        user = self.db.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user
