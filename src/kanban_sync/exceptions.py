"""
Error taxonomy for board operations.

The API layer maps each class to an HTTP status. A version conflict and a
lock conflict are expected outcomes of concurrent editing, so they carry the
data a client needs to recover instead of a bare message.
"""

from typing import Any, Dict, Optional


class KanbanSyncError(Exception):
    """Base class for all board operation errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message}


class NotFoundError(KanbanSyncError):
    """A task, board, conflict or user does not exist."""


class ValidationError(KanbanSyncError):
    """Input was rejected before any write happened."""


class VersionConflictError(KanbanSyncError):
    """
    The caller's base version is stale.

    A Conflict row has already been persisted when this is raised.
    """

    def __init__(self, task_id: int, server_version: Dict[str, Any],
                 client_version: Dict[str, Any], conflict_id: Optional[int] = None):
        super().__init__(f"Conflict detected on task {task_id}")
        self.task_id = task_id
        self.server_version = server_version
        self.client_version = client_version
        self.conflict_id = conflict_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": "Conflict detected",
            "task_id": self.task_id,
            "conflict_id": self.conflict_id,
            "server_version": self.server_version,
            "client_version": self.client_version,
        }


class LockConflictError(KanbanSyncError):
    """The task is locked by another user."""

    def __init__(self, task_id: int, holder_id: Optional[int], holder_name: Optional[str],
                 locked_at: Optional[str], age_seconds: float):
        super().__init__(f"Task is currently being edited by {holder_name or 'another user'}")
        self.task_id = task_id
        self.holder_id = holder_id
        self.holder_name = holder_name
        self.locked_at = locked_at
        self.age_seconds = age_seconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            "locked": True,
            "owner": False,
            "task_id": self.task_id,
            "locked_by": self.holder_name,
            "locked_by_id": self.holder_id,
            "locked_at": self.locked_at,
            "lock_age_seconds": round(self.age_seconds, 3),
            "message": self.message,
        }


class LockOwnershipError(KanbanSyncError):
    """A user tried to release a lock held by someone else."""
