"""
Lock Manager: time-boxed exclusive edit locks.

States per task:

    Unlocked --acquire--> Locked(holder)
    Locked(holder) --acquire by holder--> Locked(holder)   (locked_at refreshed)
    Locked(holder) --release by holder | sweep after TTL--> Unlocked

Single ownership is enforced by the ``UNIQUE(task_id)`` constraint on the
lock table, so it holds for concurrent requests and for several server
processes sharing one database. The periodic sweep is the only path that
removes a lock without its holder.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from .broadcaster import TASK_LOCKED, TASK_UNLOCKED, ConnectionManager
from .components import BoardComponent
from .database import BoardDatabase, format_timestamp, parse_timestamp
from .exceptions import LockConflictError, LockOwnershipError
from .monitoring import performance_monitor

logger = logging.getLogger(__name__)

LOCK_TTL_SECONDS = 300
LOCK_ACQUIRE_ATTEMPTS = 3


def lock_age_seconds(locked_at: str, now: Optional[datetime] = None) -> float:
    now = now or datetime.now(timezone.utc)
    return max(0.0, (now - parse_timestamp(locked_at)).total_seconds())


class LockManager(BoardComponent):
    """Grants, renews, releases and reclaims per-task edit locks."""

    def __init__(self, database: BoardDatabase, broadcaster: Optional[ConnectionManager],
                 ttl_seconds: int = LOCK_TTL_SECONDS):
        super().__init__(database, broadcaster)
        self.ttl_seconds = ttl_seconds

    async def acquire(self, task_id: int, user_id: int,
                      user_name: Optional[str] = None) -> Dict[str, Any]:
        """
        Acquire or renew the edit lock on a task.

        Args:
            task_id: Task to lock
            user_id: Requesting user
            user_name: Display name to show other editors; looked up if omitted

        Returns:
            Dict with ``locked``, ``owner``, ``status`` ("acquired" or "extended") and message

        Raises:
            NotFoundError: task or user does not exist
            LockConflictError: another user holds the lock
        """
        task = self._require_task(task_id)
        if not user_name:
            user_name = self._require_user(user_id)["name"]
        else:
            self._require_user(user_id)

        for attempt in range(LOCK_ACQUIRE_ATTEMPTS):
            if self.db.insert_lock(task_id, user_id, user_name):
                performance_monitor.increment_daily_stat("locks_acquired")
                logger.info(f"Task {task_id} locked by user {user_id}")
                await self._publish(task["board_id"], TASK_LOCKED, {
                    "task_id": task_id,
                    "user_id": user_id,
                    "user_name": user_name,
                })
                return {
                    "locked": True,
                    "owner": True,
                    "status": "acquired",
                    "task_id": task_id,
                    "message": "Task locked successfully",
                }

            if self.db.refresh_lock(task_id, user_id):
                logger.debug(f"Lock on task {task_id} extended by user {user_id}")
                return {
                    "locked": True,
                    "owner": True,
                    "status": "extended",
                    "task_id": task_id,
                    "message": "Lock extended",
                }

            holder = self.db.get_lock(task_id)
            if holder is not None:
                performance_monitor.increment_daily_stat("lock_conflicts")
                logger.warning(
                    f"User {user_id} denied lock on task {task_id}, held by user {holder['user_id']}"
                )
                raise LockConflictError(
                    task_id,
                    holder["user_id"],
                    holder["user_name"],
                    holder["locked_at"],
                    lock_age_seconds(holder["locked_at"]),
                )
            # Released between our insert and refresh
            logger.debug(f"Lock on task {task_id} changed hands during acquire (attempt {attempt + 1})")

        performance_monitor.increment_daily_stat("lock_conflicts")
        logger.warning(f"User {user_id} gave up locking task {task_id} after {LOCK_ACQUIRE_ATTEMPTS} attempts")
        raise LockConflictError(task_id, None, None, None, 0.0)

    async def release(self, task_id: int, user_id: int) -> Dict[str, Any]:
        """
        Release a lock held by ``user_id``.

        Releasing a task that is not locked (never locked, already released,
        or already reclaimed) succeeds without doing anything.

        Raises:
            NotFoundError: the task does not exist
            LockOwnershipError: another user holds the lock
        """
        task = self._require_task(task_id)

        if self.db.delete_lock(task_id, user_id):
            logger.info(f"Task {task_id} unlocked by user {user_id}")
            await self._publish(task["board_id"], TASK_UNLOCKED, {
                "task_id": task_id,
                "user_id": user_id,
                "reason": "released",
            })
            return {"locked": False, "task_id": task_id, "message": "Task unlocked successfully"}

        holder = self.db.get_lock(task_id)
        if holder is None:
            return {"locked": False, "task_id": task_id, "message": "Task is not locked"}

        raise LockOwnershipError("You cannot unlock a task locked by another user")

    def check(self, task_id: int, user_id: Optional[int] = None) -> Dict[str, Any]:
        """Describe the lock state of a task from the point of view of ``user_id``."""
        self._require_task(task_id)
        holder = self.db.get_lock(task_id)
        if holder is None:
            return {"locked": False, "owner": False, "task_id": task_id, "message": "Task is not locked"}

        is_owner = user_id is not None and holder["user_id"] == user_id
        return {
            "locked": True,
            "owner": is_owner,
            "task_id": task_id,
            "locked_by": holder["user_name"],
            "locked_by_id": holder["user_id"],
            "locked_at": holder["locked_at"],
            "lock_age_seconds": round(lock_age_seconds(holder["locked_at"]), 3),
            "message": "You have locked this task" if is_owner
                       else f"Task is locked by {holder['user_name']}",
        }

    async def reclaim_expired(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        Delete locks older than the TTL and publish ``task-unlocked`` for each.

        Args:
            now: Reference time, defaults to the current UTC time

        Returns:
            The reclaimed locks
        """
        now = now or datetime.now(timezone.utc)
        cutoff = format_timestamp(now - timedelta(seconds=self.ttl_seconds))
        expired = self.db.delete_locks_older_than(cutoff)

        for lock in expired:
            logger.info(
                f"Reclaimed expired lock on task {lock['task_id']} held by user {lock['user_id']} "
                f"since {lock['locked_at']}"
            )
            await self._publish(lock["board_id"], TASK_UNLOCKED, {
                "task_id": lock["task_id"],
                "user_id": lock["user_id"],
                "reason": "lock_expired",
            })

        if expired:
            performance_monitor.increment_daily_stat("locks_reclaimed", len(expired))
        return expired

    def statistics(self) -> Dict[str, int]:
        cutoff = format_timestamp(datetime.now(timezone.utc) - timedelta(seconds=self.ttl_seconds))
        return self.db.get_lock_statistics(cutoff)
