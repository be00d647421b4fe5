"""
Tests for LockManager: acquire, renew, release, check and the TTL sweep.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from kanban_sync.broadcaster import TASK_LOCKED, TASK_UNLOCKED
from kanban_sync.exceptions import LockConflictError, LockOwnershipError, NotFoundError
from kanban_sync.locks import LOCK_ACQUIRE_ATTEMPTS, LockManager, lock_age_seconds
from kanban_sync.monitoring import performance_monitor


def _lock_rows(db):
    rows = db._connection.execute("SELECT task_id, user_id FROM task_locks").fetchall()
    return [tuple(row) for row in rows]


def _backdate_lock(db, task_id, seconds):
    locked_at = (datetime.now(timezone.utc) - timedelta(seconds=seconds)).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    db._connection.execute("UPDATE task_locks SET locked_at = ? WHERE task_id = ?", (locked_at, task_id))


@pytest.fixture
def scenario(db):
    """Users 1-11 and tasks 1-5 so the lock scenario can use task 5 and users 10 and 11."""
    user_ids = [db.create_user(f"User {n}", f"user{n}@example.com") for n in range(1, 12)]
    board_id = db.create_board("Ops", None, user_ids[0])
    task_ids = [db.create_task(f"Task {n}", board_id, user_ids[0])["id"] for n in range(1, 6)]
    assert user_ids[9] == 10 and user_ids[10] == 11 and task_ids[4] == 5
    return {"board_id": board_id}


class TestAcquire:

    @pytest.mark.asyncio
    async def test_acquire_publishes_task_locked(self, lock_manager, broadcaster, users, board_id, task):
        result = await lock_manager.acquire(task["id"], users["bob"])

        assert result["status"] == "acquired"
        assert result["owner"] is True
        broadcaster.broadcast_to_board.assert_awaited_once_with(board_id, TASK_LOCKED, {
            "task_id": task["id"],
            "user_id": users["bob"],
            "user_name": "Bob",
        })
        assert performance_monitor.daily_stats["locks_acquired"] == 1

    @pytest.mark.asyncio
    async def test_acquire_uses_supplied_display_name(self, lock_manager, db, users, task):
        await lock_manager.acquire(task["id"], users["bob"], user_name="Bobby")
        assert db.get_lock(task["id"])["user_name"] == "Bobby"

    @pytest.mark.asyncio
    async def test_same_holder_renews_without_new_row(self, lock_manager, db, broadcaster, users, task):
        await lock_manager.acquire(task["id"], users["bob"])
        _backdate_lock(db, task["id"], 120)

        result = await lock_manager.acquire(task["id"], users["bob"])

        assert result["status"] == "extended"
        assert len(_lock_rows(db)) == 1
        assert lock_age_seconds(db.get_lock(task["id"])["locked_at"]) < 60
        # Only the first acquisition is broadcast
        assert broadcaster.broadcast_to_board.await_count == 1

    @pytest.mark.asyncio
    async def test_other_user_gets_holder_details(self, lock_manager, db, users, task):
        await lock_manager.acquire(task["id"], users["bob"])
        _backdate_lock(db, task["id"], 30)

        with pytest.raises(LockConflictError) as exc_info:
            await lock_manager.acquire(task["id"], users["carol"])

        error = exc_info.value
        assert error.holder_id == users["bob"]
        assert error.holder_name == "Bob"
        assert 29 <= error.age_seconds < 60
        body = error.to_dict()
        assert body["locked"] is True
        assert body["owner"] is False
        assert body["locked_by"] == "Bob"
        assert _lock_rows(db) == [(task["id"], users["bob"])]
        assert performance_monitor.daily_stats["lock_conflicts"] == 1

    @pytest.mark.asyncio
    async def test_expired_lock_is_not_stolen(self, lock_manager, db, users, task):
        """Only the sweep removes a lock its holder did not release."""
        await lock_manager.acquire(task["id"], users["bob"])
        _backdate_lock(db, task["id"], 600)

        with pytest.raises(LockConflictError):
            await lock_manager.acquire(task["id"], users["carol"])

    @pytest.mark.asyncio
    async def test_missing_task(self, lock_manager, users):
        with pytest.raises(NotFoundError):
            await lock_manager.acquire(999, users["bob"])

    @pytest.mark.asyncio
    async def test_missing_user(self, lock_manager, task):
        with pytest.raises(NotFoundError):
            await lock_manager.acquire(task["id"], 999)

    @pytest.mark.asyncio
    async def test_acquire_gives_up_when_lock_keeps_changing_hands(self, lock_manager, db, users, task):
        with patch.object(db, "insert_lock", return_value=False) as insert_lock, \
                patch.object(db, "refresh_lock", return_value=False), \
                patch.object(db, "get_lock", return_value=None):
            with pytest.raises(LockConflictError) as exc_info:
                await lock_manager.acquire(task["id"], users["bob"])

        assert insert_lock.call_count == LOCK_ACQUIRE_ATTEMPTS
        assert exc_info.value.holder_id is None
        assert "another user" in str(exc_info.value)
        assert performance_monitor.daily_stats["lock_conflicts"] == 1


class TestRelease:

    @pytest.mark.asyncio
    async def test_holder_releases(self, lock_manager, db, broadcaster, users, board_id, task):
        await lock_manager.acquire(task["id"], users["bob"])

        result = await lock_manager.release(task["id"], users["bob"])

        assert result["locked"] is False
        assert db.get_lock(task["id"]) is None
        board, event, data = broadcaster.broadcast_to_board.call_args.args
        assert (board, event) == (board_id, TASK_UNLOCKED)
        assert data["reason"] == "released"

    @pytest.mark.asyncio
    async def test_non_holder_cannot_release(self, lock_manager, db, users, task):
        await lock_manager.acquire(task["id"], users["bob"])

        with pytest.raises(LockOwnershipError):
            await lock_manager.release(task["id"], users["carol"])
        assert db.get_lock(task["id"])["user_id"] == users["bob"]

    @pytest.mark.asyncio
    async def test_release_without_lock_is_noop(self, lock_manager, broadcaster, users, task):
        result = await lock_manager.release(task["id"], users["bob"])

        assert result["locked"] is False
        broadcaster.broadcast_to_board.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_release_missing_task(self, lock_manager, users):
        with pytest.raises(NotFoundError):
            await lock_manager.release(999, users["bob"])


class TestCheck:

    @pytest.mark.asyncio
    async def test_check_states(self, lock_manager, users, task):
        assert lock_manager.check(task["id"], users["bob"])["locked"] is False

        await lock_manager.acquire(task["id"], users["bob"])

        mine = lock_manager.check(task["id"], users["bob"])
        theirs = lock_manager.check(task["id"], users["carol"])
        assert mine["owner"] is True
        assert theirs["owner"] is False
        assert theirs["locked_by"] == "Bob"
        assert theirs["lock_age_seconds"] >= 0

    def test_check_missing_task(self, lock_manager):
        with pytest.raises(NotFoundError):
            lock_manager.check(999)


class TestSweep:

    @pytest.mark.asyncio
    async def test_reclaims_only_expired_locks(self, lock_manager, db, broadcaster, users, board_id, task):
        fresh = db.create_task("Fresh", board_id, users["alice"])
        await lock_manager.acquire(task["id"], users["bob"])
        await lock_manager.acquire(fresh["id"], users["carol"])
        _backdate_lock(db, task["id"], 301)
        broadcaster.broadcast_to_board.reset_mock()

        reclaimed = await lock_manager.reclaim_expired()

        assert [lock["task_id"] for lock in reclaimed] == [task["id"]]
        assert db.get_lock(task["id"]) is None
        assert db.get_lock(fresh["id"]) is not None
        broadcaster.broadcast_to_board.assert_awaited_once_with(board_id, TASK_UNLOCKED, {
            "task_id": task["id"],
            "user_id": users["bob"],
            "reason": "lock_expired",
        })
        assert performance_monitor.daily_stats["locks_reclaimed"] == 1

    @pytest.mark.asyncio
    async def test_expired_lock_can_be_reacquired_after_sweep(self, lock_manager, users, task):
        await lock_manager.acquire(task["id"], users["bob"])

        await lock_manager.reclaim_expired(now=datetime.now(timezone.utc) + timedelta(seconds=301))
        result = await lock_manager.acquire(task["id"], users["carol"])

        assert result["status"] == "acquired"

    @pytest.mark.asyncio
    async def test_lock_younger_than_ttl_survives(self, lock_manager, db, users, task):
        await lock_manager.acquire(task["id"], users["bob"])

        reclaimed = await lock_manager.reclaim_expired(now=datetime.now(timezone.utc) + timedelta(seconds=200))

        assert reclaimed == []
        assert db.get_lock(task["id"]) is not None

    @pytest.mark.asyncio
    async def test_custom_ttl(self, db, users, task):
        manager = LockManager(db, None, ttl_seconds=10)
        await manager.acquire(task["id"], users["bob"])
        _backdate_lock(db, task["id"], 11)

        assert len(await manager.reclaim_expired()) == 1

    @pytest.mark.asyncio
    async def test_statistics(self, lock_manager, db, users, board_id, task):
        other = db.create_task("Other", board_id, users["alice"])
        await lock_manager.acquire(task["id"], users["bob"])
        await lock_manager.acquire(other["id"], users["bob"])
        _backdate_lock(db, other["id"], 400)

        assert lock_manager.statistics() == {"active": 1, "expired": 1}


class TestLockScenario:

    @pytest.mark.asyncio
    async def test_task_five_handover(self, lock_manager, db, scenario):
        """Lock task 5 as user 10, user 11 is refused, release, then user 11 acquires."""
        await lock_manager.acquire(5, 10)

        with pytest.raises(LockConflictError) as exc_info:
            await lock_manager.acquire(5, 11)
        assert exc_info.value.holder_id == 10
        assert _lock_rows(db) == [(5, 10)]

        await lock_manager.release(5, 10)
        result = await lock_manager.acquire(5, 11)

        assert result["status"] == "acquired"
        assert _lock_rows(db) == [(5, 11)]
