"""
Tests for PerformanceMonitor and the background lock sweep.
"""

import asyncio
from datetime import date, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from kanban_sync.monitoring import BackgroundTasks, PerformanceMonitor, performance_monitor


class TestPerformanceMonitor:

    def test_daily_counters(self):
        monitor = PerformanceMonitor()
        monitor.increment_daily_stat("locks_acquired")
        monitor.increment_daily_stat("locks_acquired", 2)

        assert monitor.snapshot()["daily"] == {"locks_acquired": 3}

    def test_daily_counters_reset_on_new_day(self):
        monitor = PerformanceMonitor()
        monitor.increment_daily_stat("lock_conflicts")
        monitor._last_reset_date = date.today() - timedelta(days=2)

        monitor.increment_daily_stat("locks_reclaimed")

        assert dict(monitor.daily_stats) == {"locks_reclaimed": 1}

    def test_sweep_timing(self):
        monitor = PerformanceMonitor()
        assert monitor.snapshot()["last_lock_sweep"] == "never"

        monitor.record_sweep(10.0)
        monitor.record_sweep(30.0)

        snapshot = monitor.snapshot()
        assert snapshot["avg_sweep_time_ms"] == 20.0
        assert snapshot["last_lock_sweep"] != "never"
        assert snapshot["memory_usage_mb"] > 0
        assert snapshot["uptime_seconds"] >= 0

    def test_reset(self):
        monitor = PerformanceMonitor()
        monitor.increment_daily_stat("locks_acquired")
        monitor.record_sweep(5.0)

        monitor.reset()

        assert monitor.snapshot()["daily"] == {}
        assert monitor.get_average_sweep_time() == 0.0


class TestBackgroundTasks:

    @pytest.mark.asyncio
    async def test_run_sweep_once(self, lock_manager, db, users, task):
        await lock_manager.acquire(task["id"], users["bob"])
        db._connection.execute(
            "UPDATE task_locks SET locked_at = ? WHERE task_id = ?",
            ("2020-01-01T00:00:00.000000Z", task["id"])
        )

        reclaimed = await BackgroundTasks().run_sweep_once(lock_manager)

        assert reclaimed == 1
        assert db.get_lock(task["id"]) is None
        assert performance_monitor.last_sweep_time is not None

    @pytest.mark.asyncio
    async def test_worker_sweeps_until_stopped(self):
        lock_manager = MagicMock()
        lock_manager.reclaim_expired = AsyncMock(return_value=[])
        background = BackgroundTasks(sweep_interval_seconds=0.01)

        await background.start_background_tasks(lock_manager)
        await asyncio.sleep(0.05)
        await background.stop_background_tasks()

        assert lock_manager.reclaim_expired.await_count >= 2
        assert background.tasks == []

    @pytest.mark.asyncio
    async def test_worker_survives_sweep_errors(self):
        calls = []

        async def flaky_reclaim():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("database is locked")
            return []

        lock_manager = MagicMock()
        lock_manager.reclaim_expired = flaky_reclaim
        background = BackgroundTasks(sweep_interval_seconds=0.01)

        await background.start_background_tasks(lock_manager)
        await asyncio.sleep(0.05)
        await background.stop_background_tasks()

        assert len(calls) >= 2
