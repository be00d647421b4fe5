"""
Performance Monitoring and Background Tasks

Collects daily operation counters and process metrics for the metrics
endpoint, and runs the periodic lock sweep for the whole lifetime of the
application, whether or not any client is connected.
"""

import asyncio
import logging
import time
from collections import defaultdict, deque
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import psutil

METRICS_HISTORY_SIZE = 1000  # Keep last 1000 data points for trending
SLOW_OPERATION_MS = 50

logger = logging.getLogger(__name__)


class PerformanceMonitor:
    """
    Operational counters for the board service.

    Features:
    - Daily counters (locks acquired/reclaimed, lock conflicts, version conflicts)
    - Timing history for background sweeps
    - Process memory and CPU usage via psutil
    """

    def __init__(self):
        self.sweep_times: deque = deque(maxlen=METRICS_HISTORY_SIZE)
        self.daily_stats = defaultdict(int)
        self.last_sweep_time: Optional[datetime] = None
        self.start_time = datetime.now(timezone.utc)
        self._last_reset_date = datetime.now(timezone.utc).date()

    def increment_daily_stat(self, stat_name: str, amount: int = 1):
        """
        Increment daily statistics counter.

        Args:
            stat_name: Name of the statistic to increment
            amount: Amount to increment by (default 1)
        """
        self._check_daily_reset()
        self.daily_stats[stat_name] += amount

    def _check_daily_reset(self):
        """Reset daily statistics if date has changed."""
        current_date = datetime.now(timezone.utc).date()
        if current_date != self._last_reset_date:
            logger.info("Resetting daily statistics for new day")
            self.daily_stats.clear()
            self._last_reset_date = current_date

    def record_sweep(self, duration_ms: float):
        self.sweep_times.append(duration_ms)
        self.last_sweep_time = datetime.now(timezone.utc)
        if duration_ms > SLOW_OPERATION_MS:
            logger.warning(f"Slow lock sweep: {duration_ms:.2f}ms")

    def get_average_sweep_time(self) -> float:
        if not self.sweep_times:
            return 0.0
        return sum(self.sweep_times) / len(self.sweep_times)

    def get_memory_usage_mb(self) -> float:
        """Get current process memory usage in MB."""
        try:
            return psutil.Process().memory_info().rss / (1024 * 1024)
        except Exception as e:
            logger.warning(f"Failed to get memory usage: {e}")
            return 0.0

    def get_cpu_usage_percent(self) -> float:
        try:
            return psutil.cpu_percent(interval=None)
        except Exception as e:
            logger.warning(f"Failed to get CPU usage: {e}")
            return 0.0

    def snapshot(self) -> Dict[str, Any]:
        """Daily counters plus process metrics, JSON-ready."""
        self._check_daily_reset()
        uptime = (datetime.now(timezone.utc) - self.start_time).total_seconds()
        return {
            "daily": dict(self.daily_stats),
            "avg_sweep_time_ms": round(self.get_average_sweep_time(), 3),
            "last_lock_sweep": self.last_sweep_time.isoformat() if self.last_sweep_time else "never",
            "memory_usage_mb": round(self.get_memory_usage_mb(), 2),
            "cpu_usage_percent": self.get_cpu_usage_percent(),
            "uptime_seconds": round(uptime, 1),
        }

    def reset(self):
        self.sweep_times.clear()
        self.daily_stats.clear()
        self.last_sweep_time = None


# Global performance monitor instance
performance_monitor = PerformanceMonitor()


class BackgroundTasks:
    """
    Periodic maintenance running alongside the FastAPI application.

    One instance is owned by each application and started from its lifespan.
    """

    def __init__(self, sweep_interval_seconds: float = 60):
        self.sweep_interval_seconds = sweep_interval_seconds
        self.tasks: List[asyncio.Task] = []
        self.shutdown_event = asyncio.Event()

    async def start_background_tasks(self, lock_manager):
        """
        Start the lock sweep worker.

        Args:
            lock_manager: LockManager whose expired locks are reclaimed
        """
        logger.info("Starting background tasks...")
        self.shutdown_event.clear()
        self.tasks.append(asyncio.create_task(self._lock_sweep_worker(lock_manager)))
        logger.info(f"Started {len(self.tasks)} background tasks")

    async def stop_background_tasks(self):
        """Stop all background tasks gracefully."""
        logger.info("Stopping background tasks...")
        self.shutdown_event.set()

        for task in self.tasks:
            if not task.done():
                task.cancel()

        if self.tasks:
            try:
                await asyncio.wait_for(
                    asyncio.gather(*self.tasks, return_exceptions=True),
                    timeout=10.0
                )
                logger.info("All background tasks stopped")
            except asyncio.TimeoutError:
                logger.warning("Background task shutdown timeout")
        self.tasks.clear()

    async def run_sweep_once(self, lock_manager) -> int:
        """Run one sweep and record its timing; returns the number of reclaimed locks."""
        start_time = time.time()
        reclaimed = await lock_manager.reclaim_expired()
        performance_monitor.record_sweep((time.time() - start_time) * 1000)
        if reclaimed:
            logger.info(f"Lock sweep reclaimed {len(reclaimed)} expired locks")
        return len(reclaimed)

    async def _lock_sweep_worker(self, lock_manager):
        """Reclaim expired locks every ``sweep_interval_seconds`` until shutdown."""
        logger.info(f"Lock sweep worker started (every {self.sweep_interval_seconds}s)")

        while not self.shutdown_event.is_set():
            try:
                await self.run_sweep_once(lock_manager)
            except Exception as e:
                logger.error(f"Lock sweep worker error: {e}")

            try:
                await asyncio.wait_for(
                    self.shutdown_event.wait(),
                    timeout=self.sweep_interval_seconds
                )
                break  # Shutdown requested
            except asyncio.TimeoutError:
                continue
