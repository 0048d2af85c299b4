"""
Performance Monitoring and Background Tasks

Collects query timings and process resource usage for the metrics endpoint,
and runs the periodic due-date sweep that turns upcoming task deadlines into
``task_due`` notifications.
"""

import asyncio
import functools
import logging
import os
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional

import psutil

# Performance monitoring configuration
METRICS_HISTORY_SIZE = 1000  # Keep last 1000 data points for trending
SLOW_QUERY_THRESHOLD_MS = 50
DUE_REMINDER_INTERVAL = int(os.getenv("DUE_REMINDER_INTERVAL", "3600"))
DUE_REMINDER_WINDOW_DAYS = int(os.getenv("DUE_REMINDER_WINDOW_DAYS", "1"))

logger = logging.getLogger(__name__)


@dataclass
class PerformanceMetric:
    """Single performance measurement with timestamp."""
    timestamp: datetime
    value: float
    operation: str


@dataclass
class SystemMetrics:
    """Current system performance metrics."""
    entity_counts: Dict[str, int]
    avg_query_time_ms: float
    slowest_query: Optional[Dict[str, Any]]
    slow_queries_today: int
    reminders_sent_today: int
    memory_usage_mb: float
    cpu_usage_percent: float
    last_reminder_sweep: str


class PerformanceMonitor:
    """
    Performance monitoring for the REST service.

    Features:
    - Query execution time tracking with slow-query warnings
    - Daily counters (reset at UTC midnight)
    - Process memory/CPU sampling through psutil
    """

    def __init__(self):
        self.query_times: deque = deque(maxlen=METRICS_HISTORY_SIZE)
        self.daily_stats = defaultdict(int)
        self.last_sweep_time: Optional[datetime] = None
        self.start_time = datetime.now(timezone.utc)
        self._last_reset_date = datetime.now(timezone.utc).date()

    def record_query_time(self, operation: str, duration_ms: float):
        """
        Record database query execution time.

        Args:
            operation: Description of the database operation
            duration_ms: Query execution time in milliseconds
        """
        self.query_times.append(PerformanceMetric(
            timestamp=datetime.now(timezone.utc),
            value=duration_ms,
            operation=operation
        ))

        if duration_ms > SLOW_QUERY_THRESHOLD_MS:
            self.increment_daily_stat("slow_queries")
            logger.warning(f"Slow query detected: {operation} took {duration_ms:.2f}ms")

    def increment_daily_stat(self, stat_name: str, amount: int = 1):
        self._check_daily_reset()
        self.daily_stats[stat_name] += amount

    def _check_daily_reset(self):
        """Reset daily statistics if date has changed."""
        current_date = datetime.now(timezone.utc).date()
        if current_date != self._last_reset_date:
            logger.info("Resetting daily statistics for new day")
            self.daily_stats.clear()
            self._last_reset_date = current_date

    def get_average_query_time(self) -> float:
        """Get average query execution time from recent history."""
        if not self.query_times:
            return 0.0
        return sum(m.value for m in self.query_times) / len(self.query_times)

    def get_slowest_recent_query(self) -> Optional[Dict[str, Any]]:
        """Slowest query still in the history window, or None."""
        if not self.query_times:
            return None
        slowest = max(self.query_times, key=lambda m: m.value)
        return {
            "operation": slowest.operation,
            "duration_ms": round(slowest.value, 2),
            "recorded_at": slowest.timestamp.strftime("%Y-%m-%dT%H:%M:%SZ"),
        }

    def get_memory_usage_mb(self) -> float:
        """Get current process memory usage in MB."""
        try:
            return psutil.Process().memory_info().rss / (1024 * 1024)
        except Exception as e:
            logger.warning(f"Failed to get memory usage: {e}")
            return 0.0

    def get_cpu_usage_percent(self) -> float:
        try:
            return psutil.cpu_percent(interval=0.1)
        except Exception as e:
            logger.warning(f"Failed to get CPU usage: {e}")
            return 0.0

    def update_sweep_time(self):
        self.last_sweep_time = datetime.now(timezone.utc)

    def uptime_seconds(self) -> float:
        return (datetime.now(timezone.utc) - self.start_time).total_seconds()

    def get_system_metrics(self, database) -> SystemMetrics:
        """
        Collect system performance metrics.

        Args:
            database: ProjectDatabase instance

        Returns:
            SystemMetrics: Current system performance data
        """
        self._check_daily_reset()
        try:
            counts = database.count_entities()
        except Exception as e:
            logger.error(f"Failed to collect entity counts: {e}")
            counts = {}

        return SystemMetrics(
            entity_counts=counts,
            avg_query_time_ms=self.get_average_query_time(),
            slowest_query=self.get_slowest_recent_query(),
            slow_queries_today=self.daily_stats.get("slow_queries", 0),
            reminders_sent_today=self.daily_stats.get("reminders_sent", 0),
            memory_usage_mb=self.get_memory_usage_mb(),
            cpu_usage_percent=self.get_cpu_usage_percent(),
            last_reminder_sweep=(
                self.last_sweep_time.strftime("%Y-%m-%dT%H:%M:%SZ")
                if self.last_sweep_time else "never"
            )
        )


# Global performance monitor instance
performance_monitor = PerformanceMonitor()


def timed_query(operation: str):
    """Decorator recording how long a database method takes."""
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            started = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                performance_monitor.record_query_time(
                    operation, (time.perf_counter() - started) * 1000
                )
        return wrapper
    return decorator


def run_due_reminder_sweep(database, window_days: int = DUE_REMINDER_WINDOW_DAYS) -> List[int]:
    """
    Create ``task_due`` notifications for open tasks due within the window.

    Returns:
        IDs of the notifications created in this sweep
    """
    created = database.create_due_notifications(window_days)
    performance_monitor.update_sweep_time()
    if created:
        performance_monitor.increment_daily_stat("reminders_sent", len(created))
        logger.info(f"Due reminder sweep created {len(created)} notifications")
    return created


class BackgroundTasks:
    """
    Background task management for periodic maintenance.

    Runs alongside the FastAPI application and is started/stopped by its
    lifespan handler.
    """

    def __init__(self, interval_seconds: int = DUE_REMINDER_INTERVAL):
        self.interval_seconds = interval_seconds
        self.tasks: List[asyncio.Task] = []
        self.shutdown_event = asyncio.Event()

    async def start_background_tasks(self, database):
        """
        Start all background maintenance tasks.

        Args:
            database: ProjectDatabase instance used by the workers
        """
        logger.info("Starting background tasks...")
        self.shutdown_event = asyncio.Event()
        self.tasks.append(asyncio.create_task(self._due_reminder_worker(database)))
        logger.info(f"Started {len(self.tasks)} background tasks")

    async def stop_background_tasks(self):
        """Signal workers to stop and wait for them to finish."""
        logger.info("Stopping background tasks...")
        self.shutdown_event.set()
        for task in self.tasks:
            task.cancel()
        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)
        self.tasks.clear()
        logger.info("Background tasks stopped")

    async def _due_reminder_worker(self, database):
        while not self.shutdown_event.is_set():
            try:
                run_due_reminder_sweep(database)
            except Exception as e:
                logger.error(f"Due reminder sweep failed: {e}")
            try:
                await asyncio.wait_for(self.shutdown_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue


background_tasks = BackgroundTasks()
