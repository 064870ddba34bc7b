"""Scheduler for periodic aggregation and retention sweeps."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable

from token_usage.aggregation.models import AggregationResult
from token_usage.aggregation.periods import utcnow
from token_usage.aggregation.service import AggregationService, get_aggregation_service
from token_usage.config import get_settings

logger = logging.getLogger(__name__)


class AggregationScheduler:
    """Scheduler for the rollup batch jobs.

    This scheduler:
    - Aggregates pending raw events shortly after every hour boundary
    - Purges buckets past the retention period
    - Provides status and health information
    """

    def __init__(
        self,
        service: AggregationService | None = None,
        aggregation_interval_seconds: int | None = None,
        retention_interval_seconds: int | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            service: Aggregation service instance.
            aggregation_interval_seconds: Interval between aggregation runs.
            retention_interval_seconds: Interval between retention sweeps.
        """
        settings = get_settings()
        self._service = service or get_aggregation_service()
        self._aggregation_interval = (
            aggregation_interval_seconds or settings.aggregation_interval_seconds
        )
        self._retention_interval = (
            retention_interval_seconds or settings.aggregation_retention_interval_seconds
        )

        # Task handles
        self._aggregation_task: asyncio.Task | None = None
        self._retention_task: asyncio.Task | None = None

        # State
        self._running = False
        self._last_aggregation_run: datetime | None = None
        self._last_retention_run: datetime | None = None
        self._aggregation_run_count = 0
        self._retention_run_count = 0
        self._failed_aggregation_count = 0
        self._last_result: AggregationResult | None = None

        # Callback for alerting
        self._on_aggregation_failure: Callable[[AggregationResult], None] | None = None

    def set_failure_callback(self, callback: Callable[[AggregationResult], None]) -> None:
        """Set callback for failed aggregation runs.

        Args:
            callback: Function taking the failed AggregationResult.
        """
        self._on_aggregation_failure = callback

    async def run_aggregation_once(self) -> AggregationResult:
        """Run one pending aggregation and record its outcome."""
        self._last_aggregation_run = utcnow()
        self._aggregation_run_count += 1

        result = await self._service.run_pending_aggregation()
        self._last_result = result

        if not result.success:
            self._failed_aggregation_count += 1
            if self._on_aggregation_failure:
                self._on_aggregation_failure(result)

        return result

    async def run_retention_once(self) -> int:
        """Run one retention sweep and record its outcome."""
        self._last_retention_run = utcnow()
        self._retention_run_count += 1
        return await self._service.cleanup_by_retention()

    async def _run_aggregation_loop(self) -> None:
        """Run pending aggregation in a loop."""
        # Wait until the next hour boundary
        now = utcnow()
        next_hour = (now + timedelta(hours=1)).replace(minute=0, second=0, microsecond=0)
        initial_delay = (next_hour - now).total_seconds()

        logger.info(
            "Scheduler: First aggregation run in %.1f seconds at %s",
            initial_delay,
            next_hour.isoformat(),
        )
        await asyncio.sleep(initial_delay)

        while self._running:
            try:
                logger.info("Scheduler: Starting pending aggregation")
                result = await self.run_aggregation_once()
                logger.info(
                    "Scheduler: Aggregation complete. Success: %s, Updated: %d, Errors: %d",
                    result.success,
                    result.updated_buckets,
                    len(result.errors),
                )
            except Exception as e:
                logger.exception("Scheduler: Aggregation run failed: %s", e)

            # Wait for next run
            await asyncio.sleep(self._aggregation_interval)

    async def _run_retention_loop(self) -> None:
        """Run retention sweeps in a loop."""
        while self._running:
            try:
                deleted = await self.run_retention_once()
                if deleted:
                    logger.info("Scheduler: Retention sweep deleted %d buckets", deleted)
            except Exception as e:
                logger.exception("Scheduler: Retention sweep failed: %s", e)

            await asyncio.sleep(self._retention_interval)

    async def start(self) -> None:
        """Start the scheduler.

        This starts the background tasks for:
        - Hourly pending aggregation
        - Retention sweeps
        """
        if self._running:
            logger.warning("Scheduler already running")
            return

        logger.info("Starting aggregation scheduler")
        self._running = True

        self._aggregation_task = asyncio.create_task(
            self._run_aggregation_loop(),
            name="usage_aggregation",
        )
        self._retention_task = asyncio.create_task(
            self._run_retention_loop(),
            name="usage_retention",
        )

        logger.info(
            "Scheduler started with aggregation_interval=%ds, retention_interval=%ds",
            self._aggregation_interval,
            self._retention_interval,
        )

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if not self._running:
            return

        logger.info("Stopping aggregation scheduler")
        self._running = False

        for task in (self._aggregation_task, self._retention_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        self._aggregation_task = None
        self._retention_task = None
        logger.info("Scheduler stopped")

    async def run_immediate_aggregation(self) -> AggregationResult:
        """Run an immediate pending aggregation (for testing/debugging)."""
        logger.info("Running immediate aggregation")
        return await self.run_aggregation_once()

    def get_status(self) -> dict:
        """Get scheduler status.

        Returns:
            Status dictionary.
        """
        return {
            "running": self._running,
            "aggregation_interval_seconds": self._aggregation_interval,
            "retention_interval_seconds": self._retention_interval,
            "last_aggregation_run": (
                self._last_aggregation_run.isoformat() if self._last_aggregation_run else None
            ),
            "last_retention_run": (
                self._last_retention_run.isoformat() if self._last_retention_run else None
            ),
            "aggregation_run_count": self._aggregation_run_count,
            "retention_run_count": self._retention_run_count,
            "failed_aggregation_count": self._failed_aggregation_count,
            "last_result": self._last_result.model_dump(mode="json") if self._last_result else None,
        }

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self._running


# Global scheduler instance
_aggregation_scheduler: AggregationScheduler | None = None


def get_aggregation_scheduler() -> AggregationScheduler:
    """Get the global aggregation scheduler instance.

    Returns:
        AggregationScheduler instance.
    """
    global _aggregation_scheduler
    if _aggregation_scheduler is None:
        _aggregation_scheduler = AggregationScheduler()
    return _aggregation_scheduler


async def start_aggregation_scheduler() -> AggregationScheduler:
    """Start the global aggregation scheduler.

    Returns:
        The started scheduler.
    """
    scheduler = get_aggregation_scheduler()
    await scheduler.start()
    return scheduler


async def stop_aggregation_scheduler() -> None:
    """Stop the global aggregation scheduler."""
    global _aggregation_scheduler
    if _aggregation_scheduler:
        await _aggregation_scheduler.stop()
