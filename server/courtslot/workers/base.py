"""Base worker class for background tasks."""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from ..core.clock import facility_now
from ..core.observability import MetricsCollector

logger = logging.getLogger(__name__)


class BaseWorker(ABC):
    """
    Abstract base class for background workers.

    Runs ``process`` every ``interval_seconds`` until stopped. A failed
    iteration is logged and retried on the next tick.
    """

    def __init__(self, name: str, interval_seconds: int = 60):
        """
        Initialize the worker.

        Args:
            name: Worker name for logging and metrics
            interval_seconds: How often to run the task
        """
        self.name = name
        self.interval_seconds = interval_seconds
        self.last_run_at: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    @abstractmethod
    async def process(self) -> None:
        """Process one iteration of the background task."""

    async def run_once(self) -> None:
        """Run one iteration now, recording its outcome."""
        started = time.monotonic()
        self.last_run_at = facility_now()
        try:
            await self.process()
        except Exception as e:
            self.last_error = str(e)
            raise
        self.last_error = None
        logger.info(
            f"{self.name} worker iteration completed",
            extra={"duration_seconds": round(time.monotonic() - started, 3), "worker": self.name}
        )

    async def start(self) -> None:
        """Start the worker."""
        if self._running:
            logger.warning(f"{self.name} worker is already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run())
        MetricsCollector.set_worker_running(self.name, True)
        logger.info(f"{self.name} worker started with {self.interval_seconds}s interval")

    async def stop(self) -> None:
        """Stop the worker gracefully."""
        if not self._running:
            logger.warning(f"{self.name} worker is not running")
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        MetricsCollector.set_worker_running(self.name, False)
        logger.info(f"{self.name} worker stopped")

    async def _run(self) -> None:
        while self._running:
            started = time.monotonic()
            try:
                await self.run_once()
            except asyncio.CancelledError:
                logger.info(f"{self.name} worker loop cancelled")
                break
            except Exception as e:
                logger.error(
                    f"{self.name} worker error: {e!s}",
                    exc_info=True,
                    extra={"worker": self.name}
                )

            sleep_time = max(0.0, self.interval_seconds - (time.monotonic() - started))
            try:
                await asyncio.sleep(sleep_time)
            except asyncio.CancelledError:
                break
