"""Worker manager for coordinating background tasks."""

import asyncio
import logging
from typing import Any, Dict

from ..core.config import settings
from .base import BaseWorker
from .reconciliation_worker import ReconciliationWorker
from .waitlist_expiry_worker import WaitlistExpiryWorker

logger = logging.getLogger(__name__)


class WorkerManager:
    """
    Manages background workers for the application.

    Coordinates starting, stopping, and monitoring of all background workers.
    """

    def __init__(self):
        self.workers: Dict[str, BaseWorker] = {}
        self._setup_workers()

    def _setup_workers(self) -> None:
        self.workers["waitlist_expiry"] = WaitlistExpiryWorker(
            interval_seconds=settings.waitlist_expiry_interval_seconds
        )
        self.workers["reconciliation"] = ReconciliationWorker(
            interval_seconds=settings.reconciliation_interval_seconds
        )
        logger.info(f"Initialized {len(self.workers)} workers")

    async def start_all(self) -> None:
        """Start all workers."""
        for name, worker in self.workers.items():
            try:
                await worker.start()
            except Exception as e:
                logger.error(f"Failed to start worker {name}: {e!s}", exc_info=True)

        logger.info(f"Started {len(self.workers)} workers")

    async def stop_all(self) -> None:
        """Stop all running workers gracefully."""
        running = {name: worker for name, worker in self.workers.items() if worker.is_running}
        results = await asyncio.gather(*(w.stop() for w in running.values()), return_exceptions=True)

        for name, result in zip(running.keys(), results):
            if isinstance(result, Exception):
                logger.error(f"Error stopping worker {name}: {result!s}")

        logger.info("All workers stopped")

    def get_worker(self, name: str) -> BaseWorker:
        """
        Get a specific worker by name.

        Raises:
            KeyError: If worker not found
        """
        return self.workers[name]

    def get_worker_status(self) -> Dict[str, Dict[str, Any]]:
        """Running state, interval and last outcome of every worker."""
        return {
            name: {
                "running": worker.is_running,
                "interval_seconds": worker.interval_seconds,
                "last_run_at": worker.last_run_at.isoformat() if worker.last_run_at else None,
                "last_error": worker.last_error,
            }
            for name, worker in self.workers.items()
        }


# Global worker manager instance
worker_manager = WorkerManager()
