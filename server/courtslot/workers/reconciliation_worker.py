"""Background worker running the reconciliation sweep."""

import logging
from typing import Optional

from ..core.clock import facility_now
from ..core.database import async_session_factory
from ..services.reconciliation_service import ReconciliationService, SweepReport
from .base import BaseWorker

logger = logging.getLogger(__name__)


class ReconciliationWorker(BaseWorker):
    """Periodically repairs drift between transactions and their children."""

    def __init__(self, interval_seconds: int = 3600, session_factory=None, clock=facility_now):
        super().__init__(name="Reconciliation", interval_seconds=interval_seconds)
        self.session_factory = session_factory or async_session_factory
        self.clock = clock
        self.last_report: Optional[SweepReport] = None

    async def process(self) -> None:
        async with self.session_factory() as db:
            self.last_report = await ReconciliationService(db).sweep(self.clock())
