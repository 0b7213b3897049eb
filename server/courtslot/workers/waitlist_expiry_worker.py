"""Background worker for expiring unpaid waitlist promotions."""

import logging

from ..core.clock import facility_now
from ..core.database import async_session_factory
from ..services.waitlist_service import WaitlistService
from .base import BaseWorker

logger = logging.getLogger(__name__)


class WaitlistExpiryWorker(BaseWorker):
    """
    Expires notified waitlist entries whose payment deadline has passed.

    Each expiry rejects the promoted booking and offers the slot to the next
    entry in the queue.
    """

    def __init__(self, interval_seconds: int = 60, session_factory=None, clock=facility_now):
        super().__init__(name="WaitlistExpiry", interval_seconds=interval_seconds)
        self.session_factory = session_factory or async_session_factory
        self.clock = clock

    async def process(self) -> None:
        async with self.session_factory() as db:
            now = self.clock()
            expired_count = await WaitlistService(db).expire_overdue(now)

            if expired_count > 0:
                logger.info(
                    f"Expired {expired_count} waitlist entries",
                    extra={
                        "expired_count": expired_count,
                        "timestamp": now.isoformat(),
                        "worker": self.name,
                    }
                )
