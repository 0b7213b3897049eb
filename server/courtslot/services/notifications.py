"""Notification events emitted after a state change commits."""

import logging
from dataclasses import asdict, dataclass
from datetime import date, datetime, time
from typing import Iterable, Optional, Protocol, Union
from uuid import UUID

import structlog

from ..core.observability import MetricsCollector

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WaitlistSlotAvailable:
    """A waitlisted user was promoted and must pay before ``expires_at``."""

    entry_id: UUID
    user_id: str
    resource_id: UUID
    booking_date: date
    start_time: time
    end_time: time
    booking_id: UUID
    expires_at: datetime


@dataclass(frozen=True)
class BookingApproved:
    booking_id: UUID
    user_id: str
    transaction_id: Optional[UUID]


@dataclass(frozen=True)
class BookingRejected:
    booking_id: UUID
    user_id: str
    reason: Optional[str]


NotificationEvent = Union[WaitlistSlotAvailable, BookingApproved, BookingRejected]


class NotificationSender(Protocol):
    """Delivers events to an external mailer or push system."""

    async def send(self, event: NotificationEvent) -> None:
        ...


class LoggingNotificationSender:
    """Writes each event to the structured log for a downstream consumer."""

    def __init__(self) -> None:
        self._log = structlog.get_logger("courtslot.notifications")

    async def send(self, event: NotificationEvent) -> None:
        payload = {key: str(value) if value is not None else None for key, value in asdict(event).items()}
        self._log.info("notification", event_type=type(event).__name__, **payload)


_default_sender: NotificationSender = LoggingNotificationSender()


def get_notification_sender() -> NotificationSender:
    return _default_sender


async def dispatch_events(sender: NotificationSender, events: Iterable[NotificationEvent]) -> int:
    """
    Deliver committed events one by one.

    A failed delivery is logged and counted; the remaining events are still
    sent. Returns the number of events delivered.
    """
    delivered = 0
    for event in events:
        try:
            await sender.send(event)
            delivered += 1
        except Exception as e:
            MetricsCollector.record_notification_failure(type(event).__name__)
            logger.error(
                "Notification delivery failed",
                exc_info=True,
                extra={"event_type": type(event).__name__, "error": str(e)}
            )
    return delivered
