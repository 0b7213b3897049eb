"""Slot availability classification."""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Collection, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import facility_now
from ..core.config import Settings, settings
from ..core.time_range import TimeRange
from ..models.booking import (
    CONFIRMED_BOOKING_STATUSES,
    LIVE_BOOKING_STATUSES,
    Booking,
    BookingStatus,
    PaymentStatus,
)
from ..models.cart import ApprovalStatus, CartItem, CartItemStatus, CartTransaction, TransactionStatus
from ..schemas.resource import SlotState

logger = logging.getLogger(__name__)

_STATE_RANK = {SlotState.AVAILABLE.value: 0, SlotState.SOFT_HELD.value: 1, SlotState.BLOCKED.value: 2}


@dataclass(frozen=True)
class HoldPolicy:
    """
    Decides whether a reservation occupies its slot.

    Confirmed reservations always block. A pending reservation holds the slot
    softly only once it is paid, and then only while it is recent or when it
    belongs to staff. Unpaid reservations are invisible.
    """

    grace_window: timedelta = timedelta(minutes=60)
    staff_holds_always_block: bool = True

    @classmethod
    def from_settings(cls, config: Settings) -> "HoldPolicy":
        return cls(
            grace_window=timedelta(minutes=config.pending_hold_grace_minutes),
            staff_holds_always_block=config.staff_holds_always_block,
        )

    def state_for(
        self,
        status: str,
        payment_status: str,
        owner_is_staff: bool,
        created_at: datetime,
        as_of: datetime,
    ) -> SlotState:
        if status in CONFIRMED_BOOKING_STATUSES:
            return SlotState.BLOCKED
        if status != BookingStatus.PENDING or payment_status != PaymentStatus.PAID:
            return SlotState.AVAILABLE
        if owner_is_staff and self.staff_holds_always_block:
            return SlotState.SOFT_HELD
        if created_at >= as_of - self.grace_window:
            return SlotState.SOFT_HELD
        return SlotState.AVAILABLE


@dataclass(frozen=True)
class Classification:
    """Result of classifying one court/time range."""

    state: SlotState
    blocking_booking_id: Optional[UUID] = None
    blocking_cart_item_id: Optional[UUID] = None
    blocking_user_id: Optional[str] = None

    @property
    def is_available(self) -> bool:
        return self.state == SlotState.AVAILABLE


AVAILABLE = Classification(SlotState.AVAILABLE)


@dataclass
class _SlotWindow:
    """Live reservations on one court across a window of days."""

    bookings: list[Booking] = field(default_factory=list)
    cart_items: list[tuple[CartItem, CartTransaction]] = field(default_factory=list)


def generate_day_slots(day: date, open_time: time, close_time: time, slot_minutes: int) -> list[TimeRange]:
    """
    Fixed-length slots from ``open_time`` to ``close_time``.

    A close at or before the opening time is on the following day, so an
    ``08:00``-``00:00`` day ends with the ``23:00-00:00`` slot. Slots that start
    after midnight are dated on the following day.
    """
    step = timedelta(minutes=slot_minutes)
    cursor = datetime.combine(day, open_time)
    close_day = day if close_time > open_time else day + timedelta(days=1)
    closing = datetime.combine(close_day, close_time)

    slots = []
    while cursor + step <= closing:
        slot_end = cursor + step
        slots.append(TimeRange(cursor.date(), cursor.time(), slot_end.time()))
        cursor = slot_end
    return slots


class AvailabilityService:
    """Service answering whether a court is free for a time range."""

    def __init__(self, db: AsyncSession, policy: HoldPolicy | None = None):
        self.db = db
        self.policy = policy or HoldPolicy.from_settings(settings)

    async def classify(
        self,
        resource_id: UUID,
        time_range: TimeRange,
        as_of: datetime | None = None,
        *,
        requesting_user_id: str | None = None,
        exclude_booking_ids: Collection[UUID] = (),
        exclude_transaction_id: UUID | None = None,
    ) -> Classification:
        """
        Classify ``time_range`` on a court as available, soft-held or blocked.

        Bookings and other users' in-flight cart items on the previous, same
        and next day are compared on absolute datetimes, so ranges running
        past midnight are matched against the following day's records and
        vice versa.

        Args:
            resource_id: Court to check
            time_range: Candidate range
            as_of: Instant the hold policy is evaluated at (defaults to now)
            requesting_user_id: Caller, whose own cart items are ignored
            exclude_booking_ids: Bookings to ignore (the caller's own, on re-validation)
            exclude_transaction_id: Cart transaction to ignore (the one checking out)

        Returns:
            The strongest hold found, with the blocking booking when soft-held
        """
        as_of = as_of or facility_now()
        window = await self._load_window(resource_id, time_range.window_days())
        return self._evaluate(
            time_range,
            window,
            as_of,
            requesting_user_id=requesting_user_id,
            exclude_booking_ids=set(exclude_booking_ids),
            exclude_transaction_id=exclude_transaction_id,
        )

    async def list_day_slots(
        self,
        resource_id: UUID,
        day: date,
        as_of: datetime | None = None,
        requesting_user_id: str | None = None,
    ) -> list[tuple[TimeRange, Classification]]:
        """Classify every slot of the facility's grid for one day."""
        as_of = as_of or facility_now()
        slots = generate_day_slots(day, settings.operating_open, settings.operating_close, settings.slot_minutes)
        if not slots:
            return []

        # Slots never span more than the three-day window around the first one
        days = sorted({d for slot in slots for d in slot.window_days()})
        window = await self._load_window(resource_id, days)
        return [
            (slot, self._evaluate(slot, window, as_of, requesting_user_id=requesting_user_id))
            for slot in slots
        ]

    async def find_confirmed_conflicts(
        self,
        resource_id: UUID,
        time_range: TimeRange,
        exclude_booking_ids: Collection[UUID] = (),
    ) -> list[Booking]:
        """Confirmed bookings overlapping ``time_range``, used as the approval guard."""
        stmt = select(Booking).where(
            Booking.resource_id == resource_id,
            Booking.booking_date.in_(time_range.window_days()),
            Booking.status.in_(CONFIRMED_BOOKING_STATUSES),
        )
        result = await self.db.execute(stmt)
        excluded = set(exclude_booking_ids)
        return [
            booking for booking in result.scalars().all()
            if booking.id not in excluded and booking.time_range.overlaps(time_range)
        ]

    async def _load_window(self, resource_id: UUID, days: list[date]) -> _SlotWindow:
        bookings = await self.db.execute(
            select(Booking).where(
                Booking.resource_id == resource_id,
                Booking.booking_date.in_(days),
                Booking.status.in_(LIVE_BOOKING_STATUSES),
            )
        )
        items = await self.db.execute(
            select(CartItem, CartTransaction)
            .join(CartTransaction, CartItem.cart_transaction_id == CartTransaction.id)
            .where(
                CartItem.resource_id == resource_id,
                CartItem.booking_date.in_(days),
                CartItem.booking_id.is_(None),
                CartItem.status.in_((CartItemStatus.PENDING, CartItemStatus.COMPLETED, CartItemStatus.APPROVED)),
                CartTransaction.status != TransactionStatus.CANCELLED,
                CartTransaction.approval_status != ApprovalStatus.REJECTED,
            )
        )
        return _SlotWindow(
            bookings=list(bookings.scalars().all()),
            cart_items=[(item, tx) for item, tx in items.all()],
        )

    def _evaluate(
        self,
        time_range: TimeRange,
        window: _SlotWindow,
        as_of: datetime,
        *,
        requesting_user_id: str | None = None,
        exclude_booking_ids: set[UUID] | None = None,
        exclude_transaction_id: UUID | None = None,
    ) -> Classification:
        exclude_booking_ids = exclude_booking_ids or set()
        strongest = AVAILABLE

        # Oldest first, so the reported blocker is the earliest claim
        for booking in sorted(window.bookings, key=lambda b: b.created_at):
            if booking.id in exclude_booking_ids or not booking.time_range.overlaps(time_range):
                continue
            state = self.policy.state_for(
                booking.status, booking.payment_status, booking.owner_is_staff, booking.created_at, as_of
            )
            if _STATE_RANK[state.value] > _STATE_RANK[strongest.state.value]:
                strongest = Classification(state, blocking_booking_id=booking.id, blocking_user_id=booking.user_id)
                if state == SlotState.BLOCKED:
                    return strongest

        for item, tx in sorted(window.cart_items, key=lambda pair: pair[1].created_at):
            if tx.id == exclude_transaction_id or item.user_id == requesting_user_id:
                continue
            if not item.time_range.overlaps(time_range):
                continue
            status = BookingStatus.APPROVED if tx.approval_status == ApprovalStatus.APPROVED else BookingStatus.PENDING
            state = self.policy.state_for(status, tx.payment_status, tx.owner_is_staff, tx.created_at, as_of)
            if _STATE_RANK[state.value] > _STATE_RANK[strongest.state.value]:
                strongest = Classification(state, blocking_cart_item_id=item.id, blocking_user_id=item.user_id)
                if state == SlotState.BLOCKED:
                    return strongest

        return strongest
