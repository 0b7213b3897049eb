"""Waitlist service: queueing, promotion, expiry and conversion."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import facility_now
from ..core.exceptions import AuthorizationError, DeadlineExpiredError, InvalidStateTransition, NotFoundError
from ..core.observability import MetricsCollector
from ..core.time_range import TimeRange
from ..models.booking import Booking, BookingStatus, PaymentStatus
from ..models.cart import (
    ApprovalStatus,
    CartItem,
    CartItemStatus,
    CartTransaction,
    TransactionStatus,
)
from ..models.waitlist import ACTIVE_WAITLIST_STATUSES, WaitlistEntry, WaitlistStatus
from ..schemas.auth import Principal
from ..schemas.resource import SlotState
from .availability_service import AvailabilityService
from .business_hours import BusinessHoursCalculator, get_business_hours_calculator
from .cascade import apply_transaction_status, refresh_transaction_total
from .notifications import (
    BookingRejected,
    NotificationEvent,
    NotificationSender,
    WaitlistSlotAvailable,
    dispatch_events,
    get_notification_sender,
)
from .resource_service import ResourceService

logger = logging.getLogger(__name__)

EXPIRED_REASON = "Waitlist payment window expired"
WITHDRAWN_REASON = "Waitlist entry withdrawn"
SUPERSEDED_REASON = "Slot was confirmed for another booking"


@dataclass
class Promotion:
    """A waitlist entry moved to notified, with the booking created for it."""

    entry: WaitlistEntry
    booking: Booking
    transaction: CartTransaction

    def to_event(self) -> WaitlistSlotAvailable:
        return WaitlistSlotAvailable(
            entry_id=self.entry.id,
            user_id=self.entry.user_id,
            resource_id=self.entry.resource_id,
            booking_date=self.entry.booking_date,
            start_time=self.entry.start_time,
            end_time=self.entry.end_time,
            booking_id=self.booking.id,
            expires_at=self.entry.expires_at,
        )


@dataclass
class WaitlistEffects:
    """Waitlist changes made inside another operation's unit of work."""

    promotions: list[Promotion] = field(default_factory=list)
    cancelled_entries: list[WaitlistEntry] = field(default_factory=list)
    rejected_bookings: list[Booking] = field(default_factory=list)

    def extend(self, other: "WaitlistEffects") -> None:
        self.promotions.extend(other.promotions)
        self.cancelled_entries.extend(other.cancelled_entries)
        self.rejected_bookings.extend(other.rejected_bookings)

    def events(self) -> list[NotificationEvent]:
        events: list[NotificationEvent] = [
            BookingRejected(booking_id=b.id, user_id=b.user_id, reason=b.rejection_reason)
            for b in self.rejected_bookings
        ]
        events.extend(promotion.to_event() for promotion in self.promotions)
        return events


class WaitlistService:
    """Service for waitlist operations."""

    def __init__(
        self,
        db: AsyncSession,
        calculator: BusinessHoursCalculator | None = None,
        availability: AvailabilityService | None = None,
        notifier: NotificationSender | None = None,
    ):
        self.db = db
        self.calculator = calculator or get_business_hours_calculator()
        self.availability = availability or AvailabilityService(db)
        self.notifier = notifier or get_notification_sender()
        self.resources = ResourceService(db)

    # Queries

    async def get_entry_by_id(self, entry_id: UUID) -> WaitlistEntry | None:
        result = await self.db.execute(
            select(WaitlistEntry)
            .where(WaitlistEntry.id == entry_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_entry_by_id_or_raise(self, entry_id: UUID) -> WaitlistEntry:
        entry = await self.get_entry_by_id(entry_id)
        if not entry:
            raise NotFoundError(resource_type="waitlist entry", resource_id=str(entry_id))
        return entry

    async def list_entries_for_user(self, user_id: str, active_only: bool = False) -> list[WaitlistEntry]:
        stmt = select(WaitlistEntry).where(WaitlistEntry.user_id == user_id)
        if active_only:
            stmt = stmt.where(WaitlistEntry.status.in_(ACTIVE_WAITLIST_STATUSES))
        result = await self.db.execute(stmt.order_by(WaitlistEntry.created_at.desc()))
        return list(result.scalars().all())

    async def list_entries_for_slot(
        self,
        resource_id: UUID,
        time_range: TimeRange,
        active_only: bool = True,
    ) -> list[WaitlistEntry]:
        """Queue for one exact court and time range, in position order."""
        stmt = select(WaitlistEntry).where(*self._slot_filter(resource_id, time_range))
        if active_only:
            stmt = stmt.where(WaitlistEntry.status.in_(ACTIVE_WAITLIST_STATUSES))
        result = await self.db.execute(stmt.order_by(WaitlistEntry.position, WaitlistEntry.created_at))
        return list(result.scalars().all())

    # Enqueue

    async def enqueue(
        self,
        user_id: str,
        resource_id: UUID,
        time_range: TimeRange,
        price_amount: int,
        blocking_booking_id: Optional[UUID],
        now: datetime | None = None,
    ) -> WaitlistEntry:
        """Queue a user behind the current holder of a slot."""
        now = now or facility_now()
        await self.resources.lock_slot_windows([(resource_id, time_range)])
        entry = await self.add_to_queue(user_id, resource_id, time_range, price_amount, blocking_booking_id, now)
        await self.db.commit()
        return entry

    async def add_to_queue(
        self,
        user_id: str,
        resource_id: UUID,
        time_range: TimeRange,
        price_amount: int,
        blocking_booking_id: Optional[UUID],
        now: datetime,
    ) -> WaitlistEntry:
        """
        Enqueue inside the caller's unit of work.

        A user already queued for the same slot keeps their entry and
        position. New entries go to the back of the active queue.
        """
        existing = await self.db.execute(
            select(WaitlistEntry).where(
                *self._slot_filter(resource_id, time_range),
                WaitlistEntry.user_id == user_id,
                WaitlistEntry.status.in_(ACTIVE_WAITLIST_STATUSES),
            )
        )
        entry = existing.scalars().first()
        if entry:
            if blocking_booking_id and entry.status == WaitlistStatus.PENDING:
                entry.pending_booking_id = blocking_booking_id
            return entry

        max_position = await self.db.execute(
            select(func.max(WaitlistEntry.position)).where(
                *self._slot_filter(resource_id, time_range),
                WaitlistEntry.status.in_(ACTIVE_WAITLIST_STATUSES),
            )
        )
        position = (max_position.scalar() or 0) + 1

        entry = WaitlistEntry(
            user_id=user_id,
            resource_id=resource_id,
            booking_date=time_range.day,
            start_time=time_range.start,
            end_time=time_range.end,
            price_amount=price_amount,
            position=position,
            status=WaitlistStatus.PENDING,
            pending_booking_id=blocking_booking_id,
            created_at=now,
            updated_at=now,
        )
        self.db.add(entry)
        await self.db.flush()

        logger.info(
            "Waitlist entry created",
            extra={
                "entry_id": str(entry.id),
                "user_id": user_id,
                "resource_id": str(resource_id),
                "time_range": str(time_range),
                "position": position,
                "blocking_booking_id": str(blocking_booking_id) if blocking_booking_id else None,
            }
        )
        return entry

    # Promotion

    async def promote_next(
        self,
        resource_id: UUID,
        time_range: TimeRange,
        now: datetime | None = None,
    ) -> Promotion | None:
        """Notify the next queued user for a slot, if the slot is free."""
        now = now or facility_now()
        await self.resources.lock_slot_windows([(resource_id, time_range)])
        promotion = await self.promote_next_in_unit(resource_id, time_range, now)
        await self.db.commit()
        if promotion:
            await dispatch_events(self.notifier, [promotion.to_event()])
        return promotion

    async def promote_next_in_unit(
        self,
        resource_id: UUID,
        time_range: TimeRange,
        now: datetime,
    ) -> Promotion | None:
        """
        Promote the lowest-positioned pending entry for an exact slot.

        No-op when the queue is empty or an entry is already notified. When
        the slot is still held by another booking, the queue is re-pointed
        at that booking instead. Otherwise the entry gets a business-hours
        deadline and a pending, unpaid booking inside a new transaction, and
        the cart items created when the user joined the queue are released.
        """
        queue = await self.list_entries_for_slot(resource_id, time_range)
        if not queue or any(entry.status == WaitlistStatus.NOTIFIED for entry in queue):
            return None

        classification = await self.availability.classify(resource_id, time_range, now)
        if classification.state == SlotState.BLOCKED:
            return None
        if classification.state == SlotState.SOFT_HELD:
            for entry in queue:
                entry.pending_booking_id = classification.blocking_booking_id
            await self.db.flush()
            return None

        entry = queue[0]
        entry.status = WaitlistStatus.NOTIFIED
        entry.notified_at = now
        entry.expires_at = self.calculator.next_business_deadline(now)
        entry.updated_at = now

        transaction = CartTransaction(
            user_id=entry.user_id,
            owner_is_staff=False,
            total_price_amount=entry.price_amount,
            status=TransactionStatus.COMPLETED,
            approval_status=ApprovalStatus.PENDING,
            payment_status=PaymentStatus.UNPAID,
            payment_method="pending",
            promoted_from_entry_id=entry.id,
            checked_out_at=now,
            created_at=now,
            updated_at=now,
        )
        self.db.add(transaction)
        await self.db.flush()

        booking = Booking(
            resource_id=resource_id,
            user_id=entry.user_id,
            owner_is_staff=False,
            booking_date=entry.booking_date,
            start_time=entry.start_time,
            end_time=entry.end_time,
            price_amount=entry.price_amount,
            status=BookingStatus.PENDING,
            payment_status=PaymentStatus.UNPAID,
            payment_method="pending",
            cart_transaction_id=transaction.id,
            waitlist_entry_id=entry.id,
            created_at=now,
            updated_at=now,
        )
        self.db.add(booking)
        await self.db.flush()

        self.db.add(CartItem(
            cart_transaction_id=transaction.id,
            user_id=entry.user_id,
            resource_id=resource_id,
            booking_date=entry.booking_date,
            start_time=entry.start_time,
            end_time=entry.end_time,
            price_amount=entry.price_amount,
            status=CartItemStatus.COMPLETED,
            booking_id=booking.id,
            created_at=now,
            updated_at=now,
        ))
        entry.promoted_booking_id = booking.id
        await self._release_queue_records(entry, now)
        await self.db.flush()

        MetricsCollector.record_waitlist_promotion()
        logger.info(
            "Waitlist entry promoted",
            extra={
                "entry_id": str(entry.id),
                "user_id": entry.user_id,
                "resource_id": str(resource_id),
                "time_range": str(time_range),
                "booking_id": str(booking.id),
                "expires_at": entry.expires_at.isoformat(),
            }
        )
        return Promotion(entry=entry, booking=booking, transaction=transaction)

    # Expiry

    async def expire_if_overdue(self, entry_id: UUID, now: datetime | None = None) -> WaitlistEntry:
        """
        Expire a notified entry whose deadline passed unpaid and promote the next one.

        Safe to call repeatedly or concurrently with approval: the
        notified-to-expired transition is a single compare-and-set, so only
        one caller can win it. An entry whose booking was paid in time is
        left for staff to approve.
        """
        now = now or facility_now()
        entry = await self.get_entry_by_id_or_raise(entry_id)
        await self.resources.lock_slot_windows([(entry.resource_id, entry.time_range)])
        entry = await self.get_entry_by_id_or_raise(entry_id)

        if not self.is_overdue(entry, now):
            return entry

        booking = await self._get_booking(entry.promoted_booking_id)
        if booking and booking.payment_status == PaymentStatus.PAID:
            return entry

        if not await self._compare_and_set(entry, WaitlistStatus.NOTIFIED, WaitlistStatus.EXPIRED, now):
            await self.db.rollback()
            return await self.get_entry_by_id_or_raise(entry_id)

        effects = WaitlistEffects()
        if booking is not None:
            effects.extend(await self._reject_promoted_booking(booking, EXPIRED_REASON, now))
        else:
            promotion = await self.promote_next_in_unit(entry.resource_id, entry.time_range, now)
            if promotion:
                effects.promotions.append(promotion)

        await self.db.commit()
        MetricsCollector.record_waitlist_expiration()
        logger.info(
            "Waitlist entry expired",
            extra={
                "entry_id": str(entry.id),
                "user_id": entry.user_id,
                "expired_booking_id": str(booking.id) if booking else None,
                "promoted_entry_ids": [str(p.entry.id) for p in effects.promotions],
            }
        )
        await dispatch_events(self.notifier, effects.events())
        return entry

    async def expire_overdue(self, now: datetime | None = None, limit: int = 100) -> int:
        """Expire every overdue notified entry; returns how many expired."""
        now = now or facility_now()
        result = await self.db.execute(
            select(WaitlistEntry.id)
            .where(
                WaitlistEntry.status == WaitlistStatus.NOTIFIED,
                WaitlistEntry.expires_at < now,
            )
            .order_by(WaitlistEntry.expires_at)
            .limit(limit)
        )
        entry_ids = list(result.scalars().all())

        expired = 0
        for entry_id in entry_ids:
            try:
                entry = await self.expire_if_overdue(entry_id, now)
            except Exception as e:
                await self.db.rollback()
                logger.error(
                    "Failed to expire waitlist entry",
                    exc_info=True,
                    extra={"entry_id": str(entry_id), "error": str(e)}
                )
                continue
            if entry.status == WaitlistStatus.EXPIRED:
                expired += 1
        return expired

    # Conversion

    async def convert_on_approval(self, entry_id: UUID, now: datetime | None = None) -> WaitlistEntry:
        """Mark a notified entry converted once its booking is approved."""
        now = now or facility_now()
        entry = await self.get_entry_by_id_or_raise(entry_id)
        booking = await self._get_booking(entry.promoted_booking_id)
        try:
            await self.claim_for_approval(entry, booking, now)
        except DeadlineExpiredError:
            await self.db.rollback()
            await self.expire_if_overdue(entry_id, now)
            raise
        await self.db.commit()
        return await self.get_entry_by_id_or_raise(entry_id)

    async def claim_for_approval(
        self,
        entry: WaitlistEntry,
        booking: Optional[Booking],
        now: datetime,
    ) -> None:
        """
        Move a notified entry to converted inside the caller's unit of work.

        Raises:
            DeadlineExpiredError: If the entry already expired or was
                withdrawn, or its deadline passed with the booking unpaid
        """
        if entry.status == WaitlistStatus.CONVERTED:
            return
        if entry.status != WaitlistStatus.NOTIFIED:
            raise DeadlineExpiredError(str(entry.id), entry.expires_at)
        paid = booking is not None and booking.payment_status == PaymentStatus.PAID
        if self.is_overdue(entry, now) and not paid:
            raise DeadlineExpiredError(str(entry.id), entry.expires_at)
        if not await self._compare_and_set(entry, WaitlistStatus.NOTIFIED, WaitlistStatus.CONVERTED, now):
            raise DeadlineExpiredError(str(entry.id), entry.expires_at)

        logger.info(
            "Waitlist entry converted",
            extra={"entry_id": str(entry.id), "booking_id": str(booking.id) if booking else None}
        )

    # Withdrawal

    async def leave(self, entry_id: UUID, user: Principal, now: datetime | None = None) -> WaitlistEntry:
        """Withdraw from the waitlist; a notified entry gives up its promoted booking."""
        now = now or facility_now()
        entry = await self.get_entry_by_id_or_raise(entry_id)
        if entry.user_id != user.user_id and not user.is_staff:
            raise AuthorizationError(detail="Only the owner or staff can withdraw a waitlist entry")
        if entry.status not in ACTIVE_WAITLIST_STATUSES:
            raise InvalidStateTransition("waitlist entry", str(entry.id), entry.status, "withdraw")

        await self.resources.lock_slot_windows([(entry.resource_id, entry.time_range)])
        entry = await self.get_entry_by_id_or_raise(entry_id)

        effects = WaitlistEffects()
        previous = entry.status
        if not await self._compare_and_set(entry, previous, WaitlistStatus.CANCELLED, now):
            await self.db.rollback()
            raise InvalidStateTransition("waitlist entry", str(entry.id), entry.status, "withdraw")

        if previous == WaitlistStatus.NOTIFIED:
            booking = await self._get_booking(entry.promoted_booking_id)
            if booking is not None:
                effects.extend(await self._reject_promoted_booking(booking, WITHDRAWN_REASON, now))
        else:
            await self._release_queue_records(entry, now)

        await self.db.commit()
        logger.info(
            "Waitlist entry withdrawn",
            extra={"entry_id": str(entry.id), "user_id": entry.user_id, "previous_status": previous}
        )
        await dispatch_events(self.notifier, effects.events())
        return await self.get_entry_by_id_or_raise(entry_id)

    # Effects of other operations

    async def handle_released_bookings(self, bookings: Iterable[Booking], now: datetime) -> WaitlistEffects:
        """
        React to bookings that were rejected or cancelled.

        A released promoted booking ends its notified entry. Every slot with
        a queue overlapping a released range is then offered to its next
        candidate. Runs inside the caller's unit of work.
        """
        effects = WaitlistEffects()
        bookings = list(bookings)

        for booking in bookings:
            if booking.waitlist_entry_id is None:
                continue
            entry = await self.get_entry_by_id(booking.waitlist_entry_id)
            if entry and entry.status == WaitlistStatus.NOTIFIED:
                await self._compare_and_set(entry, WaitlistStatus.NOTIFIED, WaitlistStatus.CANCELLED, now)
                effects.cancelled_entries.append(entry)

        promoted_slots: set[tuple[UUID, TimeRange]] = set()
        for booking in bookings:
            for slot in await self._queued_slots(booking.resource_id, booking.time_range):
                if (booking.resource_id, slot) in promoted_slots:
                    continue
                promoted_slots.add((booking.resource_id, slot))
                promotion = await self.promote_next_in_unit(booking.resource_id, slot, now)
                if promotion:
                    effects.promotions.append(promotion)

        return effects

    async def handle_approved_bookings(self, bookings: Iterable[Booking], now: datetime) -> WaitlistEffects:
        """
        Close queues made hopeless by confirmed bookings.

        Pending entries on overlapping slots are cancelled along with the
        cart items they were joined from. Notified entries on overlapping
        slots, other than the approved booking's own, lose their promoted
        booking. Runs inside the caller's unit of work.
        """
        effects = WaitlistEffects()
        for booking in bookings:
            result = await self.db.execute(
                select(WaitlistEntry).where(
                    WaitlistEntry.resource_id == booking.resource_id,
                    WaitlistEntry.booking_date.in_(booking.time_range.window_days()),
                    WaitlistEntry.status.in_(ACTIVE_WAITLIST_STATUSES),
                )
            )
            for entry in result.scalars().all():
                if entry.id == booking.waitlist_entry_id or not entry.time_range.overlaps(booking.time_range):
                    continue
                previous = entry.status
                if not await self._compare_and_set(entry, previous, WaitlistStatus.CANCELLED, now):
                    continue
                effects.cancelled_entries.append(entry)
                if previous == WaitlistStatus.NOTIFIED:
                    promoted = await self._get_booking(entry.promoted_booking_id)
                    if promoted is not None:
                        effects.extend(await self._reject_promoted_booking(promoted, SUPERSEDED_REASON, now))
                else:
                    await self._release_queue_records(entry, now)

        if effects.cancelled_entries:
            logger.info(
                "Waitlist entries closed by approval",
                extra={"entry_ids": [str(e.id) for e in effects.cancelled_entries]}
            )
        return effects

    # Helpers

    @staticmethod
    def _slot_filter(resource_id: UUID, time_range: TimeRange) -> tuple:
        return (
            WaitlistEntry.resource_id == resource_id,
            WaitlistEntry.booking_date == time_range.day,
            WaitlistEntry.start_time == time_range.start,
            WaitlistEntry.end_time == time_range.end,
        )

    @staticmethod
    def is_overdue(entry: WaitlistEntry, now: datetime) -> bool:
        return (
            entry.status == WaitlistStatus.NOTIFIED
            and entry.expires_at is not None
            and now > entry.expires_at
        )

    async def _get_booking(self, booking_id: Optional[UUID]) -> Booking | None:
        if booking_id is None:
            return None
        result = await self.db.execute(select(Booking).where(Booking.id == booking_id))
        return result.scalar_one_or_none()

    async def _compare_and_set(
        self,
        entry: WaitlistEntry,
        expected: WaitlistStatus,
        new: WaitlistStatus,
        now: datetime,
    ) -> bool:
        """Single-statement status transition; False if another writer got there first."""
        result = await self.db.execute(
            update(WaitlistEntry)
            .where(WaitlistEntry.id == entry.id, WaitlistEntry.status == expected)
            .values(status=new, resolved_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(entry)
        return result.rowcount == 1

    async def _queued_slots(self, resource_id: UUID, time_range: TimeRange) -> list[TimeRange]:
        """Distinct slots with pending entries overlapping ``time_range``."""
        result = await self.db.execute(
            select(WaitlistEntry.booking_date, WaitlistEntry.start_time, WaitlistEntry.end_time)
            .where(
                WaitlistEntry.resource_id == resource_id,
                WaitlistEntry.booking_date.in_(time_range.window_days()),
                WaitlistEntry.status == WaitlistStatus.PENDING,
            )
            .distinct()
        )
        slots = {TimeRange(day, start, end) for day, start, end in result.all()}
        return sorted(slot for slot in slots if slot.overlaps(time_range))

    async def _reject_promoted_booking(self, booking: Booking, reason: str, now: datetime) -> WaitlistEffects:
        """Reject a promoted booking through its transaction and pass the slot on."""
        effects = WaitlistEffects()
        if booking.cart_transaction_id is None:
            if booking.status in (BookingStatus.PENDING, BookingStatus.APPROVED):
                booking.status = BookingStatus.REJECTED
                booking.rejection_reason = reason
                booking.updated_at = now
                effects.rejected_bookings.append(booking)
                effects.extend(await self.handle_released_bookings([booking], now))
            return effects

        result = await self.db.execute(
            select(CartTransaction).where(CartTransaction.id == booking.cart_transaction_id)
        )
        transaction = result.scalar_one()
        cascade = await apply_transaction_status(
            self.db, transaction, now, approval_status=ApprovalStatus.REJECTED, reason=reason
        )
        MetricsCollector.record_transaction_decision("waitlist_release")
        effects.rejected_bookings.extend(cascade.released_bookings)
        effects.extend(await self.handle_released_bookings(cascade.released_bookings, now))
        return effects

    async def _release_queue_records(self, entry: WaitlistEntry, now: datetime) -> None:
        """
        Detach the cart items created when ``entry`` joined the queue.

        Their reference to the entry is cleared and, if still waitlisted,
        they are cancelled so that only the entry's own booking claims the
        slot. Open carts left with nothing in them are cancelled.
        """
        result = await self.db.execute(select(CartItem).where(CartItem.waitlist_entry_id == entry.id))
        items = list(result.scalars().all())
        transaction_ids = set()
        for item in items:
            item.waitlist_entry_id = None
            if item.status == CartItemStatus.WAITLISTED:
                item.status = CartItemStatus.CANCELLED
            item.updated_at = now
            transaction_ids.add(item.cart_transaction_id)
        await self.db.flush()

        for transaction_id in transaction_ids:
            tx_result = await self.db.execute(select(CartTransaction).where(CartTransaction.id == transaction_id))
            transaction = tx_result.scalar_one()
            remaining = await refresh_transaction_total(self.db, transaction)
            if transaction.status == TransactionStatus.PENDING and remaining == 0:
                await apply_transaction_status(self.db, transaction, now, status=TransactionStatus.CANCELLED)
