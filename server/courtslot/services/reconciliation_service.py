"""Periodic repair of drift between transactions, bookings and cart items."""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import facility_now
from ..core.config import Settings, settings
from ..core.exceptions import InvariantViolation
from ..core.observability import MetricsCollector
from ..core.time_range import TimeRange
from ..models.booking import CONFIRMED_BOOKING_STATUSES, Booking, BookingStatus, PaymentStatus
from ..models.cart import ApprovalStatus, CartItem, CartItemStatus, CartTransaction, TransactionStatus
from ..models.waitlist import WaitlistEntry, WaitlistStatus
from .cart_service import CartService
from .cascade import (
    apply_transaction_status,
    booking_agrees,
    drifted_transactions_clause,
    expected_child_statuses,
    item_agrees,
    load_children,
    refresh_transaction_total,
)
from .notifications import NotificationSender, dispatch_events, get_notification_sender
from .waitlist_service import WaitlistEffects, WaitlistService

logger = logging.getLogger(__name__)

CART_EXPIRED_REASON = "Cart expired before checkout"
PAYMENT_EXPIRED_REASON = "Payment not received in time"


@dataclass
class SweepReport:
    """What one reconciliation sweep changed."""

    started_at: datetime
    repaired_transactions: int = 0
    reverted_checkouts: int = 0
    expired_carts: int = 0
    expired_checkouts: int = 0
    expired_waitlist_entries: int = 0
    completed_bookings: int = 0
    promotions: int = 0
    unrepairable: int = 0
    errors: int = 0

    def to_dict(self) -> dict:
        report = asdict(self)
        report["started_at"] = self.started_at.isoformat()
        return report


class ReconciliationService:
    """
    Compensating sweep over persisted state.

    Every repair goes through the same cascade the live operations use, so
    a sweep can only bring children in line with their transaction, never
    override a decision. Each transaction is repaired in its own unit of
    work; one failure is logged and the sweep moves on.
    """

    def __init__(
        self,
        db: AsyncSession,
        waitlist: WaitlistService | None = None,
        notifier: NotificationSender | None = None,
        config: Settings | None = None,
    ):
        self.db = db
        self.config = config or settings
        self.notifier = notifier or get_notification_sender()
        self.waitlist = waitlist or WaitlistService(db, notifier=self.notifier)

    async def sweep(self, now: datetime | None = None, batch_size: int = 200) -> SweepReport:
        now = now or facility_now()
        report = SweepReport(started_at=now)

        await self.revert_checkouts_without_bookings(report, now, batch_size)
        await self.repair_mismatches(report, now, batch_size)
        await self.expire_stale_carts(report, now, batch_size)
        await self.expire_unpaid_checkouts(report, now, batch_size)
        report.expired_waitlist_entries = await self.waitlist.expire_overdue(now, limit=batch_size)
        await self.promote_freed_slots(report, now, batch_size)
        await self.complete_finished_bookings(report, now, batch_size)

        logger.info("Reconciliation sweep finished", extra=report.to_dict())
        return report

    async def find_violations(self, limit: int = 200) -> list[InvariantViolation]:
        """Transactions whose children disagree with them, without changing anything."""
        violations = []
        for transaction in await self._drifted_transactions(limit):
            violation = await self._check_transaction(transaction)
            if violation is not None:
                violations.append(violation)
        return violations

    async def repair_mismatches(self, report: SweepReport, now: datetime, limit: int) -> None:
        """Cascade every drifted transaction's status onto its children, one page at a time."""
        after = None
        while True:
            page = [t.id for t in await self._drifted_transactions(limit, after=after)]
            for transaction_id in page:
                await self._repair_transaction(report, transaction_id, now)
            if len(page) < limit:
                return
            after = page[-1]

    async def _repair_transaction(self, report: SweepReport, transaction_id: UUID, now: datetime) -> None:
        try:
            transaction = await self._get_transaction(transaction_id)
            violation = await self._check_transaction(transaction)
            if violation is None:
                return
            logger.warning(
                "Invariant violation detected",
                extra={"transaction_id": violation.transaction_id, "kind": violation.kind, "detail": str(violation)}
            )

            if (
                transaction.approval_status == ApprovalStatus.APPROVED
                and transaction.status != TransactionStatus.CANCELLED
            ):
                conflict = await self._approval_conflict(transaction)
                if conflict is not None:
                    await self.db.rollback()
                    report.unrepairable += 1
                    MetricsCollector.record_reconciliation_repair("approval_conflict")
                    logger.warning(
                        "Drifted booking left unapproved, its slot is confirmed for someone else",
                        extra={"transaction_id": violation.transaction_id, "detail": str(violation), **conflict}
                    )
                    return

            cascade = await apply_transaction_status(self.db, transaction, now)
            effects = await self.waitlist.handle_released_bookings(cascade.released_bookings, now)
            if transaction.approval_status == ApprovalStatus.APPROVED:
                effects.extend(await self.waitlist.handle_approved_bookings(cascade.bookings, now))
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            report.errors += 1
            logger.error(
                "Failed to repair transaction",
                exc_info=True,
                extra={"transaction_id": str(transaction_id), "error": str(e)}
            )
            return

        report.repaired_transactions += 1
        MetricsCollector.record_reconciliation_repair(violation.kind)
        await self._finish(report, effects)

    async def _approval_conflict(self, transaction: CartTransaction) -> dict | None:
        """
        Confirmed bookings of other transactions overlapping this one's drifted bookings.

        Takes the same slot locks approval does; they are held until the
        caller commits or rolls back.
        """
        bookings, _ = await load_children(self.db, transaction)
        drifted = [b for b in bookings if b.status not in CONFIRMED_BOOKING_STATUSES]
        if not drifted:
            return None

        await self.waitlist.resources.lock_slot_windows((b.resource_id, b.time_range) for b in drifted)
        own_ids = {b.id for b in bookings}
        for booking in drifted:
            conflicts = await self.waitlist.availability.find_confirmed_conflicts(
                booking.resource_id, booking.time_range, exclude_booking_ids=own_ids
            )
            if conflicts:
                return {
                    "booking_id": str(booking.id),
                    "conflicting_booking_ids": [str(c.id) for c in conflicts],
                }
        return None

    async def promote_freed_slots(self, report: SweepReport, now: datetime, limit: int) -> None:
        """
        Offer queued slots whose hold lapsed without being released.

        A paid booking stops holding its slot once the grace window passes,
        and nothing else notifies the queue when that happens.
        """
        result = await self.db.execute(
            select(
                WaitlistEntry.resource_id,
                WaitlistEntry.booking_date,
                WaitlistEntry.start_time,
                WaitlistEntry.end_time,
            )
            .where(
                WaitlistEntry.status == WaitlistStatus.PENDING,
                WaitlistEntry.booking_date >= now.date() - timedelta(days=1),
            )
            .distinct()
            .limit(limit)
        )
        slots = [(resource_id, TimeRange(day, start, end)) for resource_id, day, start, end in result.all()]
        for resource_id, time_range in slots:
            if time_range.starts_at <= now:
                continue
            try:
                promotion = await self.waitlist.promote_next(resource_id, time_range, now)
            except Exception as e:
                await self.db.rollback()
                report.errors += 1
                logger.error(
                    "Failed to promote freed slot",
                    exc_info=True,
                    extra={"resource_id": str(resource_id), "time_range": str(time_range), "error": str(e)}
                )
                continue
            if promotion is not None:
                report.promotions += 1
                logger.info(
                    "Lapsed hold handed to waitlist",
                    extra={"resource_id": str(resource_id), "time_range": str(time_range)}
                )

    async def revert_checkouts_without_bookings(self, report: SweepReport, now: datetime, limit: int) -> None:
        """Reopen transactions that were marked checked out but never got their bookings."""
        result = await self.db.execute(
            select(CartTransaction.id)
            .where(
                CartTransaction.status == TransactionStatus.COMPLETED,
                CartTransaction.approval_status == ApprovalStatus.PENDING,
                ~select(Booking.id).where(Booking.cart_transaction_id == CartTransaction.id).exists(),
            )
            .limit(limit)
        )
        for transaction_id in result.scalars().all():
            try:
                transaction = await self._get_transaction(transaction_id)
                transaction.checked_out_at = None
                await apply_transaction_status(self.db, transaction, now, status=TransactionStatus.PENDING)
                await self.db.commit()
            except Exception as e:
                await self.db.rollback()
                report.errors += 1
                logger.error(
                    "Failed to revert checkout",
                    exc_info=True,
                    extra={"transaction_id": str(transaction_id), "error": str(e)}
                )
                continue
            report.reverted_checkouts += 1
            MetricsCollector.record_reconciliation_repair("missing_bookings")
            logger.info("Checkout without bookings reverted", extra={"transaction_id": str(transaction_id)})

    async def expire_stale_carts(self, report: SweepReport, now: datetime, limit: int) -> None:
        """
        Drop pending items from open carts idle for longer than the cart TTL.

        Waitlisted items keep their queue positions, so a cart holding any
        stays open. A cart left with nothing open is cancelled.
        """
        cutoff = now - timedelta(minutes=self.config.cart_ttl_minutes)
        open_item = select(CartItem.id).where(CartItem.cart_transaction_id == CartTransaction.id)
        result = await self.db.execute(
            select(CartTransaction.id)
            .where(
                CartTransaction.status == TransactionStatus.PENDING,
                CartTransaction.promoted_from_entry_id.is_(None),
                CartTransaction.updated_at < cutoff,
                or_(
                    open_item.where(CartItem.status == CartItemStatus.PENDING).exists(),
                    ~open_item.where(CartItem.status == CartItemStatus.WAITLISTED).exists(),
                ),
            )
            .limit(limit)
        )
        for transaction_id in result.scalars().all():
            try:
                transaction = await self._get_transaction(transaction_id)
                await self._withdraw_pending_items(transaction, now)
                if await refresh_transaction_total(self.db, transaction):
                    transaction.updated_at = now
                else:
                    await apply_transaction_status(
                        self.db, transaction, now, status=TransactionStatus.CANCELLED, reason=CART_EXPIRED_REASON
                    )
                await self.db.commit()
            except Exception as e:
                await self.db.rollback()
                report.errors += 1
                logger.error(
                    "Failed to expire cart",
                    exc_info=True,
                    extra={"transaction_id": str(transaction_id), "error": str(e)}
                )
                continue
            report.expired_carts += 1
            MetricsCollector.record_reconciliation_repair("cart_expired")
            logger.info("Stale cart expired", extra={"transaction_id": str(transaction_id)})

    async def expire_unpaid_checkouts(self, report: SweepReport, now: datetime, limit: int) -> None:
        """
        Reject checked-out transactions still unpaid past the cart TTL.

        Their slots go to the waitlist. Transactions opened by a promotion
        are governed by the entry's own deadline instead.
        """
        cutoff = now - timedelta(minutes=self.config.cart_ttl_minutes)
        result = await self.db.execute(
            select(CartTransaction.id)
            .where(
                CartTransaction.status == TransactionStatus.COMPLETED,
                CartTransaction.approval_status == ApprovalStatus.PENDING,
                CartTransaction.payment_status == PaymentStatus.UNPAID,
                CartTransaction.promoted_from_entry_id.is_(None),
                CartTransaction.checked_out_at < cutoff,
            )
            .limit(limit)
        )
        for transaction_id in result.scalars().all():
            try:
                transaction = await self._get_transaction(transaction_id)
                cascade = await apply_transaction_status(
                    self.db,
                    transaction,
                    now,
                    approval_status=ApprovalStatus.REJECTED,
                    actor="system",
                    reason=PAYMENT_EXPIRED_REASON,
                )
                effects = await self.waitlist.handle_released_bookings(cascade.released_bookings, now)
                effects.rejected_bookings[:0] = cascade.released_bookings
                await self.db.commit()
            except Exception as e:
                await self.db.rollback()
                report.errors += 1
                logger.error(
                    "Failed to expire unpaid checkout",
                    exc_info=True,
                    extra={"transaction_id": str(transaction_id), "error": str(e)}
                )
                continue
            report.expired_checkouts += 1
            MetricsCollector.record_reconciliation_repair("payment_expired")
            MetricsCollector.record_transaction_decision("expire")
            await self._finish(report, effects)

    async def complete_finished_bookings(self, report: SweepReport, now: datetime, limit: int) -> None:
        """Move checked-in bookings whose range has ended to completed."""
        result = await self.db.execute(
            select(Booking)
            .where(
                Booking.status == BookingStatus.CHECKED_IN,
                Booking.booking_date <= now.date(),
            )
            .limit(limit)
        )
        finished = [b for b in result.scalars().all() if b.time_range.ends_at <= now]
        for booking in finished:
            booking.status = BookingStatus.COMPLETED
            booking.updated_at = now
        if finished:
            await self.db.commit()
            report.completed_bookings += len(finished)
            logger.info("Checked-in bookings completed", extra={"count": len(finished)})

    # Helpers

    async def _get_transaction(self, transaction_id: UUID) -> CartTransaction:
        result = await self.db.execute(
            select(CartTransaction)
            .where(CartTransaction.id == transaction_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def _check_transaction(self, transaction: CartTransaction) -> InvariantViolation | None:
        expected = expected_child_statuses(transaction)
        bookings, items = await load_children(self.db, transaction)

        if expected.booking is not None:
            wrong = [b for b in bookings if not booking_agrees(expected.booking, b.status)]
            if wrong:
                return InvariantViolation(
                    str(transaction.id),
                    f"{len(wrong)} booking(s) not {expected.booking.value}",
                    kind="booking_mismatch",
                )
        wrong_items = [i for i in items if not item_agrees(expected.item, i.status)]
        if wrong_items:
            return InvariantViolation(
                str(transaction.id),
                f"{len(wrong_items)} cart item(s) not {expected.item.value}",
                kind="item_mismatch",
            )
        return None

    async def _drifted_transactions(self, limit: int, after: UUID | None = None) -> list[CartTransaction]:
        stmt = select(CartTransaction).where(drifted_transactions_clause())
        if after is not None:
            stmt = stmt.where(CartTransaction.id > after)
        result = await self.db.execute(
            stmt.order_by(CartTransaction.id).limit(limit).execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def _withdraw_pending_items(self, transaction: CartTransaction, now: datetime) -> None:
        result = await self.db.execute(
            select(CartItem).where(
                CartItem.cart_transaction_id == transaction.id,
                CartItem.status == CartItemStatus.PENDING,
            )
        )
        items = list(result.scalars().all())
        if items:
            await CartService(self.db, waitlist=self.waitlist, notifier=self.notifier).withdraw_items(items, now)

    async def _finish(self, report: SweepReport, effects: WaitlistEffects) -> None:
        report.promotions += len(effects.promotions)
        await dispatch_events(self.notifier, effects.events())
