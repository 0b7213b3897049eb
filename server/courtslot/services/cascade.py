"""Propagation of a cart transaction's status onto its bookings and items."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.booking import CONFIRMED_BOOKING_STATUSES, Booking, BookingStatus
from ..models.cart import ApprovalStatus, CartItem, CartItemStatus, CartTransaction, TransactionStatus

logger = logging.getLogger(__name__)

# Bookings in these states hold or may hold their slot
_HOLDING_STATUSES = (BookingStatus.PENDING, BookingStatus.APPROVED)
_RELEASED_STATUSES = (BookingStatus.REJECTED, BookingStatus.CANCELLED)


@dataclass(frozen=True)
class ExpectedChildren:
    """Statuses a transaction's children must be in; ``booking`` is None before checkout."""

    booking: Optional[BookingStatus]
    item: CartItemStatus


def expected_child_statuses(tx: CartTransaction) -> ExpectedChildren:
    if tx.status == TransactionStatus.CANCELLED:
        return ExpectedChildren(BookingStatus.CANCELLED, CartItemStatus.CANCELLED)
    if tx.approval_status == ApprovalStatus.APPROVED:
        return ExpectedChildren(BookingStatus.APPROVED, CartItemStatus.APPROVED)
    if tx.approval_status == ApprovalStatus.REJECTED:
        return ExpectedChildren(BookingStatus.REJECTED, CartItemStatus.REJECTED)
    if tx.status == TransactionStatus.COMPLETED:
        return ExpectedChildren(BookingStatus.PENDING, CartItemStatus.COMPLETED)
    return ExpectedChildren(None, CartItemStatus.PENDING)


def booking_agrees(expected: Optional[BookingStatus], actual: str) -> bool:
    """Check-in and completion are later stages of an approved booking."""
    if expected == BookingStatus.APPROVED:
        return actual in CONFIRMED_BOOKING_STATUSES
    return actual == expected


def item_agrees(expected: CartItemStatus, actual: str) -> bool:
    # Items removed by the user stay cancelled; waitlisted items live in open carts
    if actual == CartItemStatus.CANCELLED:
        return True
    if expected == CartItemStatus.PENDING:
        return actual in (CartItemStatus.PENDING, CartItemStatus.WAITLISTED)
    return actual == expected


def _child_exists(model, *conditions):
    return select(model.id).where(model.cart_transaction_id == CartTransaction.id, *conditions).exists()


def drifted_transactions_clause():
    """
    SQL condition matching checked-out or closed transactions with a child out of line.

    Mirrors ``expected_child_statuses`` together with ``booking_agrees`` and
    ``item_agrees``, so the sweep only loads transactions that need repair.
    """
    cancelled = CartTransaction.status == TransactionStatus.CANCELLED
    decided = CartTransaction.status != TransactionStatus.CANCELLED
    expectations = [
        (cancelled, (BookingStatus.CANCELLED,), (CartItemStatus.CANCELLED,)),
        (
            and_(decided, CartTransaction.approval_status == ApprovalStatus.APPROVED),
            CONFIRMED_BOOKING_STATUSES,
            (CartItemStatus.APPROVED, CartItemStatus.CANCELLED),
        ),
        (
            and_(decided, CartTransaction.approval_status == ApprovalStatus.REJECTED),
            (BookingStatus.REJECTED,),
            (CartItemStatus.REJECTED, CartItemStatus.CANCELLED),
        ),
        (
            and_(
                CartTransaction.status == TransactionStatus.COMPLETED,
                CartTransaction.approval_status == ApprovalStatus.PENDING,
            ),
            (BookingStatus.PENDING,),
            (CartItemStatus.COMPLETED, CartItemStatus.CANCELLED),
        ),
    ]
    return or_(*(
        and_(
            parent,
            or_(
                _child_exists(Booking, Booking.status.not_in(booking_statuses)),
                _child_exists(CartItem, CartItem.status.not_in(item_statuses)),
            ),
        )
        for parent, booking_statuses, item_statuses in expectations
    ))


@dataclass
class CascadeResult:
    """Children changed by one cascade."""

    transaction: CartTransaction
    bookings: list[Booking] = field(default_factory=list)
    changed_bookings: list[Booking] = field(default_factory=list)
    released_bookings: list[Booking] = field(default_factory=list)
    changed_items: list[CartItem] = field(default_factory=list)

    @property
    def booking_ids(self):
        return [booking.id for booking in self.bookings]


async def load_children(db: AsyncSession, tx: CartTransaction) -> tuple[list[Booking], list[CartItem]]:
    bookings = await db.execute(
        select(Booking).where(Booking.cart_transaction_id == tx.id).order_by(Booking.booking_date, Booking.start_time)
    )
    items = await db.execute(
        select(CartItem).where(CartItem.cart_transaction_id == tx.id).order_by(CartItem.created_at)
    )
    return list(bookings.scalars().all()), list(items.scalars().all())


async def refresh_transaction_total(db: AsyncSession, tx: CartTransaction) -> int:
    """
    Recompute an open cart's total from its pending items.

    Returns the number of items still open (pending or waitlisted). Totals of
    checked-out transactions are left as charged.
    """
    result = await db.execute(
        select(CartItem).where(
            CartItem.cart_transaction_id == tx.id,
            CartItem.status.in_((CartItemStatus.PENDING, CartItemStatus.WAITLISTED)),
        )
    )
    open_items = list(result.scalars().all())
    if tx.status == TransactionStatus.PENDING:
        tx.total_price_amount = sum(
            item.price_amount for item in open_items if item.status == CartItemStatus.PENDING
        )
    return len(open_items)


async def apply_transaction_status(
    db: AsyncSession,
    tx: CartTransaction,
    now: datetime,
    *,
    status: Optional[TransactionStatus] = None,
    approval_status: Optional[ApprovalStatus] = None,
    actor: Optional[str] = None,
    reason: Optional[str] = None,
) -> CascadeResult:
    """
    Set a transaction's status and bring every child into agreement with it.

    This is the only place transaction statuses reach bookings and cart
    items. Called with no target it re-applies the transaction's current
    state, which is how reconciliation repairs drift. Nothing is committed;
    the caller owns the unit of work.

    Args:
        db: Session holding the unit of work
        tx: Transaction to update
        now: Decision instant
        status: New checkout status, if changing
        approval_status: New approval status, if changing
        actor: Staff member deciding, recorded on approval or rejection
        reason: Rejection or cancellation reason

    Returns:
        The transaction's bookings, with those changed and those whose slot
        was released by this cascade
    """
    if status is not None:
        tx.status = status
    if approval_status is not None and approval_status != tx.approval_status:
        tx.approval_status = approval_status
        if approval_status in (ApprovalStatus.APPROVED, ApprovalStatus.REJECTED):
            tx.approved_by = actor
            tx.approved_at = now
    if reason is not None:
        tx.rejection_reason = reason
    tx.updated_at = now

    expected = expected_child_statuses(tx)
    bookings, items = await load_children(db, tx)
    result = CascadeResult(transaction=tx, bookings=bookings)

    if expected.booking is not None:
        for booking in bookings:
            if booking_agrees(expected.booking, booking.status):
                continue
            previous = booking.status
            booking.status = expected.booking
            booking.updated_at = now
            if expected.booking == BookingStatus.APPROVED:
                booking.approved_by = tx.approved_by
                booking.approved_at = tx.approved_at
            elif expected.booking in _RELEASED_STATUSES:
                booking.rejection_reason = tx.rejection_reason
                if previous in _HOLDING_STATUSES:
                    result.released_bookings.append(booking)
            result.changed_bookings.append(booking)

    for item in items:
        if item_agrees(expected.item, item.status):
            continue
        item.status = expected.item
        item.updated_at = now
        result.changed_items.append(item)

    await db.flush()

    logger.info(
        "Transaction status cascaded",
        extra={
            "transaction_id": str(tx.id),
            "status": tx.status,
            "approval_status": tx.approval_status,
            "bookings_changed": len(result.changed_bookings),
            "items_changed": len(result.changed_items),
            "slots_released": len(result.released_bookings),
        }
    )
    return result
