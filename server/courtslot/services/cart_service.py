"""Cart lifecycle: add, checkout, payment, approval and cancellation."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional, Sequence
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import facility_now
from ..core.config import Settings, settings
from ..core.exceptions import (
    AuthorizationError,
    ConflictError,
    DeadlineExpiredError,
    InvalidStateTransition,
    NotFoundError,
    StaleStateError,
    ValidationError,
)
from ..core.observability import MetricsCollector
from ..core.time_range import TimeRange
from ..models.booking import CONFIRMED_BOOKING_STATUSES, Booking, BookingStatus, PaymentStatus
from ..models.cart import ApprovalStatus, CartItem, CartItemStatus, CartTransaction, TransactionStatus
from ..models.waitlist import WaitlistEntry, WaitlistStatus
from ..schemas.auth import Principal
from ..schemas.cart import CartItemInput
from ..schemas.resource import SlotState
from .availability_service import AvailabilityService, Classification
from .cascade import apply_transaction_status, load_children, refresh_transaction_total
from .notifications import BookingApproved, NotificationSender, dispatch_events, get_notification_sender
from .resource_service import ResourceService
from .waitlist_service import Promotion, WaitlistService

logger = logging.getLogger(__name__)

_OPEN_ITEM_STATUSES = (CartItemStatus.PENDING, CartItemStatus.WAITLISTED)


class RejectReason:
    """Machine-readable reasons an item was not added to the cart."""
    INVALID_RESOURCE = "INVALID_RESOURCE"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    RESOURCE_INACTIVE = "RESOURCE_INACTIVE"
    SLOT_IN_PAST = "SLOT_IN_PAST"
    DUPLICATE_ITEM = "DUPLICATE_ITEM"
    WAITLIST_DISABLED = "WAITLIST_DISABLED"
    SLOT_UNAVAILABLE = "SLOT_UNAVAILABLE"


@dataclass
class AddedItem:
    index: int
    item: CartItem


@dataclass
class WaitlistedItem:
    index: int
    item: CartItem
    entry: WaitlistEntry
    blocking_booking_id: Optional[UUID] = None


@dataclass
class RejectedItem:
    index: int
    reason: str
    detail: Optional[str] = None


@dataclass
class AddItemsResult:
    """Per-item outcome of one add-to-cart request."""

    transaction: Optional[CartTransaction] = None
    added: list[AddedItem] = field(default_factory=list)
    waitlisted: list[WaitlistedItem] = field(default_factory=list)
    rejected: list[RejectedItem] = field(default_factory=list)


@dataclass
class CheckoutResult:
    transaction: CartTransaction
    bookings: list[Booking]
    remaining_transaction: Optional[CartTransaction] = None


@dataclass
class DecisionResult:
    """Outcome of approving, rejecting or cancelling a transaction."""

    transaction: CartTransaction
    bookings: list[Booking]
    promotions: list[Promotion] = field(default_factory=list)


@dataclass
class _CheckoutGroup:
    """Consecutive items on one court booked as a single reservation."""

    items: list[CartItem]

    @property
    def resource_id(self) -> UUID:
        return self.items[0].resource_id

    @property
    def time_range(self) -> TimeRange:
        merged = self.items[0].time_range
        for item in self.items[1:]:
            merged = merged.merge(item.time_range)
        return merged

    @property
    def price_amount(self) -> int:
        return sum(item.price_amount for item in self.items)


class CartService:
    """Service for cart and checkout operations."""

    def __init__(
        self,
        db: AsyncSession,
        availability: AvailabilityService | None = None,
        waitlist: WaitlistService | None = None,
        notifier: NotificationSender | None = None,
        config: Settings | None = None,
    ):
        self.db = db
        self.config = config or settings
        self.availability = availability or AvailabilityService(db)
        self.notifier = notifier or get_notification_sender()
        self.waitlist = waitlist or WaitlistService(db, availability=self.availability, notifier=self.notifier)
        self.resources = ResourceService(db)

    # Queries

    async def get_transaction_by_id(self, transaction_id: UUID) -> CartTransaction | None:
        result = await self.db.execute(select(CartTransaction).where(CartTransaction.id == transaction_id))
        return result.scalar_one_or_none()

    async def get_transaction_or_raise(self, transaction_id: UUID) -> CartTransaction:
        transaction = await self.get_transaction_by_id(transaction_id)
        if not transaction:
            raise NotFoundError(resource_type="cart transaction", resource_id=str(transaction_id))
        return transaction

    async def get_booking_or_raise(self, booking_id: UUID) -> Booking:
        result = await self.db.execute(select(Booking).where(Booking.id == booking_id))
        booking = result.scalar_one_or_none()
        if not booking:
            raise NotFoundError(resource_type="booking", resource_id=str(booking_id))
        return booking

    async def get_transaction_details(
        self,
        transaction_id: UUID,
        user: Principal,
    ) -> tuple[CartTransaction, list[CartItem], list[Booking]]:
        transaction = await self.get_transaction_or_raise(transaction_id)
        self._check_owner(transaction, user)
        bookings, items = await load_children(self.db, transaction)
        return transaction, items, bookings

    async def get_active_cart(self, user: Principal) -> tuple[CartTransaction | None, list[CartItem]]:
        """The user's open cart and its items, or ``(None, [])``."""
        transaction = await self._find_open_cart(user.user_id)
        if transaction is None:
            return None, []
        _, items = await load_children(self.db, transaction)
        return transaction, [item for item in items if item.status in _OPEN_ITEM_STATUSES]

    async def count_items(self, user: Principal) -> int:
        result = await self.db.execute(
            select(func.count(CartItem.id))
            .join(CartTransaction, CartItem.cart_transaction_id == CartTransaction.id)
            .where(
                CartTransaction.user_id == user.user_id,
                CartTransaction.status == TransactionStatus.PENDING,
                CartItem.status.in_(_OPEN_ITEM_STATUSES),
            )
        )
        return result.scalar() or 0

    # Add

    async def add_items(
        self,
        user: Principal,
        items: Sequence[CartItemInput],
        now: datetime | None = None,
    ) -> AddItemsResult:
        """
        Add slots to the user's open cart.

        Each item is classified independently: available slots become
        pending cart items, soft-held slots put the user on the slot's
        waitlist with a waitlisted cart item, and blocked slots are rejected.
        Rejections never abort the other items. The cart is created on the
        first accepted item.

        Args:
            user: Caller
            items: Requested slots
            now: Request instant (defaults to now)

        Returns:
            Outcome of every item, by its index in ``items``
        """
        now = now or facility_now()
        result = AddItemsResult()

        candidates: list[tuple[int, CartItemInput, UUID, TimeRange]] = []
        for index, request in enumerate(items):
            try:
                resource_id = UUID(request.resource_id)
            except ValueError:
                result.rejected.append(RejectedItem(index, RejectReason.INVALID_RESOURCE))
                continue
            candidates.append(
                (index, request, resource_id, TimeRange(request.booking_date, request.start_time, request.end_time))
            )

        await self.resources.lock_slot_windows((resource_id, tr) for _, _, resource_id, tr in candidates)

        for index, request, resource_id, time_range in candidates:
            resource = await self.resources.get_resource_by_id(resource_id)
            if resource is None:
                result.rejected.append(RejectedItem(index, RejectReason.RESOURCE_NOT_FOUND))
                continue
            if not resource.is_active:
                result.rejected.append(RejectedItem(index, RejectReason.RESOURCE_INACTIVE))
                continue
            if time_range.starts_at < now:
                result.rejected.append(RejectedItem(index, RejectReason.SLOT_IN_PAST, f"{time_range} has started"))
                continue
            if await self._already_claimed(user.user_id, resource_id, time_range):
                result.rejected.append(RejectedItem(index, RejectReason.DUPLICATE_ITEM))
                continue

            classification = await self.availability.classify(
                resource_id, time_range, now, requesting_user_id=user.user_id
            )

            if classification.state == SlotState.AVAILABLE:
                result.transaction = result.transaction or await self._find_or_create_cart(user, now)
                item = self._new_item(result.transaction, user, resource_id, time_range, request.price_amount, now)
                self.db.add(item)
                await self.db.flush()
                result.added.append(AddedItem(index, item))

            elif classification.state == SlotState.SOFT_HELD:
                if not self.config.waitlist_enabled:
                    result.rejected.append(RejectedItem(index, RejectReason.WAITLIST_DISABLED))
                    continue
                result.transaction = result.transaction or await self._find_or_create_cart(user, now)
                entry = await self.waitlist.add_to_queue(
                    user.user_id,
                    resource_id,
                    time_range,
                    request.price_amount,
                    classification.blocking_booking_id,
                    now,
                )
                item = self._new_item(result.transaction, user, resource_id, time_range, request.price_amount, now)
                item.status = CartItemStatus.WAITLISTED
                item.waitlist_entry_id = entry.id
                self.db.add(item)
                await self.db.flush()
                result.waitlisted.append(
                    WaitlistedItem(index, item, entry, classification.blocking_booking_id)
                )

            else:
                result.rejected.append(
                    RejectedItem(index, RejectReason.SLOT_UNAVAILABLE, f"{time_range} is already booked")
                )

        if result.transaction is not None:
            await refresh_transaction_total(self.db, result.transaction)
            result.transaction.updated_at = now
        await self.db.commit()

        MetricsCollector.record_cart_item("added", len(result.added))
        MetricsCollector.record_cart_item("waitlisted", len(result.waitlisted))
        MetricsCollector.record_cart_item("rejected", len(result.rejected))
        logger.info(
            "Cart items processed",
            extra={
                "user_id": user.user_id,
                "transaction_id": str(result.transaction.id) if result.transaction else None,
                "added": len(result.added),
                "waitlisted": len(result.waitlisted),
                "rejected": [r.reason for r in result.rejected],
            }
        )
        return result

    # Remove

    async def remove_item(self, user: Principal, cart_item_id: UUID, now: datetime | None = None) -> CartTransaction:
        """Remove one item from an open cart; an emptied cart is cancelled."""
        now = now or facility_now()
        result = await self.db.execute(select(CartItem).where(CartItem.id == cart_item_id))
        item = result.scalar_one_or_none()
        if item is None:
            raise NotFoundError(resource_type="cart item", resource_id=str(cart_item_id))

        transaction = await self.get_transaction_or_raise(item.cart_transaction_id)
        self._check_owner(transaction, user)
        if transaction.status != TransactionStatus.PENDING:
            raise InvalidStateTransition("cart transaction", str(transaction.id), transaction.status, "edit")
        if item.status not in _OPEN_ITEM_STATUSES:
            raise InvalidStateTransition("cart item", str(item.id), item.status, "remove")

        await self.withdraw_items([item], now)
        remaining = await refresh_transaction_total(self.db, transaction)
        transaction.updated_at = now
        if remaining == 0:
            await apply_transaction_status(self.db, transaction, now, status=TransactionStatus.CANCELLED)
        await self.db.commit()

        MetricsCollector.record_cart_item("removed")
        logger.info(
            "Cart item removed",
            extra={"cart_item_id": str(cart_item_id), "transaction_id": str(transaction.id), "remaining": remaining}
        )
        return transaction

    async def clear_cart(self, user: Principal, now: datetime | None = None) -> CartTransaction | None:
        """Cancel the user's open cart and leave the queues it joined."""
        now = now or facility_now()
        transaction, items = await self.get_active_cart(user)
        if transaction is None:
            return None

        await self.withdraw_items(items, now)
        await apply_transaction_status(self.db, transaction, now, status=TransactionStatus.CANCELLED)
        await self.db.commit()

        MetricsCollector.record_cart_item("removed", len(items))
        logger.info("Cart cleared", extra={"transaction_id": str(transaction.id), "items": len(items)})
        return transaction

    # Checkout

    async def checkout(
        self,
        transaction_id: UUID,
        user: Principal,
        payment_method: str = "pending",
        proof_ref: Optional[str] = None,
        selected_item_ids: Optional[Iterable[UUID]] = None,
        now: datetime | None = None,
    ) -> CheckoutResult:
        """
        Turn a cart's pending items into bookings.

        Every selected item is re-classified under the slot locks. If any of
        them is no longer available the whole checkout is rolled back and
        nothing changes. Otherwise one booking is created per item, or per
        run of consecutive items on one court when merging is enabled, and
        the transaction moves to completed awaiting approval. Items not
        selected move to a new open cart.

        Raises:
            InvalidStateTransition: If the cart is no longer open
            ValidationError: If there is nothing to check out
            StaleStateError: If any selected item regressed since it was added
        """
        now = now or facility_now()
        transaction = await self.get_transaction_or_raise(transaction_id)
        self._check_owner(transaction, user)
        if transaction.status != TransactionStatus.PENDING:
            raise InvalidStateTransition("cart transaction", str(transaction.id), transaction.status, "check out")

        _, items = await load_children(self.db, transaction)
        pending = [item for item in items if item.status == CartItemStatus.PENDING]

        if selected_item_ids is not None:
            wanted = set(selected_item_ids)
            unknown = wanted - {item.id for item in pending}
            if unknown:
                raise ValidationError(
                    detail="Selected items are not pending in this cart",
                    errors={"selected_item_ids": sorted(str(i) for i in unknown)},
                )
            selected = [item for item in pending if item.id in wanted]
        else:
            selected = pending
        if not selected:
            raise ValidationError(detail="The cart has no pending items to check out")

        leftovers = [item for item in items if item.status in _OPEN_ITEM_STATUSES and item not in selected]
        await self.resources.lock_slot_windows((item.resource_id, item.time_range) for item in selected)

        tx_id = str(transaction.id)
        paid = proof_ref is not None
        stale: list[dict] = []
        bookings: list[Booking] = []

        for group in self._group_items(selected):
            failures = []
            for item in group.items:
                classification = await self.availability.classify(
                    item.resource_id,
                    item.time_range,
                    now,
                    requesting_user_id=transaction.user_id,
                    exclude_transaction_id=transaction.id,
                )
                if not classification.is_available:
                    failures.append(self._stale_item(item, classification))
            if failures:
                stale.extend(failures)
                continue

            booking = Booking(
                resource_id=group.resource_id,
                user_id=transaction.user_id,
                owner_is_staff=transaction.owner_is_staff,
                booking_date=group.time_range.day,
                start_time=group.time_range.start,
                end_time=group.time_range.end,
                price_amount=group.price_amount,
                status=BookingStatus.PENDING,
                payment_status=PaymentStatus.PAID if paid else PaymentStatus.UNPAID,
                payment_method=payment_method,
                proof_of_payment=proof_ref,
                paid_at=now if paid else None,
                cart_transaction_id=transaction.id,
                created_at=now,
                updated_at=now,
            )
            self.db.add(booking)
            await self.db.flush()
            for item in group.items:
                item.booking_id = booking.id
            bookings.append(booking)

        if stale:
            await self.db.rollback()
            MetricsCollector.record_checkout("stale")
            logger.warning("Checkout rejected, items no longer available", extra={"transaction_id": tx_id, "items": stale})
            raise StaleStateError(tx_id, stale)

        remaining = None
        if leftovers:
            remaining = self._new_cart(user.user_id, transaction.owner_is_staff, now)
            self.db.add(remaining)
            await self.db.flush()
            for item in leftovers:
                item.cart_transaction_id = remaining.id
                item.updated_at = now
            await self.db.flush()
            await refresh_transaction_total(self.db, remaining)
            remaining.updated_at = now

        transaction.payment_method = payment_method
        if paid:
            transaction.payment_status = PaymentStatus.PAID
            transaction.proof_of_payment = proof_ref
            transaction.paid_at = now
        transaction.total_price_amount = sum(item.price_amount for item in selected)
        transaction.checked_out_at = now
        await apply_transaction_status(self.db, transaction, now, status=TransactionStatus.COMPLETED)
        await self.db.commit()

        MetricsCollector.record_checkout("success")
        logger.info(
            "Cart checked out",
            extra={
                "transaction_id": tx_id,
                "user_id": transaction.user_id,
                "booking_ids": [str(b.id) for b in bookings],
                "paid": paid,
                "remaining_transaction_id": str(remaining.id) if remaining else None,
            }
        )
        return CheckoutResult(transaction=transaction, bookings=bookings, remaining_transaction=remaining)

    # Payment

    async def attach_payment_proof(
        self,
        transaction_id: UUID,
        user: Principal,
        payment_method: str,
        proof_ref: str,
        now: datetime | None = None,
    ) -> CartTransaction:
        """
        Record payment for a checked-out transaction awaiting approval.

        Promoted bookings must be paid before their waitlist deadline. The
        slots are re-validated first, ignoring the transaction's own bookings.

        Raises:
            InvalidStateTransition: If the transaction is not awaiting approval
            DeadlineExpiredError: If a promoted booking's deadline passed
            ConflictError: If another reservation now holds one of the slots
        """
        now = now or facility_now()
        transaction = await self.get_transaction_or_raise(transaction_id)
        self._check_owner(transaction, user)
        if transaction.status != TransactionStatus.COMPLETED or transaction.approval_status != ApprovalStatus.PENDING:
            raise InvalidStateTransition(
                "cart transaction", str(transaction.id), transaction.approval_status, "attach payment to"
            )

        bookings, _ = await load_children(self.db, transaction)
        await self.resources.lock_slot_windows((b.resource_id, b.time_range) for b in bookings)

        for booking in bookings:
            if booking.waitlist_entry_id is None:
                continue
            entry = await self.waitlist.get_entry_by_id(booking.waitlist_entry_id)
            if entry is None:
                continue
            if entry.status not in (WaitlistStatus.NOTIFIED, WaitlistStatus.CONVERTED):
                raise DeadlineExpiredError(str(entry.id), entry.expires_at)
            if self.waitlist.is_overdue(entry, now):
                entry_id, expires_at = entry.id, entry.expires_at
                await self.db.rollback()
                await self.waitlist.expire_if_overdue(entry_id, now)
                raise DeadlineExpiredError(str(entry_id), expires_at)

        own_ids = {b.id for b in bookings}
        conflicts = []
        for booking in bookings:
            if booking.status != BookingStatus.PENDING:
                continue
            classification = await self.availability.classify(
                booking.resource_id,
                booking.time_range,
                now,
                requesting_user_id=transaction.user_id,
                exclude_booking_ids=own_ids,
            )
            if not classification.is_available:
                conflicts.append({
                    "booking_id": str(booking.id),
                    "state": classification.state.value,
                    "blocking_booking_id": str(classification.blocking_booking_id)
                    if classification.blocking_booking_id else None,
                })
        if conflicts:
            tx_id = str(transaction.id)
            await self.db.rollback()
            raise ConflictError(
                detail=f"Slots in transaction {tx_id} are held by another reservation",
                conflicting_resource={"transaction_id": tx_id, "items": conflicts},
                code="SLOT_TAKEN",
            )

        transaction.payment_status = PaymentStatus.PAID
        transaction.payment_method = payment_method
        transaction.proof_of_payment = proof_ref
        transaction.paid_at = now
        transaction.updated_at = now
        for booking in bookings:
            booking.payment_status = PaymentStatus.PAID
            booking.payment_method = payment_method
            booking.proof_of_payment = proof_ref
            booking.paid_at = now
            booking.updated_at = now
        await self.db.commit()

        logger.info(
            "Payment proof attached",
            extra={"transaction_id": str(transaction.id), "payment_method": payment_method, "bookings": len(bookings)}
        )
        return transaction

    # Staff decisions

    async def approve(self, transaction_id: UUID, staff: Principal, now: datetime | None = None) -> DecisionResult:
        """
        Approve a checked-out transaction.

        Under the slot locks, no confirmed booking may overlap any of the
        transaction's bookings. Promoted bookings convert their waitlist
        entries, which fails once the payment deadline has passed unpaid.
        Queues on the approved slots are closed.

        Raises:
            InvalidStateTransition: If the transaction is not awaiting approval
            ConflictError: If a confirmed booking already holds a slot
            DeadlineExpiredError: If a promoted booking's deadline passed unpaid
        """
        now = now or facility_now()
        transaction = await self.get_transaction_or_raise(transaction_id)
        if transaction.status != TransactionStatus.COMPLETED or transaction.approval_status != ApprovalStatus.PENDING:
            raise InvalidStateTransition("cart transaction", str(transaction.id), transaction.approval_status, "approve")

        bookings, _ = await load_children(self.db, transaction)
        if not bookings:
            raise ConflictError(
                detail=f"Transaction {transaction.id} has no bookings to approve",
                conflicting_resource={"transaction_id": str(transaction.id)},
                code="MISSING_BOOKINGS",
            )
        await self.resources.lock_slot_windows((b.resource_id, b.time_range) for b in bookings)

        own_ids = {b.id for b in bookings}
        for booking in bookings:
            conflicts = await self.availability.find_confirmed_conflicts(
                booking.resource_id, booking.time_range, exclude_booking_ids=own_ids
            )
            if conflicts:
                details = {
                    "booking_id": str(booking.id),
                    "conflicting_booking_ids": [str(c.id) for c in conflicts],
                }
                await self.db.rollback()
                MetricsCollector.record_transaction_decision("approve_conflict")
                raise ConflictError(
                    detail="A confirmed booking already holds this slot",
                    conflicting_resource=details,
                    code="SLOT_TAKEN",
                )

        for booking in bookings:
            if booking.waitlist_entry_id is None:
                continue
            entry = await self.waitlist.get_entry_by_id(booking.waitlist_entry_id)
            if entry is None:
                continue
            entry_id, overdue = entry.id, self.waitlist.is_overdue(entry, now)
            try:
                await self.waitlist.claim_for_approval(entry, booking, now)
            except DeadlineExpiredError:
                await self.db.rollback()
                if overdue:
                    await self.waitlist.expire_if_overdue(entry_id, now)
                raise

        cascade = await apply_transaction_status(
            self.db, transaction, now, approval_status=ApprovalStatus.APPROVED, actor=staff.user_id
        )
        effects = await self.waitlist.handle_approved_bookings(cascade.bookings, now)
        await self.db.commit()

        MetricsCollector.record_transaction_decision("approve")
        logger.info(
            "Transaction approved",
            extra={
                "transaction_id": str(transaction.id),
                "approved_by": staff.user_id,
                "booking_ids": [str(b.id) for b in cascade.bookings],
                "closed_entries": len(effects.cancelled_entries),
            }
        )
        events = [
            BookingApproved(booking_id=b.id, user_id=b.user_id, transaction_id=transaction.id)
            for b in cascade.bookings
        ]
        await dispatch_events(self.notifier, events + effects.events())
        return DecisionResult(transaction=transaction, bookings=cascade.bookings, promotions=effects.promotions)

    async def reject(
        self,
        transaction_id: UUID,
        staff: Principal,
        reason: str,
        now: datetime | None = None,
    ) -> DecisionResult:
        """Reject a checked-out transaction and offer its slots to the waitlist."""
        now = now or facility_now()
        transaction = await self.get_transaction_or_raise(transaction_id)
        if transaction.status != TransactionStatus.COMPLETED or transaction.approval_status == ApprovalStatus.REJECTED:
            raise InvalidStateTransition("cart transaction", str(transaction.id), transaction.approval_status, "reject")

        bookings, _ = await load_children(self.db, transaction)
        self._check_not_started(transaction, bookings, "reject")
        await self.resources.lock_slot_windows((b.resource_id, b.time_range) for b in bookings)

        cascade = await apply_transaction_status(
            self.db, transaction, now, approval_status=ApprovalStatus.REJECTED, actor=staff.user_id, reason=reason
        )
        effects = await self.waitlist.handle_released_bookings(cascade.released_bookings, now)
        await self.db.commit()

        MetricsCollector.record_transaction_decision("reject")
        logger.info(
            "Transaction rejected",
            extra={
                "transaction_id": str(transaction.id),
                "rejected_by": staff.user_id,
                "released_booking_ids": [str(b.id) for b in cascade.released_bookings],
                "promoted_entry_ids": [str(p.entry.id) for p in effects.promotions],
            }
        )
        effects.rejected_bookings[:0] = cascade.released_bookings
        await dispatch_events(self.notifier, effects.events())
        return DecisionResult(transaction=transaction, bookings=cascade.bookings, promotions=effects.promotions)

    async def cancel_transaction(
        self,
        transaction_id: UUID,
        user: Principal,
        reason: Optional[str] = None,
        now: datetime | None = None,
    ) -> DecisionResult:
        """Cancel a checked-out transaction at the user's request."""
        now = now or facility_now()
        transaction = await self.get_transaction_or_raise(transaction_id)
        self._check_owner(transaction, user)
        if transaction.status != TransactionStatus.COMPLETED or transaction.approval_status == ApprovalStatus.REJECTED:
            raise InvalidStateTransition("cart transaction", str(transaction.id), transaction.status, "cancel")

        bookings, _ = await load_children(self.db, transaction)
        self._check_not_started(transaction, bookings, "cancel")
        await self.resources.lock_slot_windows((b.resource_id, b.time_range) for b in bookings)

        cascade = await apply_transaction_status(
            self.db, transaction, now, status=TransactionStatus.CANCELLED, reason=reason or "Cancelled by user"
        )
        effects = await self.waitlist.handle_released_bookings(cascade.released_bookings, now)
        await self.db.commit()

        MetricsCollector.record_transaction_decision("cancel")
        logger.info(
            "Transaction cancelled",
            extra={
                "transaction_id": str(transaction.id),
                "cancelled_by": user.user_id,
                "released_booking_ids": [str(b.id) for b in cascade.released_bookings],
            }
        )
        await dispatch_events(self.notifier, effects.events())
        return DecisionResult(transaction=transaction, bookings=cascade.bookings, promotions=effects.promotions)

    async def check_in(self, booking_id: UUID, staff: Principal, now: datetime | None = None) -> Booking:
        """Mark an approved booking as checked in."""
        now = now or facility_now()
        booking = await self.get_booking_or_raise(booking_id)
        if booking.status != BookingStatus.APPROVED:
            raise InvalidStateTransition("booking", str(booking.id), booking.status, "check in")

        booking.status = BookingStatus.CHECKED_IN
        booking.checked_in_at = now
        booking.updated_at = now
        await self.db.commit()

        logger.info("Booking checked in", extra={"booking_id": str(booking.id), "staff_id": staff.user_id})
        return booking

    # Helpers

    @staticmethod
    def _check_owner(transaction: CartTransaction, user: Principal) -> None:
        if transaction.user_id != user.user_id and not user.is_staff:
            raise AuthorizationError(detail="Only the owner or staff can access this transaction")

    @staticmethod
    def _check_not_started(transaction: CartTransaction, bookings: list[Booking], action: str) -> None:
        started = [b for b in bookings if b.status in CONFIRMED_BOOKING_STATUSES and b.status != BookingStatus.APPROVED]
        if started:
            raise InvalidStateTransition("cart transaction", str(transaction.id), started[0].status, action)

    @staticmethod
    def _new_cart(user_id: str, owner_is_staff: bool, now: datetime) -> CartTransaction:
        return CartTransaction(
            user_id=user_id,
            owner_is_staff=owner_is_staff,
            total_price_amount=0,
            status=TransactionStatus.PENDING,
            approval_status=ApprovalStatus.PENDING,
            payment_status=PaymentStatus.UNPAID,
            created_at=now,
            updated_at=now,
        )

    @staticmethod
    def _new_item(
        transaction: CartTransaction,
        user: Principal,
        resource_id: UUID,
        time_range: TimeRange,
        price_amount: int,
        now: datetime,
    ) -> CartItem:
        return CartItem(
            cart_transaction_id=transaction.id,
            user_id=user.user_id,
            resource_id=resource_id,
            booking_date=time_range.day,
            start_time=time_range.start,
            end_time=time_range.end,
            price_amount=price_amount,
            status=CartItemStatus.PENDING,
            created_at=now,
            updated_at=now,
        )

    @staticmethod
    def _stale_item(item: CartItem, classification: Classification) -> dict:
        return {
            "cart_item_id": str(item.id),
            "resource_id": str(item.resource_id),
            "time_range": str(item.time_range),
            "state": classification.state.value,
            "blocking_booking_id": str(classification.blocking_booking_id)
            if classification.blocking_booking_id else None,
        }

    def _group_items(self, items: list[CartItem]) -> list[_CheckoutGroup]:
        ordered = sorted(items, key=lambda i: (str(i.resource_id), i.time_range.starts_at))
        groups: list[_CheckoutGroup] = []
        for item in ordered:
            last = groups[-1] if groups else None
            if (
                self.config.merge_consecutive_slots
                and last is not None
                and last.resource_id == item.resource_id
                and last.items[-1].time_range.is_followed_by(item.time_range)
            ):
                last.items.append(item)
            else:
                groups.append(_CheckoutGroup([item]))
        return groups

    async def _find_open_cart(self, user_id: str) -> CartTransaction | None:
        result = await self.db.execute(
            select(CartTransaction)
            .where(
                CartTransaction.user_id == user_id,
                CartTransaction.status == TransactionStatus.PENDING,
                CartTransaction.promoted_from_entry_id.is_(None),
            )
            .order_by(CartTransaction.created_at.desc())
        )
        return result.scalars().first()

    async def _find_or_create_cart(self, user: Principal, now: datetime) -> CartTransaction:
        transaction = await self._find_open_cart(user.user_id)
        if transaction is None:
            transaction = self._new_cart(user.user_id, user.is_staff, now)
            self.db.add(transaction)
            await self.db.flush()
            logger.info("Cart opened", extra={"transaction_id": str(transaction.id), "user_id": user.user_id})
        return transaction

    async def _already_claimed(self, user_id: str, resource_id: UUID, time_range: TimeRange) -> bool:
        """True when the user's open cart or live bookings already cover part of the range."""
        days = time_range.window_days()
        items = await self.db.execute(
            select(CartItem)
            .join(CartTransaction, CartItem.cart_transaction_id == CartTransaction.id)
            .where(
                CartItem.user_id == user_id,
                CartItem.resource_id == resource_id,
                CartItem.booking_date.in_(days),
                CartItem.status.in_(_OPEN_ITEM_STATUSES),
                CartTransaction.status == TransactionStatus.PENDING,
            )
        )
        if any(item.time_range.overlaps(time_range) for item in items.scalars().all()):
            return True

        bookings = await self.db.execute(
            select(Booking).where(
                Booking.user_id == user_id,
                Booking.resource_id == resource_id,
                Booking.booking_date.in_(days),
                Booking.status.in_((BookingStatus.PENDING, *CONFIRMED_BOOKING_STATUSES)),
            )
        )
        return any(b.time_range.overlaps(time_range) for b in bookings.scalars().all())

    async def withdraw_items(self, items: list[CartItem], now: datetime) -> None:
        """Cancel open items, taking waitlisted ones out of their queues."""
        for item in items:
            if item.waitlist_entry_id is not None:
                result = await self.db.execute(select(WaitlistEntry).where(WaitlistEntry.id == item.waitlist_entry_id))
                entry = result.scalar_one_or_none()
                if entry is not None and entry.status == WaitlistStatus.PENDING:
                    entry.status = WaitlistStatus.CANCELLED
                    entry.resolved_at = now
                    entry.updated_at = now
                item.waitlist_entry_id = None
            item.status = CartItemStatus.CANCELLED
            item.updated_at = now
        await self.db.flush()
