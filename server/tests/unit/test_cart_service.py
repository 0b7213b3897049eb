"""Unit tests for the cart lifecycle."""

from datetime import datetime, time, timedelta
from uuid import uuid4

import pytest
from helpers import NOW, SLOT_DAY, add_booking, checked_out, reload, slot
from sqlalchemy import select

from courtslot.core.config import Settings
from courtslot.core.exceptions import (
    AuthorizationError,
    ConflictError,
    InvalidStateTransition,
    StaleStateError,
    ValidationError,
)
from courtslot.models import (
    ApprovalStatus,
    Booking,
    BookingStatus,
    CartItem,
    CartItemStatus,
    CartTransaction,
    PaymentStatus,
    TransactionStatus,
    WaitlistEntry,
    WaitlistStatus,
)
from courtslot.schemas.cart import CartItemInput
from courtslot.services.cart_service import CartService, RejectReason
from courtslot.services.notifications import BookingApproved, BookingRejected, WaitlistSlotAvailable
from courtslot.services.resource_service import ResourceService


@pytest.fixture
def cart_service(test_session, notifier):
    return CartService(test_session, notifier=notifier)


async def bookings_of(db, user_id):
    result = await db.execute(
        select(Booking).where(Booking.user_id == user_id).execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


# Add


@pytest.mark.asyncio
async def test_add_available_slot_opens_cart(cart_service, court, alice):
    """Test that the first accepted item creates the user's cart."""
    result = await cart_service.add_items(alice, [slot(court)], NOW)

    assert len(result.added) == 1
    assert result.rejected == []
    assert result.transaction.status == TransactionStatus.PENDING
    assert result.transaction.user_id == "alice"
    assert result.transaction.total_price_amount == 500
    item = result.added[0].item
    assert item.status == CartItemStatus.PENDING
    assert item.time_range.start == time(18)


@pytest.mark.asyncio
async def test_add_reuses_open_cart(cart_service, court, alice):
    first = await cart_service.add_items(alice, [slot(court, 18, 19)], NOW)
    second = await cart_service.add_items(alice, [slot(court, 19, 20)], NOW)

    assert second.transaction.id == first.transaction.id
    assert second.transaction.total_price_amount == 1000
    assert await cart_service.count_items(alice) == 2


@pytest.mark.asyncio
async def test_add_rejections_do_not_abort_batch(test_session, cart_service, court, alice):
    """Test that each item is judged on its own and rejections are reported by index."""
    await add_booking(test_session, court, status="APPROVED", start=20, end=21)
    past = CartItemInput(
        resource_id=str(court.id), booking_date=NOW.date(), start_time=time(9), end_time=time(10), price_amount=500
    )
    missing = slot(court).model_copy(update={"resource_id": str(uuid4())})
    invalid = slot(court).model_copy(update={"resource_id": "court-one"})

    result = await cart_service.add_items(
        alice, [invalid, slot(court, 18, 19), missing, past, slot(court, 20, 21)], NOW
    )

    assert [a.index for a in result.added] == [1]
    assert [(r.index, r.reason) for r in result.rejected] == [
        (0, RejectReason.INVALID_RESOURCE),
        (2, RejectReason.RESOURCE_NOT_FOUND),
        (3, RejectReason.SLOT_IN_PAST),
        (4, RejectReason.SLOT_UNAVAILABLE),
    ]


@pytest.mark.asyncio
async def test_add_only_rejections_creates_no_cart(test_session, cart_service, court, alice):
    await add_booking(test_session, court, status="APPROVED")

    result = await cart_service.add_items(alice, [slot(court)], NOW)

    assert result.transaction is None
    assert await cart_service.get_active_cart(alice) == (None, [])


@pytest.mark.asyncio
async def test_add_to_inactive_court_rejected(test_session, cart_service, court, alice):
    await ResourceService(test_session).deactivate_resource(court.id)

    result = await cart_service.add_items(alice, [slot(court)], NOW)

    assert result.rejected[0].reason == RejectReason.RESOURCE_INACTIVE


@pytest.mark.asyncio
async def test_add_overlapping_own_item_is_duplicate(cart_service, court, alice):
    """Test that a user cannot claim the same court time twice."""
    await cart_service.add_items(alice, [slot(court, 18, 19)], NOW)

    result = await cart_service.add_items(alice, [slot(court, 18, 19), slot(court, 17, 19)], NOW)

    assert [r.reason for r in result.rejected] == [RejectReason.DUPLICATE_ITEM, RejectReason.DUPLICATE_ITEM]


@pytest.mark.asyncio
async def test_add_slot_already_booked_by_user_is_duplicate(cart_service, court, alice):
    await checked_out(cart_service, alice, [slot(court)])

    result = await cart_service.add_items(alice, [slot(court)], NOW)

    assert result.rejected[0].reason == RejectReason.DUPLICATE_ITEM


@pytest.mark.asyncio
async def test_add_soft_held_slot_joins_waitlist(test_session, cart_service, court, alice, bob):
    """Test that soft-held slots queue the user in arrival order."""
    held = await add_booking(test_session, court, user_id="holder")

    first = await cart_service.add_items(alice, [slot(court)], NOW)
    second = await cart_service.add_items(bob, [slot(court)], NOW + timedelta(minutes=1))

    assert first.added == [] and second.added == []
    waitlisted = first.waitlisted[0]
    assert waitlisted.item.status == CartItemStatus.WAITLISTED
    assert waitlisted.item.waitlist_entry_id == waitlisted.entry.id
    assert waitlisted.blocking_booking_id == held.id
    assert waitlisted.entry.position == 1
    assert waitlisted.entry.pending_booking_id == held.id
    assert second.waitlisted[0].entry.position == 2
    # Waitlisted items are not charged
    assert first.transaction.total_price_amount == 0


@pytest.mark.asyncio
async def test_add_soft_held_slot_with_waitlist_disabled(test_session, notifier, court, alice):
    await add_booking(test_session, court)
    service = CartService(test_session, notifier=notifier, config=Settings(waitlist_enabled=False))

    result = await service.add_items(alice, [slot(court)], NOW)

    assert result.waitlisted == []
    assert result.rejected[0].reason == RejectReason.WAITLIST_DISABLED


# Remove and clear


@pytest.mark.asyncio
async def test_remove_item_updates_total(cart_service, court, alice):
    added = await cart_service.add_items(alice, [slot(court, 18, 19), slot(court, 19, 20)], NOW)
    removed = added.added[0].item

    transaction = await cart_service.remove_item(alice, removed.id, NOW)

    assert removed.status == CartItemStatus.CANCELLED
    assert transaction.status == TransactionStatus.PENDING
    assert transaction.total_price_amount == 500
    assert await cart_service.count_items(alice) == 1


@pytest.mark.asyncio
async def test_remove_last_item_cancels_cart(cart_service, court, alice):
    added = await cart_service.add_items(alice, [slot(court)], NOW)

    transaction = await cart_service.remove_item(alice, added.added[0].item.id, NOW)

    assert transaction.status == TransactionStatus.CANCELLED
    assert await cart_service.get_active_cart(alice) == (None, [])


@pytest.mark.asyncio
async def test_remove_waitlisted_item_leaves_queue(test_session, cart_service, court, alice):
    await add_booking(test_session, court)
    added = await cart_service.add_items(alice, [slot(court)], NOW)
    entry_id = added.waitlisted[0].entry.id

    await cart_service.remove_item(alice, added.waitlisted[0].item.id, NOW)

    entry = await reload(test_session, WaitlistEntry, entry_id)
    assert entry.status == WaitlistStatus.CANCELLED


@pytest.mark.asyncio
async def test_remove_item_of_other_user_forbidden(cart_service, court, alice, bob):
    added = await cart_service.add_items(alice, [slot(court)], NOW)

    with pytest.raises(AuthorizationError):
        await cart_service.remove_item(bob, added.added[0].item.id, NOW)


@pytest.mark.asyncio
async def test_clear_cart(cart_service, court, alice):
    await cart_service.add_items(alice, [slot(court, 18, 19), slot(court, 19, 20)], NOW)

    transaction = await cart_service.clear_cart(alice, NOW)

    assert transaction.status == TransactionStatus.CANCELLED
    assert await cart_service.count_items(alice) == 0
    assert await cart_service.clear_cart(alice, NOW) is None


# Checkout


@pytest.mark.asyncio
async def test_checkout_merges_consecutive_slots(cart_service, court, alice):
    """Test that back-to-back slots on one court become a single booking."""
    added = await cart_service.add_items(alice, [slot(court, 19, 20), slot(court, 18, 19)], NOW)

    result = await cart_service.checkout(added.transaction.id, alice, now=NOW)

    assert len(result.bookings) == 1
    booking = result.bookings[0]
    assert (booking.start_time, booking.end_time) == (time(18), time(20))
    assert booking.price_amount == 1000
    assert booking.status == BookingStatus.PENDING
    assert booking.payment_status == PaymentStatus.UNPAID
    assert result.transaction.status == TransactionStatus.COMPLETED
    assert result.transaction.approval_status == ApprovalStatus.PENDING
    assert result.transaction.checked_out_at == NOW
    assert all(a.item.status == CartItemStatus.COMPLETED for a in added.added)
    assert all(a.item.booking_id == booking.id for a in added.added)
    assert result.remaining_transaction is None


@pytest.mark.asyncio
async def test_checkout_merges_run_up_to_midnight(cart_service, court, alice):
    added = await cart_service.add_items(alice, [slot(court, 22, 23), slot(court, 23, 24)], NOW)

    result = await cart_service.checkout(added.transaction.id, alice, now=NOW)

    assert len(result.bookings) == 1
    assert result.bookings[0].time_range.ends_at.date() == SLOT_DAY + timedelta(days=1)


@pytest.mark.asyncio
async def test_checkout_without_merging(test_session, notifier, court, second_court, alice):
    service = CartService(test_session, notifier=notifier, config=Settings(merge_consecutive_slots=False))
    added = await service.add_items(
        alice, [slot(court, 18, 19), slot(court, 19, 20), slot(second_court, 19, 20)], NOW
    )

    result = await service.checkout(added.transaction.id, alice, now=NOW)

    assert len(result.bookings) == 3


@pytest.mark.asyncio
async def test_checkout_gap_splits_bookings(cart_service, court, second_court, alice):
    added = await cart_service.add_items(
        alice, [slot(court, 18, 19), slot(court, 20, 21), slot(second_court, 19, 20)], NOW
    )

    result = await cart_service.checkout(added.transaction.id, alice, now=NOW)

    assert len(result.bookings) == 3


@pytest.mark.asyncio
async def test_checkout_with_proof_marks_paid(cart_service, court, alice):
    result = await checked_out(cart_service, alice, [slot(court)], proof_ref="gcash-123")

    assert result.transaction.payment_status == PaymentStatus.PAID
    assert result.transaction.paid_at == NOW
    assert result.bookings[0].payment_status == PaymentStatus.PAID
    assert result.bookings[0].proof_of_payment == "gcash-123"


@pytest.mark.asyncio
async def test_stale_checkout_changes_nothing(test_session, cart_service, court, alice):
    """Test that one regressed item rolls back the whole checkout."""
    added = await cart_service.add_items(alice, [slot(court, 18, 19), slot(court, 20, 21)], NOW)
    transaction_id = added.transaction.id
    item_ids = [a.item.id for a in added.added]
    blocker = await add_booking(test_session, court, user_id="walk-in", status="APPROVED", start=20, end=21)
    blocker_id = blocker.id

    with pytest.raises(StaleStateError) as exc_info:
        await cart_service.checkout(transaction_id, alice, now=NOW)

    assert len(exc_info.value.items) == 1
    assert exc_info.value.items[0]["cart_item_id"] == str(item_ids[1])
    assert exc_info.value.items[0]["state"] == "BLOCKED"
    assert exc_info.value.items[0]["blocking_booking_id"] == str(blocker_id)

    transaction = await reload(test_session, CartTransaction, transaction_id)
    assert transaction.status == TransactionStatus.PENDING
    assert transaction.checked_out_at is None
    assert await bookings_of(test_session, "alice") == []
    for item_id in item_ids:
        item = await reload(test_session, CartItem, item_id)
        assert item.status == CartItemStatus.PENDING
        assert item.booking_id is None


@pytest.mark.asyncio
async def test_checkout_selected_items_moves_rest_to_new_cart(cart_service, court, alice):
    added = await cart_service.add_items(alice, [slot(court, 18, 19), slot(court, 21, 22)], NOW)
    kept, left = added.added[0].item, added.added[1].item

    result = await cart_service.checkout(added.transaction.id, alice, selected_item_ids=[kept.id], now=NOW)

    assert len(result.bookings) == 1
    assert result.transaction.total_price_amount == 500
    remaining = result.remaining_transaction
    assert remaining is not None
    assert remaining.status == TransactionStatus.PENDING
    assert left.cart_transaction_id == remaining.id
    assert left.status == CartItemStatus.PENDING
    assert remaining.total_price_amount == 500
    transaction, items = await cart_service.get_active_cart(alice)
    assert transaction.id == remaining.id
    assert [i.id for i in items] == [left.id]


@pytest.mark.asyncio
async def test_checkout_carries_waitlisted_items_over(test_session, cart_service, court, alice):
    """Test that queued items stay open in a new cart after checkout."""
    await add_booking(test_session, court, user_id="holder", start=20, end=21)
    added = await cart_service.add_items(alice, [slot(court, 18, 19), slot(court, 20, 21)], NOW)
    waitlisted = added.waitlisted[0]

    result = await cart_service.checkout(added.transaction.id, alice, now=NOW)

    assert len(result.bookings) == 1
    assert waitlisted.item.cart_transaction_id == result.remaining_transaction.id
    assert waitlisted.item.status == CartItemStatus.WAITLISTED
    entry = await reload(test_session, WaitlistEntry, waitlisted.entry.id)
    assert entry.status == WaitlistStatus.PENDING


@pytest.mark.asyncio
async def test_checkout_with_only_waitlisted_items_fails(test_session, cart_service, court, alice):
    await add_booking(test_session, court)
    added = await cart_service.add_items(alice, [slot(court)], NOW)

    with pytest.raises(ValidationError):
        await cart_service.checkout(added.transaction.id, alice, now=NOW)


@pytest.mark.asyncio
async def test_checkout_unknown_selection_fails(cart_service, court, alice):
    added = await cart_service.add_items(alice, [slot(court)], NOW)

    with pytest.raises(ValidationError):
        await cart_service.checkout(added.transaction.id, alice, selected_item_ids=[uuid4()], now=NOW)


@pytest.mark.asyncio
async def test_checkout_by_other_user_forbidden(cart_service, court, alice, bob):
    added = await cart_service.add_items(alice, [slot(court)], NOW)

    with pytest.raises(AuthorizationError):
        await cart_service.checkout(added.transaction.id, bob, now=NOW)


@pytest.mark.asyncio
async def test_checkout_twice_fails(cart_service, court, alice):
    result = await checked_out(cart_service, alice, [slot(court)])

    with pytest.raises(InvalidStateTransition):
        await cart_service.checkout(result.transaction.id, alice, now=NOW)


@pytest.mark.asyncio
async def test_checkout_ignores_other_users_unpaid_bookings(cart_service, court, alice, bob):
    """Test that unpaid reservations never stop someone else from checking out."""
    await checked_out(cart_service, alice, [slot(court)])

    result = await checked_out(cart_service, bob, [slot(court)], proof_ref="bank-transfer")

    assert len(result.bookings) == 1


# Payment


@pytest.mark.asyncio
async def test_attach_payment_proof(cart_service, court, alice):
    result = await checked_out(cart_service, alice, [slot(court)])
    later = NOW + timedelta(minutes=5)

    transaction = await cart_service.attach_payment_proof(result.transaction.id, alice, "gcash", "ref-9", later)

    assert transaction.payment_status == PaymentStatus.PAID
    assert transaction.paid_at == later
    assert result.bookings[0].payment_status == PaymentStatus.PAID
    assert result.bookings[0].proof_of_payment == "ref-9"


@pytest.mark.asyncio
async def test_attach_payment_proof_when_slot_taken(cart_service, court, alice, bob):
    """Test that paying late loses to someone who paid first."""
    unpaid = await checked_out(cart_service, alice, [slot(court)])
    await checked_out(cart_service, bob, [slot(court)], proof_ref="paid-first")

    with pytest.raises(ConflictError) as exc_info:
        await cart_service.attach_payment_proof(unpaid.transaction.id, alice, "gcash", "too-late", NOW)

    assert exc_info.value.code == "SLOT_TAKEN"


@pytest.mark.asyncio
async def test_attach_payment_proof_to_open_cart_fails(cart_service, court, alice):
    added = await cart_service.add_items(alice, [slot(court)], NOW)

    with pytest.raises(InvalidStateTransition):
        await cart_service.attach_payment_proof(added.transaction.id, alice, "gcash", "ref", NOW)


# Staff decisions


@pytest.mark.asyncio
async def test_approve_cascades_to_children(cart_service, notifier, court, alice, staff):
    result = await checked_out(cart_service, alice, [slot(court, 18, 19), slot(court, 19, 20)], "ref")

    decision = await cart_service.approve(result.transaction.id, staff, NOW)

    assert decision.transaction.approval_status == ApprovalStatus.APPROVED
    assert decision.transaction.approved_by == "desk-1"
    assert decision.transaction.approved_at == NOW
    assert [b.status for b in decision.bookings] == [BookingStatus.APPROVED]
    assert decision.bookings[0].approved_by == "desk-1"
    _, items, _ = await cart_service.get_transaction_details(result.transaction.id, staff)
    assert {i.status for i in items} == {CartItemStatus.APPROVED}
    events = notifier.of_type(BookingApproved)
    assert [e.booking_id for e in events] == [decision.bookings[0].id]


@pytest.mark.asyncio
async def test_approve_rejects_conflict_with_confirmed_booking(test_session, cart_service, court, alice, staff):
    """Test that approval never double-books a slot."""
    result = await checked_out(cart_service, alice, [slot(court)])
    transaction_id = result.transaction.id
    await add_booking(test_session, court, user_id="walk-in", status="APPROVED")

    with pytest.raises(ConflictError) as exc_info:
        await cart_service.approve(transaction_id, staff, NOW)

    assert exc_info.value.code == "SLOT_TAKEN"
    transaction = await reload(test_session, CartTransaction, transaction_id)
    assert transaction.approval_status == ApprovalStatus.PENDING


@pytest.mark.asyncio
async def test_approve_closes_competing_queue(test_session, cart_service, court, alice, bob, staff):
    paid = await checked_out(cart_service, alice, [slot(court)], proof_ref="ref")
    queued = await cart_service.add_items(bob, [slot(court)], NOW)
    entry_id = queued.waitlisted[0].entry.id
    bob_cart_id = queued.transaction.id

    await cart_service.approve(paid.transaction.id, staff, NOW)

    entry = await reload(test_session, WaitlistEntry, entry_id)
    assert entry.status == WaitlistStatus.CANCELLED
    bob_cart = await reload(test_session, CartTransaction, bob_cart_id)
    assert bob_cart.status == TransactionStatus.CANCELLED


@pytest.mark.asyncio
async def test_approve_twice_fails(cart_service, court, alice, staff):
    result = await checked_out(cart_service, alice, [slot(court)], proof_ref="ref")
    await cart_service.approve(result.transaction.id, staff, NOW)

    with pytest.raises(InvalidStateTransition):
        await cart_service.approve(result.transaction.id, staff, NOW)


@pytest.mark.asyncio
async def test_reject_promotes_waitlist(test_session, cart_service, notifier, court, alice, bob, staff):
    """Test that a rejected booking hands its slot to the first queued user."""
    paid = await checked_out(cart_service, alice, [slot(court)], proof_ref="blurry-photo")
    queued = await cart_service.add_items(bob, [slot(court)], NOW)
    entry_id = queued.waitlisted[0].entry.id

    decision = await cart_service.reject(paid.transaction.id, staff, "Proof unreadable", NOW)

    assert decision.transaction.approval_status == ApprovalStatus.REJECTED
    assert decision.transaction.rejection_reason == "Proof unreadable"
    assert decision.bookings[0].status == BookingStatus.REJECTED
    assert decision.bookings[0].rejection_reason == "Proof unreadable"

    assert len(decision.promotions) == 1
    promotion = decision.promotions[0]
    entry = await reload(test_session, WaitlistEntry, entry_id)
    assert entry.status == WaitlistStatus.NOTIFIED
    assert entry.expires_at == NOW + timedelta(hours=1)
    assert entry.promoted_booking_id == promotion.booking.id
    assert promotion.booking.user_id == "bob"
    assert promotion.booking.payment_status == PaymentStatus.UNPAID
    assert promotion.transaction.status == TransactionStatus.COMPLETED
    assert promotion.transaction.promoted_from_entry_id == entry_id

    # The item bob queued from is released; only the promoted booking claims the slot
    waitlisted_item = await reload(test_session, CartItem, queued.waitlisted[0].item.id)
    assert waitlisted_item.status == CartItemStatus.CANCELLED
    assert waitlisted_item.waitlist_entry_id is None

    assert [e.user_id for e in notifier.of_type(BookingRejected)] == ["alice"]
    available = notifier.of_type(WaitlistSlotAvailable)
    assert [(e.user_id, e.entry_id) for e in available] == [("bob", entry_id)]


@pytest.mark.asyncio
async def test_reject_already_rejected_fails(cart_service, court, alice, staff):
    result = await checked_out(cart_service, alice, [slot(court)])
    await cart_service.reject(result.transaction.id, staff, "No show", NOW)

    with pytest.raises(InvalidStateTransition):
        await cart_service.reject(result.transaction.id, staff, "Again", NOW)


@pytest.mark.asyncio
async def test_cancel_transaction(cart_service, court, alice):
    result = await checked_out(cart_service, alice, [slot(court)])

    decision = await cart_service.cancel_transaction(result.transaction.id, alice, now=NOW)

    assert decision.transaction.status == TransactionStatus.CANCELLED
    assert decision.bookings[0].status == BookingStatus.CANCELLED


@pytest.mark.asyncio
async def test_cancel_transaction_of_other_user_forbidden(cart_service, court, alice, bob):
    result = await checked_out(cart_service, alice, [slot(court)])

    with pytest.raises(AuthorizationError):
        await cart_service.cancel_transaction(result.transaction.id, bob, now=NOW)


@pytest.mark.asyncio
async def test_cancel_after_check_in_fails(cart_service, court, alice, staff):
    result = await checked_out(cart_service, alice, [slot(court)], proof_ref="ref")
    await cart_service.approve(result.transaction.id, staff, NOW)
    await cart_service.check_in(result.bookings[0].id, staff, NOW)

    with pytest.raises(InvalidStateTransition):
        await cart_service.cancel_transaction(result.transaction.id, alice, now=NOW)


@pytest.mark.asyncio
async def test_check_in(cart_service, court, alice, staff):
    result = await checked_out(cart_service, alice, [slot(court)], proof_ref="ref")
    await cart_service.approve(result.transaction.id, staff, NOW)
    arrival = datetime.combine(SLOT_DAY, time(18))

    booking = await cart_service.check_in(result.bookings[0].id, staff, arrival)

    assert booking.status == BookingStatus.CHECKED_IN
    assert booking.checked_in_at == arrival


@pytest.mark.asyncio
async def test_check_in_requires_approval(cart_service, court, alice, staff):
    result = await checked_out(cart_service, alice, [slot(court)])

    with pytest.raises(InvalidStateTransition):
        await cart_service.check_in(result.bookings[0].id, staff, NOW)


# Ranges past midnight


@pytest.mark.asyncio
async def test_evening_hold_through_midnight(cart_service, court, alice, bob, carol, staff):
    """
    Test a paid 20:00-00:00 booking against a later 23:00-00:00 request.

    While the holder awaits approval the overlapping hour can be queued for;
    once approved it is blocked outright, and the queue is closed. The hour
    after midnight was never held.
    """
    held = await checked_out(cart_service, bob, [slot(court, 20, 24)], proof_ref="ref")
    assert held.bookings[0].time_range.duration == timedelta(hours=4)

    queued = await cart_service.add_items(alice, [slot(court, 23, 24)], NOW)
    assert queued.waitlisted[0].blocking_booking_id == held.bookings[0].id

    await cart_service.approve(held.transaction.id, staff, NOW)

    next_day = SLOT_DAY + timedelta(days=1)
    late = await cart_service.add_items(carol, [slot(court, 23, 24), slot(court, 0, 1, next_day)], NOW)
    assert [r.reason for r in late.rejected] == [RejectReason.SLOT_UNAVAILABLE]
    assert [a.index for a in late.added] == [1]
    entries = await cart_service.waitlist.list_entries_for_user("alice")
    assert [e.status for e in entries] == [WaitlistStatus.CANCELLED]
