"""Unit tests for waitlist promotion, expiry and conversion."""

from datetime import datetime, time, timedelta

import pytest
from helpers import NOW, SLOT_DAY, checked_out, reload, slot
from sqlalchemy import select

from courtslot.core.exceptions import AuthorizationError, DeadlineExpiredError, InvalidStateTransition
from courtslot.core.time_range import TimeRange
from courtslot.models import (
    ApprovalStatus,
    Booking,
    BookingStatus,
    CartTransaction,
    TransactionStatus,
    WaitlistEntry,
    WaitlistStatus,
)
from courtslot.schemas.auth import Principal
from courtslot.services.cart_service import CartService
from courtslot.services.notifications import BookingRejected, WaitlistSlotAvailable
from courtslot.services.waitlist_service import EXPIRED_REASON, WITHDRAWN_REASON, WaitlistService

EVENING = TimeRange(SLOT_DAY, time(18), time(19))

# Promotions at NOW (Monday 10:00) get a one hour fuse
FIRST_DEADLINE = datetime(2030, 1, 7, 11, 0)


@pytest.fixture
def cart_service(test_session, notifier):
    return CartService(test_session, notifier=notifier)


@pytest.fixture
def waitlist(cart_service):
    return cart_service.waitlist


@pytest.fixture
def dave():
    return Principal(user_id="dave")


async def contested_slot(cart_service, court, holder, queued):
    """A paid booking by ``holder`` with ``queued`` users waiting behind it, in order."""
    held = await checked_out(cart_service, holder, [slot(court)], proof_ref="ref")
    entry_ids = []
    for offset, user in enumerate(queued, start=1):
        result = await cart_service.add_items(user, [slot(court)], NOW + timedelta(seconds=offset))
        entry_ids.append(result.waitlisted[0].entry.id)
    return held, entry_ids


async def freed_slot(cart_service, court, holder, queued, staff):
    """Reject the holder so that the first queued user is promoted."""
    held, entry_ids = await contested_slot(cart_service, court, holder, queued)
    await cart_service.reject(held.transaction.id, staff, "Proof unreadable", NOW)
    return entry_ids


async def promoted_booking(db, entry_id):
    entry = await reload(db, WaitlistEntry, entry_id)
    return await reload(db, Booking, entry.promoted_booking_id)


@pytest.mark.asyncio
async def test_promotion_chain(test_session, waitlist, notifier, cart_service, court, alice, bob, carol, dave, staff):
    """Test that each expiry hands the slot to the next entry in position order."""
    bob_id, carol_id, dave_id = await freed_slot(cart_service, court, alice, [bob, carol, dave], staff)

    bob_entry = await reload(test_session, WaitlistEntry, bob_id)
    assert bob_entry.status == WaitlistStatus.NOTIFIED
    assert bob_entry.notified_at == NOW
    assert bob_entry.expires_at == FIRST_DEADLINE

    first_expiry = FIRST_DEADLINE + timedelta(minutes=1)
    await waitlist.expire_if_overdue(bob_id, first_expiry)

    bob_entry = await reload(test_session, WaitlistEntry, bob_id)
    assert bob_entry.status == WaitlistStatus.EXPIRED
    bob_booking = await reload(test_session, Booking, bob_entry.promoted_booking_id)
    assert bob_booking.status == BookingStatus.REJECTED
    assert bob_booking.rejection_reason == EXPIRED_REASON

    carol_entry = await reload(test_session, WaitlistEntry, carol_id)
    assert carol_entry.status == WaitlistStatus.NOTIFIED
    assert carol_entry.expires_at == first_expiry + timedelta(hours=1)

    await waitlist.expire_if_overdue(carol_id, carol_entry.expires_at + timedelta(seconds=1))

    dave_entry = await reload(test_session, WaitlistEntry, dave_id)
    assert dave_entry.status == WaitlistStatus.NOTIFIED
    assert [e.user_id for e in notifier.of_type(WaitlistSlotAvailable)] == ["bob", "carol", "dave"]
    assert "bob" in [e.user_id for e in notifier.of_type(BookingRejected)]


@pytest.mark.asyncio
async def test_expire_is_idempotent(test_session, waitlist, cart_service, court, alice, bob, carol, staff):
    bob_id, carol_id = await freed_slot(cart_service, court, alice, [bob, carol], staff)
    later = FIRST_DEADLINE + timedelta(minutes=1)

    await waitlist.expire_if_overdue(bob_id, later)
    again = await waitlist.expire_if_overdue(bob_id, later)

    assert again.status == WaitlistStatus.EXPIRED
    result = await test_session.execute(
        select(Booking).where(Booking.user_id == "carol", Booking.status == BookingStatus.PENDING)
    )
    assert len(result.scalars().all()) == 1
    carol_entry = await reload(test_session, WaitlistEntry, carol_id)
    assert carol_entry.status == WaitlistStatus.NOTIFIED


@pytest.mark.asyncio
async def test_expire_before_deadline_is_noop(test_session, waitlist, cart_service, court, alice, bob, staff):
    (bob_id,) = await freed_slot(cart_service, court, alice, [bob], staff)

    entry = await waitlist.expire_if_overdue(bob_id, FIRST_DEADLINE)

    assert entry.status == WaitlistStatus.NOTIFIED


@pytest.mark.asyncio
async def test_only_one_entry_notified_per_slot(test_session, waitlist, cart_service, court, alice, bob, carol, staff):
    """Test that a slot with a notified entry is not promoted again."""
    await freed_slot(cart_service, court, alice, [bob, carol], staff)

    assert await waitlist.promote_next(court.id, EVENING, NOW) is None
    entries = await waitlist.list_entries_for_slot(court.id, EVENING)
    assert [(e.user_id, e.status) for e in entries] == [
        ("bob", WaitlistStatus.NOTIFIED),
        ("carol", WaitlistStatus.PENDING),
    ]


@pytest.mark.asyncio
async def test_promote_next_skips_held_slot(test_session, waitlist, cart_service, court, alice, bob):
    """Test that a queue stays pending while the slot is still soft-held."""
    held, (bob_id,) = await contested_slot(cart_service, court, alice, [bob])

    assert await waitlist.promote_next(court.id, EVENING, NOW) is None
    entry = await reload(test_session, WaitlistEntry, bob_id)
    assert entry.status == WaitlistStatus.PENDING
    assert entry.pending_booking_id == held.bookings[0].id


@pytest.mark.asyncio
async def test_promote_next_once_hold_lapses(test_session, waitlist, notifier, cart_service, court, alice, bob):
    """Test that a paid hold past its grace window lets the queue move."""
    _, (bob_id,) = await contested_slot(cart_service, court, alice, [bob])
    later = NOW + timedelta(hours=2)

    promotion = await waitlist.promote_next(court.id, EVENING, later)

    assert promotion.entry.id == bob_id
    assert promotion.entry.expires_at == later + timedelta(hours=1)
    assert promotion.booking.status == BookingStatus.PENDING
    assert len(notifier.of_type(WaitlistSlotAvailable)) == 1


@pytest.mark.asyncio
async def test_paid_before_deadline_survives_expiry(test_session, waitlist, cart_service, court, alice, bob, staff):
    """Test that paying in time protects the promotion even if approval comes later."""
    (bob_id,) = await freed_slot(cart_service, court, alice, [bob], staff)
    booking = await promoted_booking(test_session, bob_id)
    transaction_id = booking.cart_transaction_id

    await cart_service.attach_payment_proof(transaction_id, bob, "gcash", "ref-bob", NOW + timedelta(minutes=30))
    after_deadline = FIRST_DEADLINE + timedelta(minutes=30)
    entry = await waitlist.expire_if_overdue(bob_id, after_deadline)
    assert entry.status == WaitlistStatus.NOTIFIED

    decision = await cart_service.approve(transaction_id, staff, after_deadline)

    assert decision.bookings[0].status == BookingStatus.APPROVED
    entry = await reload(test_session, WaitlistEntry, bob_id)
    assert entry.status == WaitlistStatus.CONVERTED


@pytest.mark.asyncio
async def test_approve_unpaid_after_deadline(test_session, waitlist, cart_service, court, alice, bob, carol, staff):
    """Test that approving a lapsed promotion fails and moves the queue on."""
    bob_id, carol_id = await freed_slot(cart_service, court, alice, [bob, carol], staff)
    booking = await promoted_booking(test_session, bob_id)
    transaction_id = booking.cart_transaction_id

    with pytest.raises(DeadlineExpiredError):
        await cart_service.approve(transaction_id, staff, FIRST_DEADLINE + timedelta(minutes=5))

    assert (await reload(test_session, WaitlistEntry, bob_id)).status == WaitlistStatus.EXPIRED
    transaction = await reload(test_session, CartTransaction, transaction_id)
    assert transaction.approval_status == ApprovalStatus.REJECTED
    assert (await reload(test_session, WaitlistEntry, carol_id)).status == WaitlistStatus.NOTIFIED


@pytest.mark.asyncio
async def test_attach_payment_after_deadline(test_session, cart_service, court, alice, bob, staff):
    (bob_id,) = await freed_slot(cart_service, court, alice, [bob], staff)
    booking = await promoted_booking(test_session, bob_id)
    transaction_id = booking.cart_transaction_id

    with pytest.raises(DeadlineExpiredError):
        await cart_service.attach_payment_proof(
            transaction_id, bob, "gcash", "late", FIRST_DEADLINE + timedelta(seconds=1)
        )

    assert (await reload(test_session, WaitlistEntry, bob_id)).status == WaitlistStatus.EXPIRED


@pytest.mark.asyncio
async def test_convert_on_approval(test_session, waitlist, cart_service, court, alice, bob, staff):
    (bob_id,) = await freed_slot(cart_service, court, alice, [bob], staff)

    entry = await waitlist.convert_on_approval(bob_id, NOW + timedelta(minutes=10))

    assert entry.status == WaitlistStatus.CONVERTED
    assert entry.resolved_at == NOW + timedelta(minutes=10)
    # Converting twice is harmless
    assert (await waitlist.convert_on_approval(bob_id, NOW)).status == WaitlistStatus.CONVERTED


@pytest.mark.asyncio
async def test_convert_on_approval_after_deadline(test_session, waitlist, cart_service, court, alice, bob, staff):
    (bob_id,) = await freed_slot(cart_service, court, alice, [bob], staff)

    with pytest.raises(DeadlineExpiredError):
        await waitlist.convert_on_approval(bob_id, FIRST_DEADLINE + timedelta(minutes=1))

    assert (await reload(test_session, WaitlistEntry, bob_id)).status == WaitlistStatus.EXPIRED


@pytest.mark.asyncio
async def test_leave_pending_entry(test_session, waitlist, cart_service, court, alice, bob):
    _, (bob_id,) = await contested_slot(cart_service, court, alice, [bob])

    entry = await waitlist.leave(bob_id, bob, NOW)

    assert entry.status == WaitlistStatus.CANCELLED
    transaction, items = await cart_service.get_active_cart(bob)
    assert transaction is None and items == []


@pytest.mark.asyncio
async def test_leave_notified_entry_passes_slot_on(
    test_session, waitlist, notifier, cart_service, court, alice, bob, carol, staff
):
    """Test that withdrawing a promotion releases its booking to the next in line."""
    bob_id, carol_id = await freed_slot(cart_service, court, alice, [bob, carol], staff)

    entry = await waitlist.leave(bob_id, bob, NOW + timedelta(minutes=5))

    assert entry.status == WaitlistStatus.CANCELLED
    booking = await reload(test_session, Booking, entry.promoted_booking_id)
    assert booking.status == BookingStatus.REJECTED
    assert booking.rejection_reason == WITHDRAWN_REASON
    assert (await reload(test_session, WaitlistEntry, carol_id)).status == WaitlistStatus.NOTIFIED


@pytest.mark.asyncio
async def test_leave_entry_of_other_user_forbidden(waitlist, cart_service, court, alice, bob, carol):
    _, (bob_id,) = await contested_slot(cart_service, court, alice, [bob])

    with pytest.raises(AuthorizationError):
        await waitlist.leave(bob_id, carol, NOW)


@pytest.mark.asyncio
async def test_leave_twice_fails(waitlist, cart_service, court, alice, bob):
    _, (bob_id,) = await contested_slot(cart_service, court, alice, [bob])
    await waitlist.leave(bob_id, bob, NOW)

    with pytest.raises(InvalidStateTransition):
        await waitlist.leave(bob_id, bob, NOW)


@pytest.mark.asyncio
async def test_expire_overdue_batch(
    test_session, waitlist, cart_service, court, second_court, alice, bob, carol, staff
):
    """Test that the sweep expires every overdue entry across courts."""
    await freed_slot(cart_service, court, alice, [bob], staff)
    await freed_slot(cart_service, second_court, alice, [carol], staff)

    assert await waitlist.expire_overdue(FIRST_DEADLINE) == 0
    assert await waitlist.expire_overdue(FIRST_DEADLINE + timedelta(minutes=1)) == 2

    entries = await waitlist.list_entries_for_user("bob") + await waitlist.list_entries_for_user("carol")
    assert {e.status for e in entries} == {WaitlistStatus.EXPIRED}
    result = await test_session.execute(select(CartTransaction).where(CartTransaction.user_id == "bob"))
    assert all(tx.status != TransactionStatus.PENDING for tx in result.scalars().all())


@pytest.mark.asyncio
async def test_list_entries_for_user_active_only(waitlist, cart_service, court, second_court, alice, bob):
    await contested_slot(cart_service, court, alice, [bob])
    _, (second_id,) = await contested_slot(cart_service, second_court, alice, [bob])
    await waitlist.leave(second_id, bob, NOW)

    active = await waitlist.list_entries_for_user("bob", active_only=True)
    everything = await waitlist.list_entries_for_user("bob")

    assert [e.resource_id for e in active] == [court.id]
    assert len(everything) == 2


@pytest.mark.asyncio
async def test_enqueue_keeps_existing_position(waitlist, court):
    first = await waitlist.enqueue("bob", court.id, EVENING, 500, None, NOW)
    second = await waitlist.enqueue("carol", court.id, EVENING, 500, None, NOW)
    again = await waitlist.enqueue("bob", court.id, EVENING, 500, None, NOW)

    assert (first.position, second.position) == (1, 2)
    assert again.id == first.id


def test_is_overdue():
    entry = WaitlistEntry(status=WaitlistStatus.NOTIFIED, expires_at=FIRST_DEADLINE)

    assert not WaitlistService.is_overdue(entry, FIRST_DEADLINE)
    assert WaitlistService.is_overdue(entry, FIRST_DEADLINE + timedelta(seconds=1))
    entry.status = WaitlistStatus.PENDING
    assert not WaitlistService.is_overdue(entry, FIRST_DEADLINE + timedelta(days=1))
