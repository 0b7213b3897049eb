"""Shared test data builders."""

from datetime import date, datetime, time, timedelta, timezone

import jwt

from courtslot.core.config import settings
from courtslot.schemas.cart import CartItemInput

# Monday morning, inside office hours; bookings are for the next evening
NOW = datetime(2030, 1, 7, 10, 0)
SLOT_DAY = date(2030, 1, 8)


class RecordingNotifier:
    """Notification sender that keeps every event it is given."""

    def __init__(self):
        self.events = []

    async def send(self, event) -> None:
        self.events.append(event)

    def of_type(self, event_type):
        return [event for event in self.events if isinstance(event, event_type)]


def slot(resource, start: int = 18, end: int = 19, day: date = SLOT_DAY, price: int = 500) -> CartItemInput:
    """Cart item input for one court and hour range; hour 24 means midnight."""
    return CartItemInput(
        resource_id=str(resource.id),
        booking_date=day,
        start_time=time(start % 24),
        end_time=time(end % 24),
        price_amount=price,
    )


def make_token(user_id: str, role: str | None = None, expires_in: timedelta = timedelta(hours=1)) -> str:
    payload = {"sub": user_id, "exp": datetime.now(timezone.utc) + expires_in}
    if role:
        payload["role"] = role
    return jwt.encode(payload, settings.bearer_token_secret, algorithm="HS256")


async def add_booking(
    db,
    resource,
    user_id: str = "holder",
    start: int = 18,
    end: int = 19,
    day: date = SLOT_DAY,
    status: str = "PENDING",
    payment_status: str = "PAID",
    owner_is_staff: bool = False,
    created_at: datetime = NOW,
):
    """Persist a standalone booking, bypassing the cart."""
    from courtslot.models import Booking

    booking = Booking(
        resource_id=resource.id,
        user_id=user_id,
        owner_is_staff=owner_is_staff,
        booking_date=day,
        start_time=time(start % 24),
        end_time=time(end % 24),
        price_amount=500,
        status=status,
        payment_status=payment_status,
        created_at=created_at,
        updated_at=created_at,
    )
    db.add(booking)
    await db.commit()
    return booking


async def reload(db, model, record_id):
    """Fetch a row again, overwriting whatever the session holds for it."""
    from sqlalchemy import select

    result = await db.execute(
        select(model).where(model.id == record_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def checked_out(cart_service, user, items, proof_ref=None, now=NOW):
    """Add ``items`` to the user's cart and check all of them out."""
    added = await cart_service.add_items(user, items, now)
    return await cart_service.checkout(added.transaction.id, user, proof_ref=proof_ref, now=now)
