"""Booking model definition."""

from datetime import date, datetime, time
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Time,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from ..core.clock import facility_now
from ..core.database import Base
from ..core.time_range import TimeRange


class BookingStatus(str, Enum):
    """Booking status enumeration."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    CHECKED_IN = "CHECKED_IN"
    COMPLETED = "COMPLETED"


class PaymentStatus(str, Enum):
    """Payment status shared by bookings and cart transactions."""
    UNPAID = "UNPAID"
    PAID = "PAID"


# Statuses that always occupy the slot
CONFIRMED_BOOKING_STATUSES = (
    BookingStatus.APPROVED,
    BookingStatus.CHECKED_IN,
    BookingStatus.COMPLETED,
)

# Statuses that may occupy the slot, depending on payment and age
LIVE_BOOKING_STATUSES = (BookingStatus.PENDING, *CONFIRMED_BOOKING_STATUSES)


class Booking(Base):
    """A reservation of one court for one time range."""

    __tablename__ = "bookings"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    resource_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("resources.id", ondelete="RESTRICT"),
        nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    owner_is_staff: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Slot; end_time at or before start_time runs past midnight
    booking_date: Mapped[date] = mapped_column(Date, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    price_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    status: Mapped[BookingStatus] = mapped_column(
        String(20),
        nullable=False,
        default=BookingStatus.PENDING,
        index=True
    )

    # Payment
    payment_status: Mapped[PaymentStatus] = mapped_column(
        String(20),
        nullable=False,
        default=PaymentStatus.UNPAID
    )
    payment_method: Mapped[str | None] = mapped_column(String(32), nullable=True)
    proof_of_payment: Mapped[str | None] = mapped_column(String(512), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Owning transaction, and the waitlist entry this booking was promoted from
    cart_transaction_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("cart_transactions.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    waitlist_entry_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True, index=True)

    # Staff decision and attendance
    approved_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    checked_in_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=facility_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=facility_now,
        onupdate=facility_now
    )

    __table_args__ = (
        Index("ix_bookings_resource_date_start", "resource_id", "booking_date", "start_time"),
        CheckConstraint("price_amount >= 0", name="ck_booking_price_not_negative"),
        CheckConstraint("length(user_id) > 0", name="ck_booking_user_not_empty"),
    )

    @property
    def time_range(self) -> TimeRange:
        return TimeRange(self.booking_date, self.start_time, self.end_time)

    def __repr__(self) -> str:
        return (
            f"<Booking(id={self.id}, resource_id={self.resource_id}, "
            f"range={self.time_range}, status={self.status}, payment={self.payment_status})>"
        )
