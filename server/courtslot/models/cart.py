"""Cart transaction and cart item model definitions."""

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
from .booking import PaymentStatus


class TransactionStatus(str, Enum):
    """Checkout status of a cart transaction."""
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class ApprovalStatus(str, Enum):
    """Staff decision on a checked-out transaction."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class CartItemStatus(str, Enum):
    """Cart item status, mirroring the parent transaction."""
    PENDING = "PENDING"
    WAITLISTED = "WAITLISTED"
    COMPLETED = "COMPLETED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class CartTransaction(Base):
    """One checkout covering one or more cart items."""

    __tablename__ = "cart_transactions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    owner_is_staff: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    total_price_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    status: Mapped[TransactionStatus] = mapped_column(
        String(20),
        nullable=False,
        default=TransactionStatus.PENDING,
        index=True
    )
    approval_status: Mapped[ApprovalStatus] = mapped_column(
        String(20),
        nullable=False,
        default=ApprovalStatus.PENDING,
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
    checked_out_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Staff decision
    approved_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Set when the transaction was opened by a waitlist promotion
    promoted_from_entry_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True, index=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=facility_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=facility_now,
        onupdate=facility_now
    )

    __table_args__ = (
        CheckConstraint("total_price_amount >= 0", name="ck_cart_tx_total_not_negative"),
        CheckConstraint("length(user_id) > 0", name="ck_cart_tx_user_not_empty"),
    )

    def __repr__(self) -> str:
        return (
            f"<CartTransaction(id={self.id}, user_id='{self.user_id}', status={self.status}, "
            f"approval={self.approval_status}, payment={self.payment_status})>"
        )


class CartItem(Base):
    """One slot a user intends to book."""

    __tablename__ = "cart_items"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    cart_transaction_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("cart_transactions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    resource_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("resources.id", ondelete="RESTRICT"),
        nullable=False
    )

    booking_date: Mapped[date] = mapped_column(Date, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    price_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    status: Mapped[CartItemStatus] = mapped_column(
        String(20),
        nullable=False,
        default=CartItemStatus.PENDING,
        index=True
    )

    # Weak references, never owning
    booking_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    waitlist_entry_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True, index=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=facility_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=facility_now,
        onupdate=facility_now
    )

    __table_args__ = (
        Index("ix_cart_items_resource_date_start", "resource_id", "booking_date", "start_time"),
        CheckConstraint("price_amount >= 0", name="ck_cart_item_price_not_negative"),
    )

    @property
    def time_range(self) -> TimeRange:
        return TimeRange(self.booking_date, self.start_time, self.end_time)

    def __repr__(self) -> str:
        return (
            f"<CartItem(id={self.id}, cart_transaction_id={self.cart_transaction_id}, "
            f"range={self.time_range}, status={self.status})>"
        )
