"""Waitlist entry model definition."""

from datetime import date, datetime, time
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Time,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from ..core.clock import facility_now
from ..core.database import Base
from ..core.time_range import TimeRange


class WaitlistStatus(str, Enum):
    """Waitlist entry status enumeration."""
    PENDING = "PENDING"
    NOTIFIED = "NOTIFIED"
    CONVERTED = "CONVERTED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


ACTIVE_WAITLIST_STATUSES = (WaitlistStatus.PENDING, WaitlistStatus.NOTIFIED)


class WaitlistEntry(Base):
    """A queued claim on a slot soft-held by someone else."""

    __tablename__ = "waitlist_entries"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

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

    position: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[WaitlistStatus] = mapped_column(
        String(20),
        nullable=False,
        default=WaitlistStatus.PENDING
    )

    # Weak back-references
    pending_booking_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    promoted_booking_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)

    notified_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=facility_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=facility_now,
        onupdate=facility_now
    )

    __table_args__ = (
        Index(
            "ix_waitlist_resource_date_start_status",
            "resource_id", "booking_date", "start_time", "status"
        ),
        Index(
            "uq_waitlist_active_position",
            "resource_id", "booking_date", "start_time", "end_time", "position",
            unique=True,
            postgresql_where=text("status IN ('PENDING', 'NOTIFIED')"),
            sqlite_where=text("status IN ('PENDING', 'NOTIFIED')"),
        ),
        Index(
            "uq_waitlist_single_notified",
            "resource_id", "booking_date", "start_time", "end_time",
            unique=True,
            postgresql_where=text("status = 'NOTIFIED'"),
            sqlite_where=text("status = 'NOTIFIED'"),
        ),
        CheckConstraint("position > 0", name="ck_waitlist_position_positive"),
        CheckConstraint("price_amount >= 0", name="ck_waitlist_price_not_negative"),
    )

    @property
    def time_range(self) -> TimeRange:
        return TimeRange(self.booking_date, self.start_time, self.end_time)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_WAITLIST_STATUSES

    def __repr__(self) -> str:
        return (
            f"<WaitlistEntry(id={self.id}, resource_id={self.resource_id}, range={self.time_range}, "
            f"position={self.position}, status={self.status})>"
        )
