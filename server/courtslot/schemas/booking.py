"""Booking-related Pydantic schemas."""

from datetime import date, datetime, time
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class BookingStatus(str, Enum):
    """Booking status enumeration."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    CHECKED_IN = "CHECKED_IN"
    COMPLETED = "COMPLETED"


class PaymentStatus(str, Enum):
    UNPAID = "UNPAID"
    PAID = "PAID"


class BookingIdRequest(BaseModel):
    """Request schema addressing one booking."""

    booking_id: str = Field(..., description="Booking ID")


class Booking(BaseModel):
    """Booking response schema."""

    id: str = Field(..., description="Unique booking ID")
    resource_id: str = Field(..., description="Booked court")
    user_id: str
    booking_date: date
    start_time: time
    end_time: time = Field(..., description="At or before start_time means the booking ends after midnight")
    price_amount: int = Field(..., ge=0, description="Price in minor units")
    status: BookingStatus
    payment_status: PaymentStatus
    payment_method: Optional[str] = None
    cart_transaction_id: Optional[str] = None
    waitlist_entry_id: Optional[str] = Field(None, description="Waitlist entry this booking was promoted from")
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    checked_in_at: Optional[datetime] = None
    created_at: datetime
