"""Waitlist-related Pydantic schemas."""

from datetime import date, datetime, time
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class WaitlistStatus(str, Enum):
    """Waitlist entry status enumeration."""
    PENDING = "PENDING"
    NOTIFIED = "NOTIFIED"
    CONVERTED = "CONVERTED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class ListMyEntriesRequest(BaseModel):
    active_only: bool = Field(False, description="Only pending and notified entries")


class SlotQueueRequest(BaseModel):
    """Request schema addressing one slot's queue."""

    resource_id: str = Field(..., description="Court ID")
    booking_date: date
    start_time: time
    end_time: time


class WaitlistEntryIdRequest(BaseModel):
    """Request schema addressing one waitlist entry."""

    entry_id: str = Field(..., description="Waitlist entry ID")


class WaitlistEntry(BaseModel):
    """Waitlist entry response schema."""

    id: str = Field(..., description="Unique waitlist entry ID")
    user_id: str
    resource_id: str
    booking_date: date
    start_time: time
    end_time: time
    position: int = Field(..., ge=1, description="Place in the slot's queue")
    status: WaitlistStatus
    pending_booking_id: Optional[str] = Field(None, description="Booking currently holding the slot")
    promoted_booking_id: Optional[str] = Field(None, description="Booking created on promotion")
    notified_at: Optional[datetime] = None
    expires_at: Optional[datetime] = Field(None, description="Payment deadline once notified")
    created_at: datetime


class WaitlistEntryList(BaseModel):
    items: List[WaitlistEntry]


class PromotionResponse(BaseModel):
    """Outcome of a manual promotion attempt."""

    promoted: bool
    entry: Optional[WaitlistEntry] = None
    booking_id: Optional[str] = None
    transaction_id: Optional[str] = None
