"""Court and availability Pydantic schemas."""

from datetime import date, datetime, time
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class SlotState(str, Enum):
    """Classification of a court/time range."""
    AVAILABLE = "AVAILABLE"
    SOFT_HELD = "SOFT_HELD"
    BLOCKED = "BLOCKED"


class SlotDisplayState(str, Enum):
    """What a slot looks like to the user browsing the grid."""
    AVAILABLE = "AVAILABLE"
    WAITLIST = "WAITLIST"
    BOOKED = "BOOKED"


class CreateResourceRequest(BaseModel):
    """Request schema for creating a court."""

    name: str = Field(..., min_length=1, max_length=100, description="Court name")
    category: str = Field(..., min_length=1, max_length=50, description="Sport played on the court")


class ListResourcesRequest(BaseModel):
    include_inactive: bool = Field(False, description="Include deactivated courts")


class ResourceIdRequest(BaseModel):
    """Request schema addressing one court."""

    resource_id: str = Field(..., description="Court ID")


class DaySlotsRequest(BaseModel):
    resource_id: str = Field(..., description="Court ID")
    booking_date: date


class ClassifySlotRequest(BaseModel):
    """Request schema for classifying one time range."""

    resource_id: str = Field(..., description="Court ID")
    booking_date: date
    start_time: time
    end_time: time = Field(..., description="At or before start_time means the range ends after midnight")


class Resource(BaseModel):
    """Court response schema."""

    id: str = Field(..., description="Unique court ID")
    name: str
    category: str
    is_active: bool
    created_at: datetime


class ResourceList(BaseModel):
    items: List[Resource]


class SlotClassification(BaseModel):
    """Slot classification response schema."""

    state: SlotState
    blocking_booking_id: Optional[str] = Field(None, description="Booking holding the slot when soft-held")


class SlotView(BaseModel):
    start_time: time
    end_time: time
    state: SlotDisplayState
    blocking_booking_id: Optional[str] = None


class DaySlots(BaseModel):
    """Slot grid for one court and day."""

    resource_id: str
    booking_date: date
    closed: bool = Field(False, description="True on the facility's weekly off-days")
    slots: List[SlotView]
