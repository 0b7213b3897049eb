"""Resource router for courts and slot availability."""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import facility_now
from ..core.config import settings
from ..core.dependencies import DatabaseSession, RequiredAuth, StaffAuth, parse_uuid
from ..core.exceptions import ProblemDetailsException, internal_error
from ..core.time_range import TimeRange
from ..schemas.auth import Principal
from ..schemas.common import API_PROBLEMS
from ..schemas.resource import (
    ClassifySlotRequest,
    CreateResourceRequest,
    DaySlots,
    DaySlotsRequest,
    ListResourcesRequest,
    Resource,
    ResourceIdRequest,
    ResourceList,
    SlotClassification,
    SlotDisplayState,
    SlotState,
    SlotView,
)
from ..services.availability_service import AvailabilityService
from ..services.resource_service import ResourceService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/resource", tags=["resource"], responses=API_PROBLEMS)

_DISPLAY_STATES = {
    SlotState.AVAILABLE: SlotDisplayState.AVAILABLE,
    SlotState.SOFT_HELD: SlotDisplayState.WAITLIST,
    SlotState.BLOCKED: SlotDisplayState.BOOKED,
}


def _convert_resource_to_schema(resource_model) -> Resource:
    """Convert resource model to schema."""
    return Resource(
        id=str(resource_model.id),
        name=resource_model.name,
        category=resource_model.category,
        is_active=resource_model.is_active,
        created_at=resource_model.created_at,
    )


@router.post("/create", response_model=Resource)
async def create_resource(
    request: CreateResourceRequest,
    staff: Principal = StaffAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    """Create a new court (staff only)."""
    try:
        resource = await ResourceService(db).create_resource(request)
        return JSONResponse(status_code=200, content=_convert_resource_to_schema(resource).model_dump(mode="json"))
    except ProblemDetailsException:
        raise
    except Exception as e:
        raise internal_error("Unexpected error in court creation", e, name=request.name) from e


@router.post("/list", response_model=ResourceList)
async def list_resources(
    request: ListResourcesRequest,
    user: Principal = RequiredAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    try:
        resources = await ResourceService(db).list_resources(include_inactive=request.include_inactive)
        response_data = ResourceList(items=[_convert_resource_to_schema(r) for r in resources])
        return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))
    except ProblemDetailsException:
        raise
    except Exception as e:
        raise internal_error("Unexpected error listing courts", e) from e


@router.post("/get", response_model=Resource)
async def get_resource(
    request: ResourceIdRequest,
    user: Principal = RequiredAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    resource_id = parse_uuid(request.resource_id, "resource_id")
    try:
        resource = await ResourceService(db).get_resource_by_id_or_raise(resource_id)
        return JSONResponse(status_code=200, content=_convert_resource_to_schema(resource).model_dump(mode="json"))
    except ProblemDetailsException:
        raise
    except Exception as e:
        raise internal_error("Unexpected error retrieving court", e, resource_id=request.resource_id) from e


@router.post("/deactivate", response_model=Resource)
async def deactivate_resource(
    request: ResourceIdRequest,
    staff: Principal = StaffAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    """Take a court out of service; existing bookings stand."""
    resource_id = parse_uuid(request.resource_id, "resource_id")
    try:
        resource = await ResourceService(db).deactivate_resource(resource_id)
        return JSONResponse(status_code=200, content=_convert_resource_to_schema(resource).model_dump(mode="json"))
    except ProblemDetailsException:
        raise
    except Exception as e:
        raise internal_error("Unexpected error deactivating court", e, resource_id=request.resource_id) from e


@router.post("/slots", response_model=DaySlots)
async def list_day_slots(
    request: DaySlotsRequest,
    user: Principal = RequiredAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    """
    Slot grid for one court and day, as seen by the caller.

    Slots soft-held by someone else are shown as joinable waitlists and
    blocked slots as booked. The caller's own cart items do not hide slots.
    """
    resource_id = parse_uuid(request.resource_id, "resource_id")
    try:
        await ResourceService(db).get_resource_by_id_or_raise(resource_id)

        if request.booking_date.weekday() in settings.weekly_off_days:
            response_data = DaySlots(
                resource_id=request.resource_id, booking_date=request.booking_date, closed=True, slots=[]
            )
        else:
            classified = await AvailabilityService(db).list_day_slots(
                resource_id, request.booking_date, facility_now(), requesting_user_id=user.user_id
            )
            response_data = DaySlots(
                resource_id=request.resource_id,
                booking_date=request.booking_date,
                slots=[
                    SlotView(
                        start_time=slot.start,
                        end_time=slot.end,
                        state=_DISPLAY_STATES[classification.state],
                        blocking_booking_id=str(classification.blocking_booking_id)
                        if classification.blocking_booking_id else None,
                    )
                    for slot, classification in classified
                ],
            )
        return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))
    except ProblemDetailsException:
        raise
    except Exception as e:
        raise internal_error("Unexpected error listing slots", e, resource_id=request.resource_id) from e


@router.post("/classify", response_model=SlotClassification)
async def classify_slot(
    request: ClassifySlotRequest,
    user: Principal = RequiredAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    resource_id = parse_uuid(request.resource_id, "resource_id")
    try:
        classification = await AvailabilityService(db).classify(
            resource_id,
            TimeRange(request.booking_date, request.start_time, request.end_time),
            facility_now(),
            requesting_user_id=user.user_id,
        )
        response_data = SlotClassification(
            state=classification.state,
            blocking_booking_id=str(classification.blocking_booking_id)
            if classification.blocking_booking_id else None,
        )
        return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))
    except ProblemDetailsException:
        raise
    except Exception as e:
        raise internal_error("Unexpected error classifying slot", e, resource_id=request.resource_id) from e
