"""Waitlist router for waitlist operations."""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.dependencies import DatabaseSession, RequiredAuth, StaffAuth, parse_uuid
from ..core.exceptions import ProblemDetailsException, internal_error
from ..core.time_range import TimeRange
from ..schemas.auth import Principal
from ..schemas.common import API_PROBLEMS
from ..schemas.waitlist import (
    ListMyEntriesRequest,
    PromotionResponse,
    SlotQueueRequest,
    WaitlistEntry,
    WaitlistEntryIdRequest,
    WaitlistEntryList,
)
from ..services.waitlist_service import WaitlistService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/waitlist", tags=["waitlist"], responses=API_PROBLEMS)


def _convert_waitlist_entry_to_schema(entry_model) -> WaitlistEntry:
    """Convert waitlist entry model to schema."""
    return WaitlistEntry(
        id=str(entry_model.id),
        user_id=entry_model.user_id,
        resource_id=str(entry_model.resource_id),
        booking_date=entry_model.booking_date,
        start_time=entry_model.start_time,
        end_time=entry_model.end_time,
        position=entry_model.position,
        status=entry_model.status,
        pending_booking_id=str(entry_model.pending_booking_id) if entry_model.pending_booking_id else None,
        promoted_booking_id=str(entry_model.promoted_booking_id) if entry_model.promoted_booking_id else None,
        notified_at=entry_model.notified_at,
        expires_at=entry_model.expires_at,
        created_at=entry_model.created_at,
    )


def _slot_from_request(request: SlotQueueRequest) -> tuple:
    return (
        parse_uuid(request.resource_id, "resource_id"),
        TimeRange(request.booking_date, request.start_time, request.end_time),
    )


@router.post("/mine", response_model=WaitlistEntryList)
async def list_my_entries(
    request: ListMyEntriesRequest,
    user: Principal = RequiredAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    try:
        entries = await WaitlistService(db).list_entries_for_user(user.user_id, active_only=request.active_only)
        response_data = WaitlistEntryList(items=[_convert_waitlist_entry_to_schema(e) for e in entries])
        return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))
    except ProblemDetailsException:
        raise
    except Exception as e:
        raise internal_error("Unexpected error listing waitlist entries", e, user_id=user.user_id) from e


@router.post("/slot", response_model=WaitlistEntryList)
async def list_slot_queue(
    request: SlotQueueRequest,
    staff: Principal = StaffAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    """Active queue for one slot, in position order (staff only)."""
    resource_id, time_range = _slot_from_request(request)
    try:
        entries = await WaitlistService(db).list_entries_for_slot(resource_id, time_range)
        response_data = WaitlistEntryList(items=[_convert_waitlist_entry_to_schema(e) for e in entries])
        return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))
    except ProblemDetailsException:
        raise
    except Exception as e:
        raise internal_error("Unexpected error listing slot queue", e, resource_id=request.resource_id) from e


@router.post("/leave", response_model=WaitlistEntry)
async def leave_waitlist(
    request: WaitlistEntryIdRequest,
    user: Principal = RequiredAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    """
    Withdraw from a slot's waitlist.

    A notified entry gives up its promoted booking and the slot passes to
    the next entry in the queue.
    """
    entry_id = parse_uuid(request.entry_id, "entry_id")
    try:
        entry = await WaitlistService(db).leave(entry_id, user)
        return JSONResponse(status_code=200, content=_convert_waitlist_entry_to_schema(entry).model_dump(mode="json"))
    except ProblemDetailsException:
        raise
    except Exception as e:
        raise internal_error("Unexpected error leaving waitlist", e, entry_id=request.entry_id) from e


@router.post("/promote", response_model=PromotionResponse)
async def promote_next(
    request: SlotQueueRequest,
    staff: Principal = StaffAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    """Offer a free slot to its next queued user (staff only)."""
    resource_id, time_range = _slot_from_request(request)
    try:
        promotion = await WaitlistService(db).promote_next(resource_id, time_range)
        if promotion is None:
            response_data = PromotionResponse(promoted=False)
        else:
            response_data = PromotionResponse(
                promoted=True,
                entry=_convert_waitlist_entry_to_schema(promotion.entry),
                booking_id=str(promotion.booking.id),
                transaction_id=str(promotion.transaction.id),
            )
        logger.info(
            "Manual waitlist promotion",
            extra={"resource_id": request.resource_id, "time_range": str(time_range), "promoted": response_data.promoted}
        )
        return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))
    except ProblemDetailsException:
        raise
    except Exception as e:
        raise internal_error("Unexpected error promoting waitlist", e, resource_id=request.resource_id) from e


@router.post("/expire", response_model=WaitlistEntry)
async def expire_entry(
    request: WaitlistEntryIdRequest,
    staff: Principal = StaffAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    """Expire a notified entry if its deadline has passed; otherwise a no-op."""
    entry_id = parse_uuid(request.entry_id, "entry_id")
    try:
        entry = await WaitlistService(db).expire_if_overdue(entry_id)
        return JSONResponse(status_code=200, content=_convert_waitlist_entry_to_schema(entry).model_dump(mode="json"))
    except ProblemDetailsException:
        raise
    except Exception as e:
        raise internal_error("Unexpected error expiring waitlist entry", e, entry_id=request.entry_id) from e
