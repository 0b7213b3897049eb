"""Transaction and booking routers for staff decisions and check-in."""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.dependencies import DatabaseSession, RequiredAuth, StaffAuth, parse_uuid
from ..core.exceptions import AuthorizationError, ProblemDetailsException, internal_error
from ..schemas.auth import Principal
from ..schemas.common import API_PROBLEMS
from ..schemas.booking import Booking, BookingIdRequest
from ..schemas.cart import CartTransaction, DecisionResponse, RejectTransactionRequest, TransactionIdRequest
from ..services.cart_service import CartService
from .cart import _convert_decision_to_schema, _convert_transaction_to_schema

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/transaction", tags=["transaction"], responses=API_PROBLEMS)
booking_router = APIRouter(prefix="/v1/booking", tags=["booking"], responses=API_PROBLEMS)


def _convert_booking_to_schema(booking_model) -> Booking:
    """Convert booking model to schema."""
    return Booking(
        id=str(booking_model.id),
        resource_id=str(booking_model.resource_id),
        user_id=booking_model.user_id,
        booking_date=booking_model.booking_date,
        start_time=booking_model.start_time,
        end_time=booking_model.end_time,
        price_amount=booking_model.price_amount,
        status=booking_model.status,
        payment_status=booking_model.payment_status,
        payment_method=booking_model.payment_method,
        cart_transaction_id=str(booking_model.cart_transaction_id) if booking_model.cart_transaction_id else None,
        waitlist_entry_id=str(booking_model.waitlist_entry_id) if booking_model.waitlist_entry_id else None,
        approved_by=booking_model.approved_by,
        approved_at=booking_model.approved_at,
        rejection_reason=booking_model.rejection_reason,
        checked_in_at=booking_model.checked_in_at,
        created_at=booking_model.created_at,
    )


@router.post("/get", response_model=CartTransaction)
async def get_transaction(
    request: TransactionIdRequest,
    user: Principal = RequiredAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    transaction_id = parse_uuid(request.transaction_id, "transaction_id")
    try:
        transaction, items, bookings = await CartService(db).get_transaction_details(transaction_id, user)
        response_data = _convert_transaction_to_schema(transaction, items, bookings)
        return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))
    except ProblemDetailsException:
        raise
    except Exception as e:
        raise internal_error("Unexpected error retrieving transaction", e, transaction_id=request.transaction_id) from e


@router.post("/approve", response_model=DecisionResponse)
async def approve_transaction(
    request: TransactionIdRequest,
    staff: Principal = StaffAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    """
    Approve a checked-out transaction (staff only).

    Fails with 409 if a confirmed booking already holds one of its slots,
    and with 410 if a promoted booking's payment deadline passed unpaid.
    """
    transaction_id = parse_uuid(request.transaction_id, "transaction_id")
    try:
        result = await CartService(db).approve(transaction_id, staff)
        return JSONResponse(status_code=200, content=_convert_decision_to_schema(result).model_dump(mode="json"))
    except ProblemDetailsException:
        raise
    except Exception as e:
        raise internal_error("Unexpected error approving transaction", e, transaction_id=request.transaction_id) from e


@router.post("/reject", response_model=DecisionResponse)
async def reject_transaction(
    request: RejectTransactionRequest,
    staff: Principal = StaffAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    """Reject a transaction (staff only); released slots go to the waitlist."""
    transaction_id = parse_uuid(request.transaction_id, "transaction_id")
    try:
        result = await CartService(db).reject(transaction_id, staff, request.reason)
        return JSONResponse(status_code=200, content=_convert_decision_to_schema(result).model_dump(mode="json"))
    except ProblemDetailsException:
        raise
    except Exception as e:
        raise internal_error("Unexpected error rejecting transaction", e, transaction_id=request.transaction_id) from e


@booking_router.post("/get", response_model=Booking)
async def get_booking(
    request: BookingIdRequest,
    user: Principal = RequiredAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    booking_id = parse_uuid(request.booking_id, "booking_id")
    try:
        booking = await CartService(db).get_booking_or_raise(booking_id)
        if booking.user_id != user.user_id and not user.is_staff:
            raise AuthorizationError(detail="Only the owner or staff can view this booking")
        return JSONResponse(status_code=200, content=_convert_booking_to_schema(booking).model_dump(mode="json"))
    except ProblemDetailsException:
        raise
    except Exception as e:
        raise internal_error("Unexpected error retrieving booking", e, booking_id=request.booking_id) from e


@booking_router.post("/check-in", response_model=Booking)
async def check_in(
    request: BookingIdRequest,
    staff: Principal = StaffAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    booking_id = parse_uuid(request.booking_id, "booking_id")
    try:
        booking = await CartService(db).check_in(booking_id, staff)
        return JSONResponse(status_code=200, content=_convert_booking_to_schema(booking).model_dump(mode="json"))
    except ProblemDetailsException:
        raise
    except Exception as e:
        raise internal_error("Unexpected error checking in booking", e, booking_id=request.booking_id) from e
