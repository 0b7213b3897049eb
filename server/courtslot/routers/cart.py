"""Cart router for adding, checking out and paying for slots."""

import logging
from typing import Iterable, Optional

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.dependencies import DatabaseSession, RequiredAuth, parse_uuid
from ..core.exceptions import ProblemDetailsException, internal_error
from ..schemas.auth import Principal
from ..schemas.common import API_PROBLEMS
from ..schemas.cart import (
    AddedItem,
    AddItemsRequest,
    AddItemsResponse,
    AttachProofRequest,
    CancelTransactionRequest,
    CartCount,
    CartItem,
    CartTransaction,
    CheckoutRequest,
    CheckoutResponse,
    DecisionResponse,
    RejectedItem,
    RemoveItemRequest,
    WaitlistedItem,
)
from ..services.cart_service import CartService, DecisionResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/cart", tags=["cart"], responses=API_PROBLEMS)


def _convert_cart_item_to_schema(item_model) -> CartItem:
    """Convert cart item model to schema."""
    return CartItem(
        id=str(item_model.id),
        resource_id=str(item_model.resource_id),
        booking_date=item_model.booking_date,
        start_time=item_model.start_time,
        end_time=item_model.end_time,
        price_amount=item_model.price_amount,
        status=item_model.status,
        booking_id=str(item_model.booking_id) if item_model.booking_id else None,
        waitlist_entry_id=str(item_model.waitlist_entry_id) if item_model.waitlist_entry_id else None,
    )


def _convert_transaction_to_schema(tx_model, items: Iterable = (), bookings: Iterable = ()) -> CartTransaction:
    """Convert cart transaction model, with its children, to schema."""
    return CartTransaction(
        id=str(tx_model.id),
        user_id=tx_model.user_id,
        status=tx_model.status,
        approval_status=tx_model.approval_status,
        payment_status=tx_model.payment_status,
        payment_method=tx_model.payment_method,
        proof_of_payment=tx_model.proof_of_payment,
        total_price_amount=tx_model.total_price_amount,
        paid_at=tx_model.paid_at,
        approved_by=tx_model.approved_by,
        approved_at=tx_model.approved_at,
        rejection_reason=tx_model.rejection_reason,
        promoted_from_entry_id=str(tx_model.promoted_from_entry_id) if tx_model.promoted_from_entry_id else None,
        created_at=tx_model.created_at,
        items=[_convert_cart_item_to_schema(item) for item in items],
        booking_ids=[str(booking.id) for booking in bookings],
    )


def _convert_decision_to_schema(result: DecisionResult) -> DecisionResponse:
    return DecisionResponse(
        transaction_id=str(result.transaction.id),
        cascaded_booking_ids=[str(b.id) for b in result.bookings],
        waitlist_promotions=[str(p.entry.id) for p in result.promotions],
    )


@router.post("/add", response_model=AddItemsResponse)
async def add_items(
    request: AddItemsRequest,
    user: Principal = RequiredAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    """
    Add slots to the caller's cart.

    Every item gets its own outcome: added, waitlisted behind the current
    holder, or rejected with a reason. One rejected item never blocks the
    others.
    """
    try:
        result = await CartService(db).add_items(user, request.items)
        response_data = AddItemsResponse(
            transaction_id=str(result.transaction.id) if result.transaction else None,
            added=[AddedItem(index=a.index, cart_item_id=str(a.item.id)) for a in result.added],
            waitlisted=[
                WaitlistedItem(
                    index=w.index,
                    cart_item_id=str(w.item.id),
                    waitlist_entry_id=str(w.entry.id),
                    position=w.entry.position,
                    blocking_booking_id=str(w.blocking_booking_id) if w.blocking_booking_id else None,
                )
                for w in result.waitlisted
            ],
            rejected=[RejectedItem(index=r.index, reason=r.reason, detail=r.detail) for r in result.rejected],
        )
        return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))
    except ProblemDetailsException:
        raise
    except Exception as e:
        raise internal_error("Unexpected error adding cart items", e, user_id=user.user_id) from e


@router.post("/get", response_model=Optional[CartTransaction])
async def get_cart(
    user: Principal = RequiredAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    """The caller's open cart, or null when there is none."""
    try:
        transaction, items = await CartService(db).get_active_cart(user)
        content = (
            _convert_transaction_to_schema(transaction, items).model_dump(mode="json")
            if transaction else None
        )
        return JSONResponse(status_code=200, content=content)
    except ProblemDetailsException:
        raise
    except Exception as e:
        raise internal_error("Unexpected error retrieving cart", e, user_id=user.user_id) from e


@router.post("/count", response_model=CartCount)
async def count_items(
    user: Principal = RequiredAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    try:
        count = await CartService(db).count_items(user)
        return JSONResponse(status_code=200, content=CartCount(count=count).model_dump())
    except ProblemDetailsException:
        raise
    except Exception as e:
        raise internal_error("Unexpected error counting cart items", e, user_id=user.user_id) from e


@router.post("/remove", response_model=CartTransaction)
async def remove_item(
    request: RemoveItemRequest,
    user: Principal = RequiredAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    cart_item_id = parse_uuid(request.cart_item_id, "cart_item_id")
    try:
        service = CartService(db)
        transaction = await service.remove_item(user, cart_item_id)
        _, items = await service.get_active_cart(user)
        open_items = [item for item in items if item.cart_transaction_id == transaction.id]
        response_data = _convert_transaction_to_schema(transaction, open_items)
        return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))
    except ProblemDetailsException:
        raise
    except Exception as e:
        raise internal_error("Unexpected error removing cart item", e, cart_item_id=request.cart_item_id) from e


@router.post("/clear", response_model=Optional[CartTransaction])
async def clear_cart(
    user: Principal = RequiredAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    """Cancel the caller's open cart and any waitlist entries it joined."""
    try:
        transaction = await CartService(db).clear_cart(user)
        content = _convert_transaction_to_schema(transaction).model_dump(mode="json") if transaction else None
        return JSONResponse(status_code=200, content=content)
    except ProblemDetailsException:
        raise
    except Exception as e:
        raise internal_error("Unexpected error clearing cart", e, user_id=user.user_id) from e


@router.post("/checkout", response_model=CheckoutResponse)
async def checkout(
    request: CheckoutRequest,
    user: Principal = RequiredAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    """
    Check out the cart's pending items.

    All-or-nothing: if any selected item is no longer available the
    checkout fails with a 409 listing the stale items, and nothing changes.
    """
    transaction_id = parse_uuid(request.transaction_id, "transaction_id")
    selected = (
        [parse_uuid(i, "selected_item_ids") for i in request.selected_item_ids]
        if request.selected_item_ids is not None else None
    )
    try:
        result = await CartService(db).checkout(
            transaction_id,
            user,
            payment_method=request.payment_method,
            proof_ref=request.proof_ref,
            selected_item_ids=selected,
        )
        response_data = CheckoutResponse(
            transaction_id=str(result.transaction.id),
            booking_ids=[str(b.id) for b in result.bookings],
            remaining_transaction_id=str(result.remaining_transaction.id) if result.remaining_transaction else None,
        )
        return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))
    except ProblemDetailsException:
        raise
    except Exception as e:
        raise internal_error("Unexpected error in checkout", e, transaction_id=request.transaction_id) from e


@router.post("/attach-proof", response_model=CartTransaction)
async def attach_payment_proof(
    request: AttachProofRequest,
    user: Principal = RequiredAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    transaction_id = parse_uuid(request.transaction_id, "transaction_id")
    try:
        service = CartService(db)
        await service.attach_payment_proof(transaction_id, user, request.payment_method, request.proof_ref)
        transaction, items, bookings = await service.get_transaction_details(transaction_id, user)
        response_data = _convert_transaction_to_schema(transaction, items, bookings)
        return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))
    except ProblemDetailsException:
        raise
    except Exception as e:
        raise internal_error("Unexpected error attaching payment", e, transaction_id=request.transaction_id) from e


@router.post("/cancel", response_model=DecisionResponse)
async def cancel_transaction(
    request: CancelTransactionRequest,
    user: Principal = RequiredAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    """Cancel a checked-out transaction; its slots are offered to the waitlist."""
    transaction_id = parse_uuid(request.transaction_id, "transaction_id")
    try:
        result = await CartService(db).cancel_transaction(transaction_id, user, request.reason)
        return JSONResponse(status_code=200, content=_convert_decision_to_schema(result).model_dump(mode="json"))
    except ProblemDetailsException:
        raise
    except Exception as e:
        raise internal_error("Unexpected error cancelling transaction", e, transaction_id=request.transaction_id) from e
