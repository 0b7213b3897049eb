"""Cart and checkout Pydantic schemas."""

from datetime import date, datetime, time
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


class TransactionStatus(str, Enum):
    """Checkout status enumeration."""
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class ApprovalStatus(str, Enum):
    """Approval status enumeration."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class CartItemStatus(str, Enum):
    """Cart item status enumeration."""
    PENDING = "PENDING"
    WAITLISTED = "WAITLISTED"
    COMPLETED = "COMPLETED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class CartItemInput(BaseModel):
    """One slot requested for the cart."""

    resource_id: str = Field(..., description="Court ID")
    booking_date: date
    start_time: time
    end_time: time = Field(..., description="At or before start_time means the slot ends after midnight")
    price_amount: int = Field(..., ge=0, description="Price in minor units")


class AddItemsRequest(BaseModel):
    """Request schema for adding slots to the caller's cart."""

    items: List[CartItemInput] = Field(..., min_length=1, max_length=50)


class AddedItem(BaseModel):
    index: int = Field(..., description="Position of the item in the request")
    cart_item_id: str


class WaitlistedItem(BaseModel):
    index: int
    cart_item_id: str
    waitlist_entry_id: str
    position: int = Field(..., ge=1, description="Place in the slot's queue")
    blocking_booking_id: Optional[str] = None


class RejectedItem(BaseModel):
    index: int
    reason: str = Field(..., description="Machine-readable rejection reason")
    detail: Optional[str] = None


class AddItemsResponse(BaseModel):
    """Per-item outcome of an add-to-cart request."""

    transaction_id: Optional[str] = Field(None, description="Cart the items were added to")
    added: List[AddedItem]
    waitlisted: List[WaitlistedItem]
    rejected: List[RejectedItem]


class CartItem(BaseModel):
    """Cart item response schema."""

    id: str
    resource_id: str
    booking_date: date
    start_time: time
    end_time: time
    price_amount: int
    status: CartItemStatus
    booking_id: Optional[str] = None
    waitlist_entry_id: Optional[str] = None


class CartTransaction(BaseModel):
    """Cart transaction response schema."""

    id: str
    user_id: str
    status: TransactionStatus
    approval_status: ApprovalStatus
    payment_status: str
    payment_method: Optional[str] = None
    proof_of_payment: Optional[str] = None
    total_price_amount: int
    paid_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    promoted_from_entry_id: Optional[str] = None
    created_at: datetime
    items: List[CartItem] = Field(default_factory=list)
    booking_ids: List[str] = Field(default_factory=list)


class CartCount(BaseModel):
    count: int = Field(..., ge=0)


class RemoveItemRequest(BaseModel):
    cart_item_id: str = Field(..., description="Cart item to remove")


class TransactionIdRequest(BaseModel):
    """Request schema addressing one cart transaction."""

    transaction_id: str = Field(..., description="Cart transaction ID")


class CheckoutRequest(BaseModel):
    """Request schema for checking out a cart."""

    transaction_id: str = Field(..., description="Cart transaction to check out")
    payment_method: str = Field("pending", min_length=1, max_length=32, description="'pending' to pay later")
    proof_ref: Optional[str] = Field(None, max_length=512, description="Payment-proof storage key")
    selected_item_ids: Optional[List[str]] = Field(
        None,
        description="Check out only these items; the rest move to a new cart"
    )

    @model_validator(mode="after")
    def validate_payment(self) -> "CheckoutRequest":
        if self.payment_method != "pending" and not self.proof_ref:
            raise ValueError("proof_ref is required unless payment_method is 'pending'")
        return self


class CheckoutResponse(BaseModel):
    transaction_id: str
    booking_ids: List[str]
    remaining_transaction_id: Optional[str] = Field(
        None,
        description="New cart holding the items not checked out"
    )


class AttachProofRequest(BaseModel):
    """Request schema for attaching payment proof to a checked-out transaction."""

    transaction_id: str
    payment_method: str = Field(..., min_length=1, max_length=32)
    proof_ref: str = Field(..., min_length=1, max_length=512)


class CancelTransactionRequest(BaseModel):
    transaction_id: str
    reason: Optional[str] = Field(None, max_length=500)


class RejectTransactionRequest(BaseModel):
    """Request schema for rejecting a transaction."""

    transaction_id: str
    reason: str = Field(..., min_length=1, max_length=500)


class DecisionResponse(BaseModel):
    """Outcome of an approval, rejection or cancellation."""

    transaction_id: str
    cascaded_booking_ids: List[str]
    waitlist_promotions: List[str] = Field(
        default_factory=list,
        description="Waitlist entries notified as a result"
    )
