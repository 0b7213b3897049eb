"""Models module exporting all database models."""

from .booking import Booking, BookingStatus, PaymentStatus
from .cart import ApprovalStatus, CartItem, CartItemStatus, CartTransaction, TransactionStatus
from .resource import Resource
from .waitlist import WaitlistEntry, WaitlistStatus

__all__ = [
    # Courts
    "Resource",

    # Bookings
    "Booking",
    "BookingStatus",
    "PaymentStatus",

    # Cart
    "CartTransaction",
    "CartItem",
    "TransactionStatus",
    "ApprovalStatus",
    "CartItemStatus",

    # Waitlist
    "WaitlistEntry",
    "WaitlistStatus",
]
