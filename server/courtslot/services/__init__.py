"""Service layer package."""

from .availability_service import AvailabilityService, HoldPolicy
from .business_hours import BusinessHoursCalculator
from .cart_service import CartService
from .reconciliation_service import ReconciliationService
from .resource_service import ResourceService
from .waitlist_service import WaitlistService

__all__ = [
    "AvailabilityService",
    "BusinessHoursCalculator",
    "CartService",
    "HoldPolicy",
    "ReconciliationService",
    "ResourceService",
    "WaitlistService",
]
