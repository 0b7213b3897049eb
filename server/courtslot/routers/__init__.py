"""FastAPI routers package."""

from .cart import router as cart_router
from .maintenance import router as maintenance_router
from .metrics import router as metrics_router
from .resources import router as resource_router
from .transactions import booking_router
from .transactions import router as transaction_router
from .waitlist import router as waitlist_router

__all__ = [
    "booking_router",
    "cart_router",
    "maintenance_router",
    "metrics_router",
    "resource_router",
    "transaction_router",
    "waitlist_router",
]
