"""Background workers for the court booking system."""

from .reconciliation_worker import ReconciliationWorker
from .waitlist_expiry_worker import WaitlistExpiryWorker

__all__ = ["ReconciliationWorker", "WaitlistExpiryWorker"]
