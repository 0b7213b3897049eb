"""Maintenance Pydantic schemas."""

from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, Field


class SweepReport(BaseModel):
    """Result of one reconciliation sweep."""

    started_at: datetime
    repaired_transactions: int = 0
    reverted_checkouts: int = 0
    expired_carts: int = 0
    expired_checkouts: int = 0
    expired_waitlist_entries: int = 0
    completed_bookings: int = 0
    promotions: int = 0
    unrepairable: int = Field(0, description="Drifted approvals left alone because their slot is confirmed for another booking")
    errors: int = Field(0, description="Items that failed and will be retried on the next sweep")


class WorkerStatus(BaseModel):
    running: bool
    interval_seconds: int
    last_run_at: Optional[datetime] = None
    last_error: Optional[str] = None


class WorkerStatusList(BaseModel):
    workers: Dict[str, WorkerStatus]
