"""Health-related Pydantic schemas."""

from datetime import datetime
from enum import Enum
from typing import Dict

from pydantic import BaseModel, Field


class HealthStatus(str, Enum):
    """Health status enumeration."""
    HEALTHY = "healthy"
    READY = "ready"
    NOT_READY = "not_ready"


class HealthResponse(BaseModel):
    """Health check response schema."""

    status: HealthStatus = Field(..., description="Service status")
    timestamp: datetime = Field(..., description="Current facility time (ISO 8601)")
    version: str = Field("1.0.0", description="API version")


class ReadinessResponse(BaseModel):
    status: HealthStatus
    checks: Dict[str, str] = Field(default_factory=dict, description="Dependency check results")


class InfoResponse(BaseModel):
    """Service information response schema."""

    service: str
    version: str
    environment: str
    facility_timezone: str
    waitlist_enabled: bool
