"""Facility wall clock."""

from datetime import datetime
from zoneinfo import ZoneInfo

from .config import settings


def facility_now() -> datetime:
    """Current naive wall-clock time at the facility."""
    return datetime.now(ZoneInfo(settings.facility_timezone)).replace(tzinfo=None)
