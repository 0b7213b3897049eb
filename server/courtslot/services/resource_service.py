"""Resource (court) service and slot-window locking."""

import logging
from typing import Iterable
from uuid import UUID

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.exceptions import ConflictError, NotFoundError
from ..core.time_range import TimeRange
from ..models.resource import Resource
from ..schemas.resource import CreateResourceRequest

logger = logging.getLogger(__name__)


class ResourceService:
    """Service for court-related operations."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_resource(self, request: CreateResourceRequest) -> Resource:
        """
        Create a new court.

        Raises:
            ConflictError: If a court with the same name exists
        """
        existing = await self.db.execute(select(Resource).where(Resource.name == request.name))
        if existing.scalar_one_or_none():
            raise ConflictError(
                detail=f"Court '{request.name}' already exists",
                conflicting_resource={"name": request.name},
                code="DUPLICATE_NAME",
            )

        resource = Resource(name=request.name, category=request.category, is_active=True)
        self.db.add(resource)
        await self.db.commit()
        await self.db.refresh(resource)

        logger.info(
            "Court created",
            extra={"resource_id": str(resource.id), "name": resource.name, "category": resource.category}
        )
        return resource

    async def list_resources(self, include_inactive: bool = False) -> list[Resource]:
        stmt = select(Resource).order_by(Resource.name)
        if not include_inactive:
            stmt = stmt.where(Resource.is_active.is_(True))
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_resource_by_id(self, resource_id: UUID) -> Resource | None:
        result = await self.db.execute(select(Resource).where(Resource.id == resource_id))
        return result.scalar_one_or_none()

    async def get_resource_by_id_or_raise(self, resource_id: UUID) -> Resource:
        resource = await self.get_resource_by_id(resource_id)
        if not resource:
            raise NotFoundError(resource_type="court", resource_id=str(resource_id))
        return resource

    async def deactivate_resource(self, resource_id: UUID) -> Resource:
        """Take a court out of service; existing bookings are left untouched."""
        resource = await self.get_resource_by_id_or_raise(resource_id)
        if resource.is_active:
            resource.is_active = False
            await self.db.commit()
            await self.db.refresh(resource)
            logger.info("Court deactivated", extra={"resource_id": str(resource_id)})
        return resource

    async def lock_slot_windows(self, slots: Iterable[tuple[UUID, TimeRange]]) -> None:
        """
        Serialize writers on the courts and days touched by ``slots``.

        Takes one transaction-scoped advisory lock per (court, day) in the
        window of every range, in sorted order so that concurrent callers
        cannot deadlock. Released on commit or rollback.
        """
        # Skip advisory locks for SQLite (used in tests)
        if not (self.db.bind and self.db.bind.dialect.name == "postgresql"):
            return

        keys = sorted({
            f"slot:{resource_id}:{day.isoformat()}"
            for resource_id, time_range in slots
            for day in time_range.window_days()
        })
        for key in keys:
            await self.db.execute(text("SELECT pg_advisory_xact_lock(hashtext(:key))"), {"key": key})

        logger.debug("Acquired slot window locks", extra={"lock_count": len(keys)})
