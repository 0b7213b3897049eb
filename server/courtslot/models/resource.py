"""Resource (court) model definition."""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import Boolean, CheckConstraint, DateTime, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ..core.clock import facility_now
from ..core.database import Base


class Resource(Base):
    """A bookable court."""

    __tablename__ = "resources"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    category: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=facility_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=facility_now,
        onupdate=facility_now
    )

    __table_args__ = (
        CheckConstraint("length(name) > 0", name="ck_resource_name_not_empty"),
        CheckConstraint("length(category) > 0", name="ck_resource_category_not_empty"),
    )

    def __repr__(self) -> str:
        return f"<Resource(id={self.id}, name='{self.name}', category='{self.category}', active={self.is_active})>"
