"""Base model with common columns."""

from datetime import UTC, datetime

from sqlalchemy import DateTime
from sqlalchemy.orm import Mapped, mapped_column

from backchannel_logout.core.database import Base


def utcnow() -> datetime:
    return datetime.now(UTC)


class BaseModel(Base):
    """Abstract base carrying a creation timestamp."""

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
