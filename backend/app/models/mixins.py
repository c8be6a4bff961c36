from sqlalchemy import Column, DateTime

from app.core.time import utcnow


class TimestampMixin:
    """Row timestamps in naive UTC; ``updated_at`` moves on every ORM update."""

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
