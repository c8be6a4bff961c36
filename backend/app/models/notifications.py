from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB

from app.core.db import Base
from app.core.time import utcnow


JSON_TYPE = JSONB().with_variant(JSON, "sqlite")


class ReferrerNotification(Base):
    __tablename__ = "referrer_notifications"
    __table_args__ = (
        UniqueConstraint("dedupe_key", name="uq_referrer_notifications_dedupe"),
        Index("ix_referrer_notifications_referrer_kind_period", "referrer_id", "kind", "period"),
        Index("ix_referrer_notifications_status_created", "status", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    referrer_id = Column(Integer, ForeignKey("referrers.id", ondelete="RESTRICT"), nullable=False)
    kind = Column(String, nullable=False)
    period = Column(String(7), nullable=False)
    payload_json = Column(JSON_TYPE, nullable=False)
    dedupe_key = Column(String, nullable=False)
    status = Column(String, nullable=False, default="queued")
    attempt_count = Column(Integer, nullable=False, default=0)
    sent_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
