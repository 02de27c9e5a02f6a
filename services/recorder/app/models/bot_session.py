"""Bot session database model."""

import uuid
from enum import Enum

from sqlalchemy import (
    UUID,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    String,
)

from .database import Base, utcnow


class BotStatus(str, Enum):
    """Canonical bot status vocabulary"""
    CREATED = "created"
    JOINING = "joining"
    WAITING = "waiting"
    IN_CALL = "in_call"
    RECORDING = "recording"
    COMPLETED = "completed"
    FAILED = "failed"
    PERMISSION_DENIED = "permission_denied"
    LIMIT_EXCEEDED = "limit_exceeded"
    UNKNOWN = "unknown"


class BotSession(Base):
    """One row per provider bot instance."""

    __tablename__ = "bot_usage_tracking"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    bot_id = Column(String(128), unique=True, nullable=False)
    session_id = Column(String(128), nullable=False)
    user_id = Column(String(128), nullable=False)
    organization_id = Column(String(128), nullable=True)

    status = Column(String(32), nullable=False, default=BotStatus.CREATED.value)
    sub_code = Column(String(128), nullable=True)

    recording_started_at = Column(DateTime(timezone=True), nullable=True)
    recording_ended_at = Column(DateTime(timezone=True), nullable=True)
    total_recording_seconds = Column(Integer, nullable=False, default=0)
    billable_minutes = Column(Integer, nullable=False, default=0)

    # Compare-and-set counter, bumped on every write
    version = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("total_recording_seconds >= 0", name="check_total_seconds"),
        CheckConstraint("billable_minutes >= 0", name="check_billable_minutes"),
        Index("idx_bot_usage_status", "status"),
        Index("idx_bot_usage_session", "session_id"),
    )

    def __repr__(self) -> str:
        return f"<BotSession bot_id={self.bot_id} status={self.status}>"
