"""Audit log of inbound webhook events and sweeper runs."""

import uuid

from sqlalchemy import JSON, UUID, Boolean, Column, DateTime, Index, Integer, String, Text

from .database import Base, utcnow


class WebhookLog(Base):
    """Raw event log row, written before processing."""

    __tablename__ = "webhook_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    webhook_type = Column(String(32), nullable=False)
    event_type = Column(String(64), nullable=False)
    event_key = Column(String(255), nullable=True)
    bot_id = Column(String(128), nullable=True)
    session_id = Column(String(128), nullable=True)
    payload = Column(JSON, nullable=True)
    processed = Column(Boolean, nullable=False, default=False)
    processing_time_ms = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_webhook_logs_event_key", "event_key"),
        Index("idx_webhook_logs_bot", "bot_id"),
    )
