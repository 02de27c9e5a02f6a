"""Meeting session and transcript models owned by the surrounding product.

The recorder reads ownership from ``sessions`` and writes only the bot
status/billing projection onto it. ``transcripts`` is read for activity.
"""

from sqlalchemy import Column, DateTime, Integer, Numeric, String, Text

from .database import Base, utcnow


class MeetingSession(Base):
    """Meeting/recording record."""

    __tablename__ = "sessions"

    id = Column(String(128), primary_key=True)
    user_id = Column(String(128), nullable=False)
    organization_id = Column(String(128), nullable=True)
    title = Column(String(255), nullable=True)
    status = Column(String(32), nullable=True)

    # Bot projection
    recall_bot_id = Column(String(128), nullable=True)
    recall_bot_status = Column(String(32), nullable=True)
    recording_started_at = Column(DateTime(timezone=True), nullable=True)
    recording_ended_at = Column(DateTime(timezone=True), nullable=True)
    recording_duration_seconds = Column(Integer, nullable=True)
    bot_recording_minutes = Column(Integer, nullable=True)
    bot_billable_amount = Column(Numeric(10, 2), nullable=True)
    error_message = Column(Text, nullable=True)

    updated_at = Column(DateTime(timezone=True), default=utcnow)


class Transcript(Base):
    """Transcript line; only the activity timestamp matters here."""

    __tablename__ = "transcripts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(128), nullable=False, index=True)
    content = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
