"""Usage ledger database models."""

import uuid
from typing import Optional

from sqlalchemy import (
    UUID,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
)

from .database import Base, utcnow


def organization_key(organization_id: Optional[str]) -> str:
    return organization_id or ""


def _organization_key(context):
    return organization_key(context.get_current_parameters().get("organization_id"))


class UsageLedgerEntry(Base):
    """Immutable minute bucket of recorded time. Written once, at finalization."""

    __tablename__ = "usage_tracking"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(String(128), nullable=True)
    user_id = Column(String(128), nullable=False)
    session_id = Column(String(128), nullable=False)
    bot_id = Column(String(128), nullable=False)
    minute_timestamp = Column(DateTime(timezone=True), nullable=False)
    seconds_recorded = Column(Integer, nullable=False)
    billing_period = Column(String(7), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "seconds_recorded > 0 AND seconds_recorded <= 60",
            name="check_seconds_recorded",
        ),
        UniqueConstraint("bot_id", "minute_timestamp", name="unique_bot_minute"),
        Index("idx_usage_session", "session_id"),
        Index("idx_usage_org_period", "organization_id", "billing_period"),
    )


class MonthlyUsageCache(Base):
    """Denormalized per-month usage totals for dashboard reads.

    ``organization_key`` is the organization id, or an empty string for
    users without one, so the unique key also covers personal usage.
    """

    __tablename__ = "monthly_usage_cache"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(String(128), nullable=True)
    organization_key = Column(String(128), nullable=False, default=_organization_key)
    user_id = Column(String(128), nullable=False)
    month_year = Column(String(7), nullable=False)
    total_minutes_used = Column(Integer, nullable=False, default=0)
    total_seconds_used = Column(Integer, nullable=False, default=0)
    last_updated = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "organization_key", "user_id", "month_year", name="unique_monthly_usage"
        ),
    )
