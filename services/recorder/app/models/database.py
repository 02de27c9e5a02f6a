"""Declarative base and shared column helpers."""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import declarative_base

# Base model class
Base = declarative_base()


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime read from the store to aware UTC.

    SQLite hands back naive datetimes even for timezone-aware columns, so a
    naive value is taken to already be UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
