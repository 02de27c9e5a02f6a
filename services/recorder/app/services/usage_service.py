"""Read side of usage accounting: monthly totals and per-session ledgers."""

from typing import Optional

from sqlalchemy import func, select

from ..core.config import Settings, settings as default_settings
from ..models.database import utcnow
from ..models.schemas import MonthlyUsageResponse, SessionLedgerResponse, UsageLedgerEntrySchema
from ..models.usage import MonthlyUsageCache, UsageLedgerEntry, organization_key
from .database_service import DatabaseService
from .state_machine import billable_minutes
from .usage_ledger import billing_period


class UsageService:
    """Queries over the usage ledger and the monthly cache."""

    def __init__(self, db: DatabaseService, config: Optional[Settings] = None):
        self.db = db
        self.config = config or default_settings

    async def minutes_used(
        self,
        organization_id: Optional[str],
        user_id: str,
        month_year: Optional[str] = None,
    ) -> int:
        """Billable minutes used in a month.

        Scoped to the organization when there is one, otherwise to the user.
        """
        month_year = month_year or billing_period(utcnow())
        query = select(func.coalesce(func.sum(MonthlyUsageCache.total_minutes_used), 0)).where(
            MonthlyUsageCache.month_year == month_year
        )
        if organization_id:
            query = query.where(MonthlyUsageCache.organization_id == organization_id)
        else:
            query = query.where(
                MonthlyUsageCache.organization_id.is_(None),
                MonthlyUsageCache.user_id == user_id,
            )

        async with self.db.get_session() as session:
            result = await session.execute(query)
            return int(result.scalar() or 0)

    async def monthly_usage(
        self,
        organization_id: Optional[str],
        user_id: str,
        month_year: Optional[str] = None,
    ) -> MonthlyUsageResponse:
        month_year = month_year or billing_period(utcnow())
        query = select(MonthlyUsageCache).where(
            MonthlyUsageCache.user_id == user_id,
            MonthlyUsageCache.month_year == month_year,
            MonthlyUsageCache.organization_key == organization_key(organization_id),
        )

        async with self.db.get_session() as session:
            result = await session.execute(query)
            cache = result.scalar_one_or_none()

        minutes = cache.total_minutes_used if cache else 0
        seconds = cache.total_seconds_used if cache else 0
        limit = self.config.monthly_minute_limit
        return MonthlyUsageResponse(
            organization_id=organization_id,
            user_id=user_id,
            month_year=month_year,
            total_minutes_used=minutes,
            total_seconds_used=seconds,
            minutes_limit=limit,
            minutes_remaining=max(0, limit - minutes) if limit is not None else None,
        )

    async def session_ledger(self, session_id: str) -> SessionLedgerResponse:
        """Every minute bucket recorded for a session, oldest first."""
        async with self.db.get_session() as session:
            result = await session.execute(
                select(UsageLedgerEntry)
                .where(UsageLedgerEntry.session_id == session_id)
                .order_by(UsageLedgerEntry.bot_id, UsageLedgerEntry.minute_timestamp)
            )
            entries = list(result.scalars().all())

        total_seconds = sum(entry.seconds_recorded for entry in entries)
        bots = {entry.bot_id for entry in entries}
        minutes = sum(
            billable_minutes(sum(e.seconds_recorded for e in entries if e.bot_id == bot_id))
            for bot_id in bots
        )
        return SessionLedgerResponse(
            session_id=session_id,
            total_seconds=total_seconds,
            billable_minutes=minutes,
            entries=[UsageLedgerEntrySchema.model_validate(entry) for entry in entries],
        )
