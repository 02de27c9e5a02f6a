"""Minute-granular usage ledger derived from a finalized recording interval."""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import insert
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.logging import get_logger, log_bot_event
from ..models.database import utcnow
from ..models.usage import MonthlyUsageCache, UsageLedgerEntry, organization_key

logger = get_logger(__name__)

_UPSERT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


@dataclass(frozen=True)
class LedgerBucket:
    """One 60-second bucket of recorded time."""
    minute_timestamp: datetime
    seconds_recorded: int

    @property
    def billing_period(self) -> str:
        return billing_period(self.minute_timestamp)


@dataclass(frozen=True)
class LedgerOwner:
    """Ownership scope copied onto every ledger row."""
    bot_id: str
    session_id: str
    user_id: str
    organization_id: Optional[str]


def billing_period(moment: datetime) -> str:
    """Billing period (``YYYY-MM``) a moment falls into."""
    return moment.strftime("%Y-%m")


def build_ledger_buckets(started_at: datetime, total_seconds: int) -> List[LedgerBucket]:
    """Split a recording into minute buckets.

    Buckets start at ``started_at`` truncated to the minute and step by sixty
    seconds. Every bucket holds sixty seconds except the last, which holds the
    remainder (or sixty when the total divides evenly). Zero or negative
    totals yield no buckets.
    """
    buckets: List[LedgerBucket] = []
    if total_seconds <= 0:
        return buckets

    current_minute = started_at.replace(second=0, microsecond=0)
    remaining = total_seconds
    while remaining > 0:
        seconds = min(60, remaining)
        buckets.append(LedgerBucket(minute_timestamp=current_minute, seconds_recorded=seconds))
        remaining -= seconds
        current_minute = current_minute + timedelta(minutes=1)
    return buckets


class UsageLedger:
    """Writes ledger rows and the monthly usage cache.

    Callers must hold the finalization guard for the bot (the reconciler's
    compare-and-set on ``recording_ended_at``); the ledger does no
    deduplication of its own and runs inside the caller's transaction.
    """

    async def record(
        self,
        session: AsyncSession,
        owner: LedgerOwner,
        started_at: datetime,
        total_seconds: int,
    ) -> List[LedgerBucket]:
        buckets = build_ledger_buckets(started_at, total_seconds)
        if not buckets:
            log_bot_event(
                logger,
                "No usage to record",
                owner.bot_id,
                source="ledger",
                session_id=owner.session_id,
            )
            return buckets

        now = utcnow()
        await session.execute(
            insert(UsageLedgerEntry),
            [
                {
                    "organization_id": owner.organization_id,
                    "user_id": owner.user_id,
                    "session_id": owner.session_id,
                    "bot_id": owner.bot_id,
                    "minute_timestamp": bucket.minute_timestamp,
                    "seconds_recorded": bucket.seconds_recorded,
                    "billing_period": bucket.billing_period,
                    "created_at": now,
                }
                for bucket in buckets
            ],
        )

        await self._update_monthly_cache(session, owner, buckets)

        log_bot_event(
            logger,
            "Usage ledger entries created",
            owner.bot_id,
            source="ledger",
            session_id=owner.session_id,
            entries=len(buckets),
            total_seconds=total_seconds,
        )
        return buckets

    async def _update_monthly_cache(
        self,
        session: AsyncSession,
        owner: LedgerOwner,
        buckets: List[LedgerBucket],
    ) -> None:
        """Add the buckets to the owner's monthly totals with one upsert per period.

        Concurrent finalizations for the same owner and month each add their
        own totals.
        """
        totals: Dict[str, List[int]] = {}
        for bucket in buckets:
            period_totals = totals.setdefault(bucket.billing_period, [0, 0])
            period_totals[0] += 1
            period_totals[1] += bucket.seconds_recorded

        dialect_insert = _UPSERT_INSERTS[session.get_bind().dialect.name]
        for period, (minutes, seconds) in totals.items():
            stmt = dialect_insert(MonthlyUsageCache).values(
                id=uuid.uuid4(),
                organization_id=owner.organization_id,
                organization_key=organization_key(owner.organization_id),
                user_id=owner.user_id,
                month_year=period,
                total_minutes_used=minutes,
                total_seconds_used=seconds,
                last_updated=utcnow(),
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["organization_key", "user_id", "month_year"],
                set_={
                    "total_minutes_used": MonthlyUsageCache.total_minutes_used + stmt.excluded.total_minutes_used,
                    "total_seconds_used": MonthlyUsageCache.total_seconds_used + stmt.excluded.total_seconds_used,
                    "last_updated": stmt.excluded.last_updated,
                },
            )
            await session.execute(stmt)
