"""Pytest configuration and fixtures for bot recorder tests."""

import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest
import pytest_asyncio
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool

from app.core.config import Settings
from app.models.bot_session import BotSession
from app.models.session import MeetingSession, Transcript
from app.models.usage import MonthlyUsageCache, UsageLedgerEntry
from app.models.webhook_log import WebhookLog
from app.services.database_service import DatabaseService
from app.services.reconciler import StatusReconciler
from app.services.usage_ledger import UsageLedger

WEBHOOK_SECRET = "whsec_test"
CRON_SECRET = "cron-secret"

# 30 seconds into a minute so bucket alignment is visible
T0 = datetime(2024, 5, 14, 10, 0, 30, tzinfo=timezone.utc)


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings pointing at a throwaway SQLite file."""
    return Settings(
        environment="test",
        database_url=f"sqlite+aiosqlite:///{tmp_path}/recorder.db",
        provider_api_key="test-key",
        provider_base_url="https://provider.test/api/v1",
        provider_retry_backoff_seconds=0,
        webhook_secret=WEBHOOK_SECRET,
        webhook_base_url="https://recorder.test",
        cron_secret=CRON_SECRET,
        stale_threshold_minutes=15,
        log_format="console",
    )


@pytest_asyncio.fixture
async def db(test_settings):
    """Database service over a single pooled connection, so concurrent
    sessions queue for the connection instead of interleaving writes."""
    engine = create_async_engine(
        test_settings.database_url,
        poolclass=AsyncAdaptedQueuePool,
        pool_size=1,
        max_overflow=0,
    )
    service = DatabaseService(test_settings, engine=engine)
    await service.create_tables()
    await service.initialize()

    yield service

    await service.close()


@pytest.fixture
def reconciler(db, test_settings) -> StatusReconciler:
    return StatusReconciler(db, UsageLedger(), test_settings)


@pytest.fixture
def store(db) -> "Store":
    return Store(db)


@pytest_asyncio.fixture
async def meeting(store) -> MeetingSession:
    """Meeting session s1 owned by u1 in org1."""
    return await store.add_meeting("s1", user_id="u1", organization_id="org1")


def sign(body: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[str] = None) -> dict:
    """Headers for a signed webhook delivery."""
    timestamp = timestamp or str(int(time.time()))
    digest = hmac.new(secret.encode(), timestamp.encode() + b"." + body, hashlib.sha256).hexdigest()
    return {"x-signature": f"v1={digest}", "x-timestamp": timestamp}


def status_event(
    bot_id: str,
    code: str,
    updated_at: Optional[datetime] = None,
    sub_code: Optional[str] = None,
    session_id: Optional[str] = None,
    event: Optional[str] = None,
) -> bytes:
    """Raw body of a provider bot status webhook."""
    metadata = {"session_id": session_id} if session_id else {}
    return json.dumps({
        "event": event or f"bot.{code}",
        "data": {
            "data": {
                "code": code,
                "sub_code": sub_code,
                "updated_at": (updated_at or T0).isoformat(),
            },
            "bot": {"id": bot_id, "metadata": metadata},
        },
    }).encode()


@pytest.fixture
def signer():
    return sign


@pytest.fixture
def make_event():
    return status_event


class Store:
    """Direct table access for arranging and asserting test state."""

    def __init__(self, db: DatabaseService):
        self.db = db

    async def add_meeting(
        self, session_id: str, user_id: str = "u1", organization_id: Optional[str] = "org1"
    ) -> MeetingSession:
        meeting = MeetingSession(
            id=session_id,
            user_id=user_id,
            organization_id=organization_id,
            title="Weekly sync",
            status="created",
        )
        async with self.db.get_session() as session:
            session.add(meeting)
        return meeting

    async def add_transcript(self, session_id: str, created_at: datetime) -> None:
        async with self.db.get_session() as session:
            session.add(Transcript(session_id=session_id, content="hello", created_at=created_at))

    async def add_monthly_usage(
        self, user_id: str, organization_id: Optional[str], month_year: str, minutes: int
    ) -> None:
        async with self.db.get_session() as session:
            session.add(MonthlyUsageCache(
                organization_id=organization_id,
                user_id=user_id,
                month_year=month_year,
                total_minutes_used=minutes,
                total_seconds_used=minutes * 60,
            ))

    async def set_bot_updated_at(self, bot_id: str, updated_at: datetime) -> None:
        async with self.db.get_session() as session:
            await session.execute(
                update(BotSession).where(BotSession.bot_id == bot_id).values(updated_at=updated_at)
            )

    async def bot(self, bot_id: str) -> Optional[BotSession]:
        async with self.db.get_session() as session:
            result = await session.execute(select(BotSession).where(BotSession.bot_id == bot_id))
            return result.scalar_one_or_none()

    async def meeting(self, session_id: str) -> Optional[MeetingSession]:
        async with self.db.get_session() as session:
            return await session.get(MeetingSession, session_id)

    async def ledger(self, bot_id: str) -> List[UsageLedgerEntry]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(UsageLedgerEntry)
                .where(UsageLedgerEntry.bot_id == bot_id)
                .order_by(UsageLedgerEntry.minute_timestamp)
            )
            return list(result.scalars().all())

    async def monthly(self, user_id: str, month_year: str) -> List[MonthlyUsageCache]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(MonthlyUsageCache).where(
                    MonthlyUsageCache.user_id == user_id,
                    MonthlyUsageCache.month_year == month_year,
                )
            )
            return list(result.scalars().all())

    async def webhook_logs(self, webhook_type: Optional[str] = None) -> List[WebhookLog]:
        query = select(WebhookLog).order_by(WebhookLog.created_at)
        if webhook_type:
            query = query.where(WebhookLog.webhook_type == webhook_type)
        async with self.db.get_session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())


async def drive_to_recording(reconciler: StatusReconciler, bot_id: str, started_at: datetime = T0) -> None:
    """Walk a registered bot through joining and waiting into recording."""
    await reconciler.apply_provider_status(bot_id, "joining_call", started_at - timedelta(seconds=40))
    await reconciler.apply_provider_status(bot_id, "in_waiting_room", started_at - timedelta(seconds=20))
    await reconciler.apply_provider_status(bot_id, "in_call_recording", started_at)


@pytest.fixture
def to_recording():
    return drive_to_recording


@pytest.fixture
def t0() -> datetime:
    return T0
