"""Stale-bot sweeper: reconciles active bots against the provider and heals silent recordings."""

import asyncio
import time
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import func, select

from ..core.config import Settings, settings as default_settings
from ..core.logging import get_logger, log_bot_event, log_error
from ..models.bot_session import BotSession, BotStatus
from ..models.database import as_utc, utcnow
from ..models.schemas import SweepDetail, SweepResult
from ..models.session import Transcript
from ..models.webhook_log import WebhookLog
from .database_service import DatabaseService
from .provider_client import ProviderClient
from .reconciler import StatusReconciler
from .state_machine import ACTIVE_STATUSES, TERMINAL_STATUSES, map_provider_status

logger = get_logger(__name__)


class BotSweeper:
    """Periodic reconciliation of every non-terminal bot.

    Each bot gets two independent checks:

    1. Drift: the provider's live status is fed through the reconciler, so a
       lost webhook is repaired by the same transition rule.
    2. Silence: a bot stuck in ``recording`` with no update and no transcript
       activity for longer than the staleness threshold is completed, using
       the later of its last transcript and last update as the end time.

    A failure on one bot is recorded in the result and never aborts the sweep.
    """

    def __init__(
        self,
        db: DatabaseService,
        provider: ProviderClient,
        reconciler: StatusReconciler,
        config: Optional[Settings] = None,
    ):
        self.db = db
        self.provider = provider
        self.reconciler = reconciler
        self.config = config or default_settings
        self.stale_threshold = timedelta(minutes=self.config.stale_threshold_minutes)

    async def run(self, now: Optional[datetime] = None) -> SweepResult:
        started = time.monotonic()
        now = as_utc(now) or utcnow()

        bots = await self._active_bots()
        logger.info("Starting bot sweep", active_bots=len(bots))

        semaphore = asyncio.Semaphore(self.config.sweep_concurrency)

        async def guarded(bot: BotSession) -> List[SweepDetail]:
            async with semaphore:
                return await self._check_bot(bot, now)

        outcomes = await asyncio.gather(*(guarded(bot) for bot in bots))

        result = SweepResult(checked=len(bots))
        for details in outcomes:
            if any(detail.action == "error" for detail in details):
                result.errors += 1
            if any(detail.action != "error" for detail in details):
                result.updated += 1
            result.details.extend(details)
        result.duration_ms = int((time.monotonic() - started) * 1000)

        if result.updated > 0:
            await self._record_run(result)

        logger.info(
            "Bot sweep completed",
            checked=result.checked,
            updated=result.updated,
            errors=result.errors,
            duration_ms=result.duration_ms,
        )
        return result

    async def _active_bots(self) -> List[BotSession]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(BotSession)
                .where(BotSession.status.in_([s.value for s in ACTIVE_STATUSES]))
                .order_by(BotSession.updated_at)
            )
            return list(result.scalars().all())

    async def _check_bot(self, bot: BotSession, now: datetime) -> List[SweepDetail]:
        details: List[SweepDetail] = []

        drift_applied = False
        try:
            detail = await self._check_drift(bot, now)
            if detail is not None:
                drift_applied = True
                details.append(detail)
        except Exception as e:
            log_error(logger, e, {"operation": "sweep_drift", "bot_id": bot.bot_id})
            details.append(SweepDetail(
                bot_id=bot.bot_id,
                session_id=bot.session_id,
                action="error",
                old_status=bot.status,
                error=str(e) or type(e).__name__,
            ))

        if drift_applied:
            return details

        try:
            detail = await self._check_silence(bot, now)
            if detail is not None:
                details.append(detail)
        except Exception as e:
            log_error(logger, e, {"operation": "sweep_silence", "bot_id": bot.bot_id})
            details.append(SweepDetail(
                bot_id=bot.bot_id,
                session_id=bot.session_id,
                action="error",
                old_status=bot.status,
                error=str(e) or type(e).__name__,
            ))
        return details

    async def _check_drift(self, bot: BotSession, now: datetime) -> Optional[SweepDetail]:
        live = await self.provider.get_bot(bot.bot_id)
        status = map_provider_status(live.code)
        old_status = bot.status

        if status in TERMINAL_STATUSES:
            observed_at = live.completed_at or live.updated_at or now
        elif status == BotStatus.RECORDING:
            observed_at = live.recording_started_at or live.updated_at or now
        else:
            observed_at = live.updated_at or now

        if status in TERMINAL_STATUSES and bot.recording_started_at is None \
                and live.recording_started_at is not None:
            # Replay the missed recording start so the terminal transition bills it
            await self.reconciler.apply_canonical_transition(
                bot.bot_id,
                BotStatus.RECORDING,
                timestamp=live.recording_started_at,
                source="sweeper",
                session_id=bot.session_id,
            )

        result = await self.reconciler.apply_provider_status(
            bot.bot_id,
            live.code,
            timestamp=observed_at,
            sub_code=live.sub_code,
            source="sweeper",
            session_id=bot.session_id,
        )
        if not result.applied:
            return None

        log_bot_event(
            logger,
            "Repaired status drift",
            bot.bot_id,
            source="sweeper",
            old_status=old_status,
            new_status=result.status,
        )
        return SweepDetail(
            bot_id=bot.bot_id,
            session_id=bot.session_id,
            action="drift",
            old_status=old_status,
            new_status=result.status,
            billable_minutes=result.billable_minutes,
        )

    async def _check_silence(self, bot: BotSession, now: datetime) -> Optional[SweepDetail]:
        if bot.status != BotStatus.RECORDING.value:
            return None

        last_update = as_utc(bot.updated_at)
        if last_update is None or now - last_update <= self.stale_threshold:
            return None

        last_activity = await self._last_transcript_at(bot.session_id)
        if last_activity is not None and now - last_activity <= self.stale_threshold:
            return None

        ended_at = max(last_activity, last_update) if last_activity else last_update
        minutes_stale = round((now - ended_at).total_seconds() / 60, 1)

        logger.warning(
            "Stale recording detected",
            bot_id=bot.bot_id,
            session_id=bot.session_id,
            minutes_stale=minutes_stale,
        )
        result = await self.reconciler.force_complete(bot.bot_id, ended_at, source="sweeper")
        if not result.applied:
            return None

        return SweepDetail(
            bot_id=bot.bot_id,
            session_id=bot.session_id,
            action="stale_completed",
            old_status=result.previous_status,
            new_status=result.status,
            billable_minutes=result.billable_minutes,
            minutes_stale=minutes_stale,
        )

    async def _last_transcript_at(self, session_id: str) -> Optional[datetime]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(func.max(Transcript.created_at)).where(Transcript.session_id == session_id)
            )
            return as_utc(result.scalar())

    async def _record_run(self, result: SweepResult) -> None:
        async with self.db.get_session() as session:
            session.add(WebhookLog(
                webhook_type="bot_monitor",
                event_type="monitoring_run",
                payload=result.model_dump(mode="json"),
                processed=True,
                processing_time_ms=result.duration_ms,
            ))
