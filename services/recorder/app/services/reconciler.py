"""Status reconciler: the single path through which bot status changes are applied.

Both the webhook ingress and the stale-bot sweeper feed canonical transitions
through :class:`StatusReconciler`. Writes use a compare-and-set on the row's
``version`` so racing writers re-read and re-evaluate the transition rule
instead of overwriting each other.

Finalization precondition: a bot is finalized only while its status is not
terminal and ``recording_ended_at`` is unset. The conditional update that
sets them is the idempotency lock for the usage ledger, so ledger rows are
written at most once per bot even when the same terminal event is applied
concurrently.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import Settings, settings as default_settings
from ..core.logging import get_logger, log_bot_event
from ..models.bot_session import BotSession, BotStatus
from ..models.database import as_utc, utcnow
from ..models.session import MeetingSession
from .database_service import DatabaseService
from .state_machine import (
    STATUS_RANK,
    TERMINAL_STATUSES,
    billable_minutes,
    can_transition,
    failure_reason,
    is_terminal,
    map_provider_status,
    recording_seconds,
)
from .usage_ledger import LedgerOwner, UsageLedger

logger = get_logger(__name__)

SESSION_STATUS_BY_BOT_STATUS = {
    BotStatus.RECORDING: "active",
    BotStatus.COMPLETED: "completed",
    BotStatus.FAILED: "failed",
    BotStatus.PERMISSION_DENIED: "failed",
}


class ReconcilerError(Exception):
    """Base exception for the reconciler."""
    pass


class TransitionConflictError(ReconcilerError):
    """Compare-and-set kept losing to concurrent writers."""
    pass


@dataclass
class TransitionResult:
    """Outcome of applying one status to one bot."""
    bot_id: str
    requested_status: str
    applied: bool = False
    reason: str = "applied"
    previous_status: Optional[str] = None
    status: Optional[str] = None
    session_id: Optional[str] = None
    finalized: bool = False
    total_recording_seconds: Optional[int] = None
    billable_minutes: Optional[int] = None


class StatusReconciler:
    """Applies canonical transitions to bot sessions."""

    MAX_CAS_ATTEMPTS = 5

    def __init__(
        self,
        db: DatabaseService,
        ledger: Optional[UsageLedger] = None,
        config: Optional[Settings] = None,
    ):
        self.db = db
        self.ledger = ledger or UsageLedger()
        self.config = config or default_settings

    async def get_bot_session(self, bot_id: str) -> Optional[BotSession]:
        async with self.db.get_session() as session:
            return await self._load(session, bot_id)

    async def register_bot(
        self,
        bot_id: str,
        session_id: str,
        user_id: str,
        organization_id: Optional[str] = None,
    ) -> BotSession:
        """Create the bot session for a freshly requested bot.

        Registering an existing bot id returns the existing row.
        """
        try:
            async with self.db.get_session() as session:
                existing = await self._load(session, bot_id)
                if existing is not None:
                    return existing

                now = utcnow()
                bot = BotSession(
                    bot_id=bot_id,
                    session_id=session_id,
                    user_id=user_id,
                    organization_id=organization_id,
                    status=BotStatus.CREATED.value,
                    total_recording_seconds=0,
                    billable_minutes=0,
                    version=0,
                    created_at=now,
                    updated_at=now,
                )
                session.add(bot)
                await session.flush()
        except IntegrityError:
            # Lost a registration race; the other writer's row is the one
            existing = await self.get_bot_session(bot_id)
            if existing is None:
                raise
            return existing

        log_bot_event(
            logger,
            "Bot session registered",
            bot_id,
            source="register",
            session_id=session_id,
            user_id=user_id,
            organization_id=organization_id,
        )
        return bot

    async def apply_provider_status(
        self,
        bot_id: str,
        code: Optional[str],
        timestamp: Optional[datetime] = None,
        sub_code: Optional[str] = None,
        source: str = "webhook",
        session_id: Optional[str] = None,
    ) -> TransitionResult:
        """Map a raw provider code and apply it. Unmapped codes are never applied."""
        status = map_provider_status(code)
        if status == BotStatus.UNKNOWN:
            self._report_unknown(bot_id, "status", code, source)
            return TransitionResult(
                bot_id=bot_id,
                requested_status=BotStatus.UNKNOWN.value,
                reason="unknown_status",
                session_id=session_id,
            )

        if status in (BotStatus.FAILED, BotStatus.PERMISSION_DENIED) and sub_code \
                and failure_reason(sub_code) is None:
            self._report_unknown(bot_id, "sub_code", sub_code, source)

        return await self.apply_canonical_transition(
            bot_id,
            status,
            timestamp=timestamp,
            sub_code=sub_code,
            source=source,
            session_id=session_id,
        )

    async def apply_canonical_transition(
        self,
        bot_id: str,
        status,
        timestamp: Optional[datetime] = None,
        sub_code: Optional[str] = None,
        source: str = "webhook",
        session_id: Optional[str] = None,
    ) -> TransitionResult:
        """Apply a canonical status to a bot.

        Idempotent: re-applying the bot's current status, a status behind it,
        or anything after a terminal status changes nothing. A terminal status
        always wins over a non-terminal one.

        Args:
            bot_id: Provider bot id
            status: Canonical status (``BotStatus`` or its value)
            timestamp: When the provider observed the status; used as the
                recording start or end time. Defaults to now.
            sub_code: Provider sub-code (failure reason)
            source: Entry point, for logging
            session_id: Owning session, used to register unknown bots

        Returns:
            TransitionResult describing what happened
        """
        try:
            status = BotStatus(status)
        except ValueError:
            status = BotStatus.UNKNOWN
        if status not in STATUS_RANK:
            logger.warning(
                "Refusing non-provider status",
                bot_id=bot_id,
                status=status.value,
                source=source,
            )
            return TransitionResult(
                bot_id=bot_id,
                requested_status=status.value,
                reason="unsupported_status",
                session_id=session_id,
            )

        event_time = as_utc(timestamp) or utcnow()

        existing = await self.get_bot_session(bot_id)
        if existing is None:
            existing = await self._register_from_meeting_session(bot_id, session_id)
            if existing is None:
                logger.warning(
                    "No bot session for status event",
                    bot_id=bot_id,
                    session_id=session_id,
                    status=status.value,
                    source=source,
                )
                return TransitionResult(
                    bot_id=bot_id,
                    requested_status=status.value,
                    reason="not_found",
                    session_id=session_id,
                )

        for attempt in range(1, self.MAX_CAS_ATTEMPTS + 1):
            async with self.db.get_session() as session:
                bot = await self._load(session, bot_id)
                current = _status_of(bot)
                result = TransitionResult(
                    bot_id=bot_id,
                    requested_status=status.value,
                    previous_status=current.value,
                    status=current.value,
                    session_id=bot.session_id,
                )

                if current == status:
                    result.reason = "duplicate"
                    return result
                if not can_transition(current, status):
                    result.reason = "terminal" if is_terminal(current) else "regression"
                    log_bot_event(
                        logger,
                        "Status transition ignored",
                        bot_id,
                        source=source,
                        current=current.value,
                        requested=status.value,
                        reason=result.reason,
                    )
                    return result

                if status in TERMINAL_STATUSES:
                    won = await self._finalize(session, bot, status, event_time, sub_code, result)
                else:
                    won = await self._advance(session, bot, status, event_time, sub_code)

                if won:
                    result.applied = True
                    result.status = status.value
                    log_bot_event(
                        logger,
                        "Status transition applied",
                        bot_id,
                        source=source,
                        session_id=bot.session_id,
                        previous=current.value,
                        status=status.value,
                        finalized=result.finalized,
                    )
                    return result

            logger.info(
                "Concurrent bot update detected, re-reading",
                bot_id=bot_id,
                attempt=attempt,
                source=source,
            )

        raise TransitionConflictError(
            f"Could not apply {status.value} to bot {bot_id} after {self.MAX_CAS_ATTEMPTS} attempts"
        )

    async def force_complete(
        self, bot_id: str, ended_at: datetime, source: str = "sweeper"
    ) -> TransitionResult:
        """Complete a bot whose terminal event never arrived."""
        return await self.apply_canonical_transition(
            bot_id, BotStatus.COMPLETED, timestamp=ended_at, source=source
        )

    async def _advance(
        self,
        session: AsyncSession,
        bot: BotSession,
        status: BotStatus,
        event_time: datetime,
        sub_code: Optional[str],
    ) -> bool:
        values = {
            "status": status.value,
            "updated_at": utcnow(),
            "version": bot.version + 1,
        }
        if sub_code:
            values["sub_code"] = sub_code

        started_at = as_utc(bot.recording_started_at)
        if status == BotStatus.RECORDING and started_at is None:
            started_at = event_time
            values["recording_started_at"] = event_time

        result = await session.execute(
            update(BotSession)
            .where(BotSession.id == bot.id, BotSession.version == bot.version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False

        projection = {"recall_bot_status": status.value}
        if status == BotStatus.RECORDING:
            projection["status"] = SESSION_STATUS_BY_BOT_STATUS[status]
            projection["recording_started_at"] = started_at
        await self._project_session(session, bot, projection)
        return True

    async def _finalize(
        self,
        session: AsyncSession,
        bot: BotSession,
        status: BotStatus,
        event_time: datetime,
        sub_code: Optional[str],
        result: TransitionResult,
    ) -> bool:
        started_at = as_utc(bot.recording_started_at)
        total_seconds = recording_seconds(started_at, event_time)
        minutes = billable_minutes(total_seconds)

        values = {
            "status": status.value,
            "updated_at": utcnow(),
            "version": bot.version + 1,
            "total_recording_seconds": total_seconds,
            "billable_minutes": minutes,
        }
        if sub_code:
            values["sub_code"] = sub_code
        if started_at is not None:
            values["recording_ended_at"] = event_time

        cas = await session.execute(
            update(BotSession)
            .where(
                BotSession.id == bot.id,
                BotSession.version == bot.version,
                BotSession.recording_ended_at.is_(None),
                BotSession.status.notin_([s.value for s in TERMINAL_STATUSES]),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if cas.rowcount != 1:
            return False

        if started_at is not None and total_seconds > 0:
            await self.ledger.record(
                session,
                LedgerOwner(
                    bot_id=bot.bot_id,
                    session_id=bot.session_id,
                    user_id=bot.user_id,
                    organization_id=bot.organization_id,
                ),
                started_at,
                total_seconds,
            )

        projection = {
            "status": SESSION_STATUS_BY_BOT_STATUS[status],
            "recall_bot_status": status.value,
            "recording_duration_seconds": total_seconds,
            "bot_recording_minutes": minutes,
            "bot_billable_amount": self._billing_amount(minutes),
        }
        if started_at is not None:
            projection["recording_ended_at"] = event_time
        if status == BotStatus.FAILED:
            projection["error_message"] = f"Bot failed: {failure_reason(sub_code) or sub_code or 'Unknown error'}"
        elif status == BotStatus.PERMISSION_DENIED:
            projection["error_message"] = (
                f"Recording permission denied: {failure_reason(sub_code) or sub_code or 'Unknown reason'}"
            )
        await self._project_session(session, bot, projection)

        result.finalized = True
        result.total_recording_seconds = total_seconds
        result.billable_minutes = minutes
        log_bot_event(
            logger,
            "Bot recording finalized",
            bot.bot_id,
            source="reconciler",
            session_id=bot.session_id,
            status=status.value,
            total_recording_seconds=total_seconds,
            billable_minutes=minutes,
        )
        return True

    async def _project_session(self, session: AsyncSession, bot: BotSession, values: dict) -> None:
        """Mirror bot status and billing onto the owning session row for display.

        Only the session's current bot (or a session with no bot recorded)
        receives the projection.
        """
        values = dict(values, updated_at=utcnow())
        result = await session.execute(
            update(MeetingSession)
            .where(
                MeetingSession.id == bot.session_id,
                or_(
                    MeetingSession.recall_bot_id == bot.bot_id,
                    MeetingSession.recall_bot_id.is_(None),
                ),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.warning(
                "Session projection skipped",
                bot_id=bot.bot_id,
                session_id=bot.session_id,
            )

    async def _register_from_meeting_session(
        self, bot_id: str, session_id: Optional[str]
    ) -> Optional[BotSession]:
        if not session_id:
            return None
        async with self.db.get_session() as session:
            meeting = await session.get(MeetingSession, session_id)
            if meeting is None:
                return None
            user_id, organization_id = meeting.user_id, meeting.organization_id
        return await self.register_bot(bot_id, session_id, user_id, organization_id)

    async def _load(self, session: AsyncSession, bot_id: str) -> Optional[BotSession]:
        result = await session.execute(select(BotSession).where(BotSession.bot_id == bot_id))
        return result.scalar_one_or_none()

    def _billing_amount(self, minutes: int) -> Decimal:
        return (Decimal(minutes) * self.config.bot_minute_rate).quantize(Decimal("0.01"))

    def _report_unknown(self, bot_id: str, kind: str, value: Optional[str], source: str) -> None:
        if self.config.alert_on_unknown_status:
            logger.error(
                "Unknown provider value",
                alert=True,
                bot_id=bot_id,
                kind=kind,
                value=value,
                source=source,
            )
        else:
            logger.warning(
                "Unknown provider value",
                bot_id=bot_id,
                kind=kind,
                value=value,
                source=source,
            )


def _status_of(bot: BotSession) -> BotStatus:
    try:
        return BotStatus(bot.status)
    except ValueError:
        return BotStatus.UNKNOWN
