"""Bot lifecycle operations initiated by the product: request, stop, inspect."""

from typing import Optional

from sqlalchemy import update

from ..core.config import Settings, settings as default_settings
from ..core.logging import get_logger, log_bot_event
from ..models.bot_session import BotSession, BotStatus
from ..models.database import utcnow
from ..models.schemas import BotRequest
from ..models.session import MeetingSession
from .database_service import DatabaseService
from .provider_client import ProviderClient
from .reconciler import StatusReconciler
from .usage_service import UsageService

logger = get_logger(__name__)

WEBHOOK_PATH = "/api/v1/webhooks/bot-status"


class BotServiceError(Exception):
    """Base exception for bot lifecycle operations."""
    pass


class SessionNotFoundError(BotServiceError):
    """Meeting session does not exist."""
    pass


class BotNotFoundError(BotServiceError):
    """No bot session for the bot id."""
    pass


class UsageLimitExceededError(BotServiceError):
    """Monthly minute cap reached."""

    def __init__(self, message: str, minutes_used: int, minutes_limit: int):
        super().__init__(message)
        self.minutes_used = minutes_used
        self.minutes_limit = minutes_limit


class BotLifecycleService:
    """Sends bots into meetings and stops them.

    Status changes after creation are never written here; they arrive through
    webhooks or the sweeper and flow through the reconciler.
    """

    def __init__(
        self,
        db: DatabaseService,
        provider: ProviderClient,
        reconciler: StatusReconciler,
        usage: UsageService,
        config: Optional[Settings] = None,
    ):
        self.db = db
        self.provider = provider
        self.reconciler = reconciler
        self.usage = usage
        self.config = config or default_settings

    async def request_bot(self, request: BotRequest) -> BotSession:
        """Send a recording bot into the session's meeting.

        Raises:
            SessionNotFoundError: Unknown session
            UsageLimitExceededError: Monthly minute cap reached
            ProviderError: Provider refused or could not be reached
        """
        async with self.db.get_session() as session:
            meeting = await session.get(MeetingSession, request.session_id)
            if meeting is None:
                raise SessionNotFoundError(f"Session {request.session_id} not found")
            user_id, organization_id = meeting.user_id, meeting.organization_id

        await self._enforce_limit(request.session_id, user_id, organization_id)

        bot_id = await self.provider.create_bot(
            meeting_url=request.meeting_url,
            webhook_url=self._webhook_url(),
            session_id=request.session_id,
            bot_name=request.bot_name,
            metadata={"user_id": user_id, "organization_id": organization_id},
        )

        bot = await self.reconciler.register_bot(bot_id, request.session_id, user_id, organization_id)
        await self._project(request.session_id, recall_bot_id=bot_id, recall_bot_status=BotStatus.CREATED.value)

        log_bot_event(
            logger,
            "Bot requested",
            bot_id,
            source="api",
            session_id=request.session_id,
            user_id=user_id,
        )
        return bot

    async def stop_bot(self, bot_id: str) -> BotSession:
        """Ask the provider to pull the bot out of its call."""
        bot = await self.get_bot(bot_id)
        await self.provider.stop_bot(bot_id)
        log_bot_event(logger, "Bot stop requested", bot_id, source="api", session_id=bot.session_id)
        return bot

    async def get_bot(self, bot_id: str) -> BotSession:
        bot = await self.reconciler.get_bot_session(bot_id)
        if bot is None:
            raise BotNotFoundError(f"Bot {bot_id} not found")
        return bot

    async def _enforce_limit(
        self, session_id: str, user_id: str, organization_id: Optional[str]
    ) -> None:
        limit = self.config.monthly_minute_limit
        if limit is None:
            return

        used = await self.usage.minutes_used(organization_id, user_id)
        if used < limit:
            return

        await self._project(session_id, recall_bot_status=BotStatus.LIMIT_EXCEEDED.value)
        logger.warning(
            "Monthly bot minute limit reached",
            session_id=session_id,
            user_id=user_id,
            organization_id=organization_id,
            minutes_used=used,
            minutes_limit=limit,
        )
        raise UsageLimitExceededError(
            f"Monthly limit of {limit} bot minutes reached",
            minutes_used=used,
            minutes_limit=limit,
        )

    async def _project(self, session_id: str, **values) -> None:
        async with self.db.get_session() as session:
            await session.execute(
                update(MeetingSession)
                .where(MeetingSession.id == session_id)
                .values(updated_at=utcnow(), **values)
                .execution_options(synchronize_session=False)
            )

    def _webhook_url(self) -> Optional[str]:
        if not self.config.webhook_base_url:
            return None
        return f"{self.config.webhook_base_url.rstrip('/')}{WEBHOOK_PATH}"
