"""Webhook ingress for provider bot status events."""

import hashlib
import hmac
import json
import time
import uuid
from typing import Optional

from pydantic import ValidationError
from sqlalchemy import select, update

from ..core.config import Settings, settings as default_settings
from ..core.logging import get_logger, log_bot_event, log_error
from ..models.schemas import BotStatusWebhook, WebhookResponse
from ..models.webhook_log import WebhookLog
from .database_service import DatabaseService
from .reconciler import StatusReconciler

logger = get_logger(__name__)

SIGNATURE_VERSION = "v1"
WEBHOOK_TYPE = "bot_status"


class WebhookError(Exception):
    """Base exception for webhook ingress."""
    pass


class InvalidSignatureError(WebhookError):
    """Signature missing, malformed, mismatched or outside the replay window."""
    pass


class MalformedPayloadError(WebhookError):
    """Body is not a valid bot status event."""
    pass


def compute_signature(secret: str, timestamp: str, raw_body: bytes) -> str:
    """Signature header value for a body: ``v1=<hex HMAC-SHA256>``."""
    message = timestamp.encode("utf-8") + b"." + raw_body
    digest = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_VERSION}={digest}"


def verify_signature(
    secret: Optional[str],
    raw_body: bytes,
    signature: Optional[str],
    timestamp: Optional[str],
    tolerance_seconds: Optional[int] = None,
    now: Optional[float] = None,
) -> None:
    """Verify the timestamped HMAC of a webhook body.

    Does nothing when no secret is configured.

    Raises:
        InvalidSignatureError: If the signature or timestamp is missing,
            the signature does not match, or the timestamp is outside the
            tolerance window
    """
    if not secret:
        return
    if not signature or not timestamp:
        raise InvalidSignatureError("Missing signature headers")

    if tolerance_seconds is not None:
        try:
            sent_at = int(timestamp)
        except ValueError:
            raise InvalidSignatureError("Invalid signature timestamp")
        current = int(now if now is not None else time.time())
        if abs(current - sent_at) > tolerance_seconds:
            raise InvalidSignatureError("Signature timestamp outside tolerance")

    expected = compute_signature(secret, timestamp, raw_body)
    if not hmac.compare_digest(expected, signature.strip()):
        raise InvalidSignatureError("Signature mismatch")


def parse_document(raw_body: bytes) -> dict:
    """Decode a raw webhook body and check it names an event."""
    try:
        document = json.loads(raw_body)
    except ValueError as e:
        raise MalformedPayloadError("Webhook body is not valid JSON") from e
    if not isinstance(document, dict) or not isinstance(document.get("event"), str):
        raise MalformedPayloadError("Webhook body has no event name")
    return document


def parse_event(document: dict) -> BotStatusWebhook:
    """Validate a decoded webhook body as a bot status event."""
    try:
        return BotStatusWebhook.model_validate(document)
    except ValidationError as e:
        raise MalformedPayloadError(f"Invalid webhook payload: {e.error_count()} error(s)") from e


class WebhookIngress:
    """Authenticates, audits and forwards bot status events to the reconciler."""

    def __init__(
        self,
        db: DatabaseService,
        reconciler: StatusReconciler,
        config: Optional[Settings] = None,
    ):
        self.db = db
        self.reconciler = reconciler
        self.config = config or default_settings

    async def handle(
        self,
        raw_body: bytes,
        signature: Optional[str] = None,
        timestamp: Optional[str] = None,
    ) -> WebhookResponse:
        """Process one webhook delivery.

        Signature and payload failures raise before anything is written.
        Once the audit row exists, processing errors are recorded on it and
        reported in the response instead of raised, so the provider does not
        retry into the same failure.

        Raises:
            InvalidSignatureError: Signature check failed
            MalformedPayloadError: Body is not a bot status event
        """
        started = time.monotonic()

        try:
            verify_signature(
                self.config.webhook_secret,
                raw_body,
                signature,
                timestamp,
                self.config.webhook_tolerance_seconds,
            )
        except InvalidSignatureError as e:
            logger.warning("Webhook signature rejected", reason=str(e))
            raise

        document = parse_document(raw_body)
        if not document["event"].startswith("bot."):
            logger.info("Ignoring non-bot webhook event", webhook_event=document["event"])
            return WebhookResponse(
                success=True,
                event=document["event"],
                ignored=True,
                processing_time=_elapsed_ms(started),
            )

        event = parse_event(document)
        bot_id = event.data.bot.id
        session_id = event.data.bot.metadata.get("session_id")
        session_id = str(session_id) if session_id else None
        status = event.data.data
        event_key = _event_key(bot_id, event.event, status.code, status.sub_code, status.updated_at)

        log_id, duplicate = await self._record_event(document, event, event_key, bot_id, session_id)
        if duplicate:
            log_bot_event(
                logger,
                "Duplicate webhook event acknowledged",
                bot_id,
                source="webhook",
                webhook_event=event.event,
                session_id=session_id,
            )
            await self._mark_processed(log_id, _elapsed_ms(started), None)
            return WebhookResponse(
                success=True,
                bot_id=bot_id,
                session_id=session_id,
                event=event.event,
                duplicate=True,
                processing_time=_elapsed_ms(started),
            )

        error_message = None
        applied = None
        try:
            if not session_id:
                bot = await self.reconciler.get_bot_session(bot_id)
                session_id = bot.session_id if bot else None

            result = await self.reconciler.apply_provider_status(
                bot_id,
                status.code or event.event,
                timestamp=status.updated_at,
                sub_code=status.sub_code,
                source="webhook",
                session_id=session_id,
            )
            applied = result.applied
            session_id = result.session_id or session_id
        except Exception as e:
            error_message = str(e) or type(e).__name__
            log_error(logger, e, {
                "operation": "webhook_processing",
                "bot_id": bot_id,
                "webhook_event": event.event,
                "log_id": str(log_id),
            })

        processing_time = _elapsed_ms(started)
        await self._mark_processed(log_id, processing_time, error_message, session_id)

        log_bot_event(
            logger,
            "Webhook processed",
            bot_id,
            source="webhook",
            webhook_event=event.event,
            session_id=session_id,
            applied=applied,
            processing_time_ms=processing_time,
            success=error_message is None,
        )
        return WebhookResponse(
            success=error_message is None,
            bot_id=bot_id,
            session_id=session_id,
            event=event.event,
            applied=applied,
            error=error_message,
            processing_time=processing_time,
        )

    async def _record_event(
        self,
        document: dict,
        event: BotStatusWebhook,
        event_key: str,
        bot_id: str,
        session_id: Optional[str],
    ):
        """Write the audit row and report whether the event was already processed."""
        async with self.db.get_session() as session:
            result = await session.execute(
                select(WebhookLog.id)
                .where(
                    WebhookLog.event_key == event_key,
                    WebhookLog.processed.is_(True),
                    WebhookLog.error_message.is_(None),
                )
                .limit(1)
            )
            duplicate = result.first() is not None

            log_id = uuid.uuid4()
            session.add(WebhookLog(
                id=log_id,
                webhook_type=WEBHOOK_TYPE,
                event_type=event.event,
                event_key=event_key,
                bot_id=bot_id,
                session_id=session_id,
                payload=document,
                processed=False,
            ))
        return log_id, duplicate

    async def _mark_processed(
        self,
        log_id: uuid.UUID,
        processing_time_ms: int,
        error_message: Optional[str],
        session_id: Optional[str] = None,
    ) -> None:
        values = {
            "processed": True,
            "processing_time_ms": processing_time_ms,
            "error_message": error_message,
        }
        if session_id:
            values["session_id"] = session_id
        async with self.db.get_session() as session:
            await session.execute(
                update(WebhookLog)
                .where(WebhookLog.id == log_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )


def _event_key(
    bot_id: str,
    event: str,
    code: Optional[str],
    sub_code: Optional[str],
    updated_at,
) -> str:
    moment = updated_at.isoformat() if updated_at else ""
    return f"{bot_id}:{event}:{code or ''}:{sub_code or ''}:{moment}"


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
