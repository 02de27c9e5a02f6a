"""HTTP client for the meeting bot provider API."""

from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..core.config import Settings, settings as default_settings
from ..core.logging import get_logger
from ..models.bot_session import BotStatus
from ..models.schemas import ProviderStatus
from .state_machine import TERMINAL_STATUSES, map_provider_status

logger = get_logger(__name__)


class ProviderError(Exception):
    """Base exception for provider API calls."""
    pass


class ProviderTransientError(ProviderError):
    """Network failure, timeout, rate limit or provider 5xx."""
    pass


class ProviderRequestError(ProviderError):
    """Non-transient 4xx response; never retried."""

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


class ProviderNotFoundError(ProviderRequestError):
    """Bot id unknown to the provider."""
    pass


class ProviderClient:
    """Translation boundary to the provider's status/control API.

    Has no side effects on the local store.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str,
        timeout: float = 10.0,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._headers = {
            "Authorization": f"Token {api_key}",
            "Content-Type": "application/json",
        }

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "ProviderClient":
        config = config or default_settings
        return cls(
            api_key=config.provider_api_key,
            base_url=config.provider_api_url,
            timeout=config.provider_timeout_seconds,
            max_attempts=config.provider_max_attempts,
            backoff_seconds=config.provider_retry_backoff_seconds,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def create_bot(
        self,
        meeting_url: str,
        webhook_url: Optional[str],
        session_id: str,
        bot_name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Ask the provider to send a bot into a meeting.

        Args:
            meeting_url: Join URL of the video call
            webhook_url: Callback URL for status events
            session_id: Owning session, echoed back in event metadata
            bot_name: Display name of the bot
            metadata: Extra metadata; values are sent as strings

        Returns:
            The provider's bot id
        """
        bot_metadata = {"session_id": str(session_id)}
        for key, value in (metadata or {}).items():
            if value is not None:
                bot_metadata[key] = str(value)

        body: Dict[str, Any] = {
            "meeting_url": meeting_url,
            "bot_name": bot_name or "Meeting Recorder",
            "metadata": bot_metadata,
        }
        if webhook_url:
            body["webhook_url"] = webhook_url

        data = await self._request("POST", "/bot", json=body)
        bot_id = data.get("id")
        if not bot_id:
            raise ProviderError("Provider response did not include a bot id")

        logger.info("Provider bot created", bot_id=bot_id, session_id=session_id)
        return bot_id

    async def get_bot(self, bot_id: str) -> ProviderStatus:
        """Fetch the live status of a bot."""
        data = await self._request("GET", f"/bot/{bot_id}")
        return self.parse_bot_status(bot_id, data)

    async def stop_bot(self, bot_id: str) -> None:
        """Ask the bot to leave its call. A bot the provider no longer knows is already stopped."""
        try:
            await self._request("POST", f"/bot/{bot_id}/stop")
        except ProviderNotFoundError:
            logger.warning("Bot not found on stop, it may have already left", bot_id=bot_id)
            return
        logger.info("Provider bot stop requested", bot_id=bot_id)

    @staticmethod
    def parse_bot_status(bot_id: str, data: Dict[str, Any]) -> ProviderStatus:
        """Build a ProviderStatus from a bot resource.

        Prefers the ``status`` block and falls back to the latest entry of
        ``status_changes``. The completion time is taken from
        ``completed_at``/``meeting_ended_at`` or the terminal status change, and
        the recording start from the first recording status change.
        """
        status = data.get("status")
        changes: List[Dict[str, Any]] = data.get("status_changes") or []
        latest = changes[-1] if changes else {}

        code = sub_code = updated_at = None
        if isinstance(status, dict) and status.get("code"):
            code = status.get("code")
            sub_code = status.get("sub_code")
            updated_at = status.get("updated_at") or status.get("created_at")
        elif latest:
            code = latest.get("code")
            sub_code = latest.get("sub_code")
            updated_at = latest.get("created_at")
        elif isinstance(status, str):
            code = status

        completed_at = data.get("completed_at") or data.get("meeting_ended_at")
        if not completed_at:
            for change in reversed(changes):
                if map_provider_status(change.get("code")) in TERMINAL_STATUSES:
                    completed_at = change.get("created_at")
                    break

        recording_started_at = data.get("recording_started_at")
        if not recording_started_at:
            for change in changes:
                if map_provider_status(change.get("code")) == BotStatus.RECORDING:
                    recording_started_at = change.get("created_at")
                    break

        return ProviderStatus(
            bot_id=bot_id,
            code=code,
            sub_code=sub_code,
            updated_at=_parse_timestamp(updated_at),
            completed_at=_parse_timestamp(completed_at),
            recording_started_at=_parse_timestamp(recording_started_at),
        )

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=10),
            retry=retry_if_exception_type(ProviderTransientError),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                attempt_number = attempt.retry_state.attempt_number
                if attempt_number > 1:
                    logger.warning(
                        "Retrying provider request",
                        method=method,
                        path=path,
                        attempt=attempt_number,
                    )
                return await self._send(method, path, **kwargs)

    async def _send(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = await self._client.request(method, url, headers=self._headers, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderTransientError(f"Provider request timed out: {method} {path}") from e
        except httpx.TransportError as e:
            raise ProviderTransientError(f"Provider unreachable: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderTransientError(
                f"Provider returned {response.status_code} for {method} {path}"
            )
        if response.status_code == 404:
            raise ProviderNotFoundError(f"Provider resource not found: {path}", 404)
        if response.status_code >= 400:
            raise ProviderRequestError(
                f"Provider rejected {method} {path}: {response.status_code} {_error_detail(response)}",
                response.status_code,
            )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(f"Provider returned invalid JSON for {method} {path}") from e


def _parse_timestamp(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unparseable provider timestamp", value=value)
        return None


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("message") or body.get("detail") or body)
    return str(body)
