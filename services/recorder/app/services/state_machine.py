"""Canonical bot status vocabulary, provider code mapping and transition rule."""

import math
from typing import Dict, Optional

from ..models.bot_session import BotStatus

TERMINAL_STATUSES = frozenset({
    BotStatus.COMPLETED,
    BotStatus.FAILED,
    BotStatus.PERMISSION_DENIED,
})

# Statuses the sweeper polls
ACTIVE_STATUSES = frozenset({
    BotStatus.CREATED,
    BotStatus.JOINING,
    BotStatus.WAITING,
    BotStatus.IN_CALL,
    BotStatus.RECORDING,
})

STATUS_RANK: Dict[BotStatus, int] = {
    BotStatus.CREATED: 0,
    BotStatus.JOINING: 1,
    BotStatus.WAITING: 2,
    BotStatus.IN_CALL: 3,
    BotStatus.RECORDING: 4,
    BotStatus.COMPLETED: 5,
    BotStatus.FAILED: 5,
    BotStatus.PERMISSION_DENIED: 5,
}

PROVIDER_STATUS_MAP: Dict[str, BotStatus] = {
    "ready": BotStatus.CREATED,
    "created": BotStatus.CREATED,
    "joining_call": BotStatus.JOINING,
    "in_waiting_room": BotStatus.WAITING,
    "in_call": BotStatus.IN_CALL,
    "in_call_not_recording": BotStatus.IN_CALL,
    "in_call_recording": BotStatus.RECORDING,
    "recording_permission_allowed": BotStatus.RECORDING,
    "done": BotStatus.COMPLETED,
    "call_ended": BotStatus.COMPLETED,
    "completed": BotStatus.COMPLETED,
    "recording_done": BotStatus.COMPLETED,
    "fatal": BotStatus.FAILED,
    "error": BotStatus.FAILED,
    "recording_permission_denied": BotStatus.PERMISSION_DENIED,
}

FAILURE_REASONS: Dict[str, str] = {
    "bot_kicked_from_call": "Bot was removed from the call",
    "bot_kicked_from_waiting_room": "Bot was removed from the waiting room",
    "bot_received_leave_call": "Bot was asked to leave the call",
    "call_ended_by_host": "Host ended the call",
    "call_ended_by_platform_idle": "Platform ended the idle call",
    "call_ended_by_platform_max_length": "Platform maximum call length reached",
    "everyone_left_timeout": "Everyone left the call",
    "meeting_not_found": "Meeting not found",
    "meeting_not_started": "Meeting has not started",
    "meeting_password_incorrect": "Meeting password incorrect",
    "meeting_requires_registration": "Meeting requires registration",
    "meeting_link_expired": "Meeting link expired",
    "noone_joined_timeout": "No one joined the call",
    "timeout_exceeded_waiting_room": "Timed out in the waiting room",
    "timeout_exceeded_in_call_not_recording": "Timed out in the call without recording",
    "timeout_exceeded_recording_permission_denied": "Timed out waiting for recording permission",
    "recording_permission_denied_by_host": "Host denied recording permission",
    "zoom_local_recording_disabled": "Local recording is disabled for the meeting",
    "zoom_local_recording_request_denied_by_host": "Host denied the recording request",
}


def map_provider_status(code: Optional[str]) -> BotStatus:
    """Map a raw provider status code to a canonical status.

    Accepts both bare codes (``in_call_recording``) and event names
    (``bot.in_call_recording``). Anything unmapped is ``UNKNOWN``.
    """
    if not code:
        return BotStatus.UNKNOWN
    normalized = code.strip().lower()
    if normalized.startswith("bot."):
        normalized = normalized[len("bot."):]
    return PROVIDER_STATUS_MAP.get(normalized, BotStatus.UNKNOWN)


def failure_reason(sub_code: Optional[str]) -> Optional[str]:
    """Readable reason for a provider sub-code, or None when it is not known."""
    if not sub_code:
        return None
    return FAILURE_REASONS.get(sub_code.strip().lower())


def is_terminal(status) -> bool:
    return _coerce(status) in TERMINAL_STATUSES


def can_transition(current, new) -> bool:
    """Whether ``new`` may be applied over ``current``.

    Nothing leaves a terminal state. A terminal state always wins over a
    non-terminal one. Otherwise the new state must be strictly ahead of the
    current one; re-applying the current state is not a transition.
    """
    current = _coerce(current)
    new = _coerce(new)
    if new not in STATUS_RANK:
        return False
    if current in TERMINAL_STATUSES:
        return False
    if new in TERMINAL_STATUSES:
        return True
    if current not in STATUS_RANK:
        return True
    return STATUS_RANK[new] > STATUS_RANK[current]


def billable_minutes(total_seconds: int) -> int:
    """Ceiling of seconds over sixty, floored at zero."""
    if total_seconds <= 0:
        return 0
    return math.ceil(total_seconds / 60)


def recording_seconds(started_at, ended_at) -> int:
    """Whole seconds between start and end, clamped at zero for clock skew."""
    if started_at is None or ended_at is None:
        return 0
    return max(0, int((ended_at - started_at).total_seconds()))


def _coerce(status) -> BotStatus:
    if isinstance(status, BotStatus):
        return status
    try:
        return BotStatus(status)
    except ValueError:
        return BotStatus.UNKNOWN
