"""Pydantic schemas for API and provider payloads."""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


# Inbound webhook payload

class WebhookStatusData(BaseModel):
    """Status block of a bot status event."""
    code: Optional[str] = None
    sub_code: Optional[str] = None
    updated_at: Optional[datetime] = None


class WebhookBot(BaseModel):
    """Bot block of a bot status event."""
    id: str = Field(..., min_length=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class WebhookEventData(BaseModel):
    data: WebhookStatusData
    bot: WebhookBot


class BotStatusWebhook(BaseModel):
    """Provider bot status webhook body."""
    event: str
    data: WebhookEventData


class WebhookResponse(BaseModel):
    """Telemetry returned to the provider."""
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    bot_id: Optional[str] = Field(default=None, serialization_alias="botId")
    session_id: Optional[str] = Field(default=None, serialization_alias="sessionId")
    event: Optional[str] = None
    processing_time: int = Field(default=0, serialization_alias="processingTime")
    duplicate: bool = False
    ignored: bool = False
    applied: Optional[bool] = None
    error: Optional[str] = None


# Provider API

class ProviderStatus(BaseModel):
    """Point-in-time status of a bot as reported by the provider."""
    bot_id: str
    code: Optional[str] = None
    sub_code: Optional[str] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    recording_started_at: Optional[datetime] = None


# Bot API

class BotRequest(BaseModel):
    """Request to send a bot into a meeting."""
    session_id: str = Field(..., min_length=1)
    meeting_url: str = Field(..., min_length=1)
    bot_name: Optional[str] = None


class BotSessionSchema(BaseModel):
    """Bot session view."""
    model_config = ConfigDict(from_attributes=True)

    bot_id: str
    session_id: str
    user_id: str
    organization_id: Optional[str] = None
    status: str
    sub_code: Optional[str] = None
    recording_started_at: Optional[datetime] = None
    recording_ended_at: Optional[datetime] = None
    total_recording_seconds: int = 0
    billable_minutes: int = 0
    created_at: datetime
    updated_at: datetime


# Sweeper

class SweepDetail(BaseModel):
    """Outcome of one bot in a sweep."""
    bot_id: str
    session_id: Optional[str] = None
    action: str
    old_status: Optional[str] = None
    new_status: Optional[str] = None
    billable_minutes: Optional[int] = None
    minutes_stale: Optional[float] = None
    error: Optional[str] = None


class SweepResult(BaseModel):
    """Summary of a sweep run."""
    checked: int = 0
    updated: int = 0
    errors: int = 0
    details: List[SweepDetail] = Field(default_factory=list)
    duration_ms: int = 0


# Usage

class UsageLedgerEntrySchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    bot_id: str
    session_id: str
    minute_timestamp: datetime
    seconds_recorded: int
    billing_period: str


class SessionLedgerResponse(BaseModel):
    """Minute-by-minute ledger for one meeting session."""
    session_id: str
    total_seconds: int
    billable_minutes: int
    entries: List[UsageLedgerEntrySchema]


class MonthlyUsageResponse(BaseModel):
    """Cached usage totals for one billing period."""
    organization_id: Optional[str] = None
    user_id: str
    month_year: str
    total_minutes_used: int = 0
    total_seconds_used: int = 0
    minutes_limit: Optional[int] = None
    minutes_remaining: Optional[int] = None


class ErrorResponse(BaseModel):
    """Error response schema."""
    error: str
    message: Any
    request_id: Optional[str] = None
    timestamp: datetime


class HealthResponse(BaseModel):
    """Health check response model."""
    status: str
    service: str
    version: str
    timestamp: datetime
    details: Dict[str, Any] = Field(default_factory=dict)
