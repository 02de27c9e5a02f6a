"""Usage read endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from ...core.container import ServiceContainer
from ...models.schemas import MonthlyUsageResponse, SessionLedgerResponse
from ..deps import get_container

router = APIRouter()


@router.get("/monthly", response_model=MonthlyUsageResponse)
async def monthly_usage(
    user_id: str = Query(..., min_length=1),
    organization_id: Optional[str] = Query(None),
    month: Optional[str] = Query(None, pattern=r"^\d{4}-\d{2}$", description="Billing period, YYYY-MM"),
    container: ServiceContainer = Depends(get_container),
):
    """Cached usage totals for a billing period (current month by default)."""
    return await container.usage.monthly_usage(organization_id, user_id, month)


@router.get("/sessions/{session_id}/ledger", response_model=SessionLedgerResponse)
async def session_ledger(session_id: str, container: ServiceContainer = Depends(get_container)):
    """Minute-by-minute ledger for a session."""
    return await container.usage.session_ledger(session_id)
