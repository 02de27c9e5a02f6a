"""Sweeper invocation endpoint for external schedulers."""

import hmac
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ...core.container import ServiceContainer
from ...core.logging import get_logger
from ...models.schemas import SweepResult
from ..deps import get_container

logger = get_logger(__name__)
router = APIRouter()


def _is_authorized(request: Request, container: ServiceContainer) -> bool:
    config = container.config
    if request.headers.get(config.scheduler_header) == "1":
        return True

    secret: Optional[str] = config.cron_secret
    authorization = request.headers.get("authorization", "")
    if not secret:
        return False
    return hmac.compare_digest(authorization, f"Bearer {secret}")


@router.api_route("/monitor-bots", methods=["GET", "POST"], response_model=SweepResult)
async def monitor_bots(request: Request, container: ServiceContainer = Depends(get_container)):
    """Run one sweep over every active bot."""
    if not _is_authorized(request, container):
        logger.warning("Unauthorized sweeper invocation", path=request.url.path)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    return await container.sweeper.run()
