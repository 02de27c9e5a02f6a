"""Bot lifecycle endpoints."""

from fastapi import APIRouter, Depends, HTTPException, status

from ...core.container import ServiceContainer
from ...models.schemas import BotRequest, BotSessionSchema
from ...services.bot_service import BotNotFoundError, SessionNotFoundError, UsageLimitExceededError
from ...services.provider_client import ProviderError
from ..deps import get_container

router = APIRouter()


@router.post("", response_model=BotSessionSchema, status_code=status.HTTP_201_CREATED)
async def request_bot(request: BotRequest, container: ServiceContainer = Depends(get_container)):
    """Send a recording bot into a session's meeting."""
    try:
        bot = await container.bots.request_bot(request)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except UsageLimitExceededError as e:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "message": str(e),
                "minutes_used": e.minutes_used,
                "minutes_limit": e.minutes_limit,
            },
        )
    except ProviderError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    return BotSessionSchema.model_validate(bot)


@router.get("/{bot_id}", response_model=BotSessionSchema)
async def get_bot(bot_id: str, container: ServiceContainer = Depends(get_container)):
    try:
        bot = await container.bots.get_bot(bot_id)
    except BotNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return BotSessionSchema.model_validate(bot)


@router.post("/{bot_id}/stop", response_model=BotSessionSchema)
async def stop_bot(bot_id: str, container: ServiceContainer = Depends(get_container)):
    """Ask the provider to stop a bot. The status change arrives later by webhook."""
    try:
        bot = await container.bots.stop_bot(bot_id)
    except BotNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ProviderError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    return BotSessionSchema.model_validate(bot)
