"""Provider webhook endpoint."""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from ...core.container import ServiceContainer
from ...services.webhook_service import InvalidSignatureError, MalformedPayloadError
from ..deps import get_container

router = APIRouter()


@router.post("/bot-status")
async def receive_bot_status(request: Request, container: ServiceContainer = Depends(get_container)):
    """Receive a bot status event from the provider.

    The raw body is read before parsing so the signature is checked against
    the exact bytes the provider signed.
    """
    raw_body = await request.body()
    try:
        result = await container.ingress.handle(
            raw_body,
            signature=request.headers.get("x-signature"),
            timestamp=request.headers.get("x-timestamp"),
        )
    except InvalidSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")
    except MalformedPayloadError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return JSONResponse(content=result.model_dump(mode="json", by_alias=True, exclude_none=True))
