"""Main FastAPI application for the Bot Recorder Service."""

import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.config import Settings, settings
from .core.container import ServiceContainer, build_container
from .core.logging import configure_logging, get_logger, log_error, log_request, log_response
from .models.database import utcnow
from .models.schemas import ErrorResponse

# Configure logging
configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""

    # Startup
    logger.info("Starting Bot Recorder Service")

    container: ServiceContainer = getattr(app.state, "container", None) or build_container(app.state.config)
    app.state.container = container

    await container.db.initialize()
    if container.config.environment == "development":
        await container.db.create_tables()
        logger.info("Database tables ensured")

    try:
        yield
    finally:
        # Shutdown
        logger.info("Shutting down Bot Recorder Service")
        await container.close()


def create_app(config: Optional[Settings] = None, container: Optional[ServiceContainer] = None) -> FastAPI:
    """Create the application.

    A prebuilt container can be passed in; otherwise one is built from the
    settings at startup.
    """
    config = config or settings

    app = FastAPI(
        title="Bot Recorder Service",
        description="Meeting bot lifecycle and usage accounting",
        version=config.service_version,
        lifespan=lifespan,
    )
    app.state.config = config
    if container is not None:
        app.state.container = container

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def logging_middleware(request: Request, call_next):
        """Logging middleware for requests and responses."""

        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        start_time = datetime.now()

        log_request(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            query_params=str(request.query_params),
            client_ip=request.client.host if request.client else None,
        )

        request.state.request_id = request_id

        try:
            response = await call_next(request)
        except Exception as e:
            duration = (datetime.now() - start_time).total_seconds() * 1000
            log_error(logger, e, {"request_id": request_id, "duration_ms": duration})
            raise

        duration = (datetime.now() - start_time).total_seconds() * 1000
        log_response(
            request_id=request_id,
            status_code=response.status_code,
            duration_ms=duration,
        )
        response.headers["X-Request-ID"] = request_id
        return response

    _register_exception_handlers(app)
    _include_routers(app)
    return app


def _register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle validation errors."""
        return _error_response(
            request,
            status.HTTP_400_BAD_REQUEST,
            "Validation Error",
            [
                {
                    "field": ".".join(str(x) for x in error["loc"]),
                    "message": error["msg"],
                    "type": error["type"],
                }
                for error in exc.errors()
            ],
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Handle HTTP exceptions."""
        return _error_response(request, exc.status_code, f"HTTP {exc.status_code}", exc.detail)

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle general exceptions."""
        logger.error(
            "Unhandled exception",
            request_id=getattr(request.state, "request_id", None),
            error_type=type(exc).__name__,
            error_message=str(exc),
        )
        return _error_response(
            request,
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Internal Server Error",
            "An unexpected error occurred",
        )


def _error_response(request: Request, status_code: int, error: str, message) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            error=error,
            message=message,
            request_id=getattr(request.state, "request_id", None),
            timestamp=utcnow(),
        ).model_dump(mode="json"),
    )


def _include_routers(app: FastAPI) -> None:
    from .api.v1 import bots, health, sweeper, usage, webhooks

    app.include_router(health.router, prefix="/health", tags=["Health"])
    app.include_router(webhooks.router, prefix="/api/v1/webhooks", tags=["Webhooks"])
    app.include_router(sweeper.router, prefix="/api/v1/cron", tags=["Sweeper"])
    app.include_router(bots.router, prefix="/api/v1/bots", tags=["Bots"])
    app.include_router(usage.router, prefix="/api/v1/usage", tags=["Usage"])


app = create_app()
