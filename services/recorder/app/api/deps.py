"""FastAPI dependencies resolving components from the application container."""

from fastapi import Request

from ..core.container import ServiceContainer


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container
