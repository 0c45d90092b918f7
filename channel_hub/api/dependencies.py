from __future__ import annotations

from fastapi import Request

from channel_hub.core.settings import get_settings
from channel_hub.services.connection_service import ConnectionService, build_service


# PUBLIC_INTERFACE
def get_service(request: Request) -> ConnectionService:
    """Return the app's ConnectionService, building it from settings on first use."""
    service = getattr(request.app.state, "service", None)
    if service is None:
        service = build_service(get_settings())
        request.app.state.service = service
    return service
