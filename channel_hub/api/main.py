from __future__ import annotations

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from channel_hub.core.errors import ChannelHubError, CredentialsUnavailable, EncryptionError
from channel_hub.core.logging import get_logger
from channel_hub.core.observability import RequestContextMiddleware, metrics_snapshot
from channel_hub.core.response import error_payload, ok
from channel_hub.core.settings import Settings, get_settings
from channel_hub.services.connection_service import ConnectionService
from .models import SuccessResponse
from .routes import channels_router, connections_router, providers_router, webhooks_router

logger = get_logger(__name__)

openapi_tags = [
    {"name": "Health", "description": "Health and metrics"},
    {"name": "Providers", "description": "Provider catalog, webhook descriptors and pairing codes"},
    {"name": "Connections", "description": "Tenant connections: verify, status, primary, send, delete"},
    {"name": "Channels", "description": "Channel references and WhatsApp provisioning"},
    {"name": "Webhooks", "description": "Inbound provider webhook verification"},
]


class HealthData(BaseModel):
    message: str = Field(..., description="Health status message")
    env: str = Field(..., description="Environment name")


async def _handle_channel_hub_error(request: Request, exc: ChannelHubError) -> JSONResponse:
    if isinstance(exc, EncryptionError):
        # Crypto details stay in the server log
        logger.error("Encryption failure", extra={"error": type(exc).__name__, "path": request.url.path})
        exc = CredentialsUnavailable()
    elif exc.http_status >= 500:
        logger.error("Request failed", extra={"code": exc.code, "path": request.url.path})
    return JSONResponse(
        status_code=exc.http_status,
        content=error_payload(exc.code, exc.message, details=exc.details or None),
    )


# PUBLIC_INTERFACE
def create_app(service: Optional[ConnectionService] = None, settings: Optional[Settings] = None) -> FastAPI:
    """Create the FastAPI app. A prebuilt service can be injected (tests); otherwise it is built lazily."""
    settings = settings or get_settings()
    app = FastAPI(
        title=settings.api.API_TITLE,
        description=settings.api.API_DESCRIPTION,
        version=settings.api.API_VERSION,
        openapi_tags=openapi_tags,
    )
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.CORS_ALLOW_ORIGINS,
        allow_credentials=True,
        allow_methods=settings.api.CORS_ALLOW_METHODS,
        allow_headers=settings.api.CORS_ALLOW_HEADERS,
    )
    app.add_middleware(RequestContextMiddleware, tenant_header_name=settings.tenant.TENANT_HEADER_NAME, logger=logger)
    app.add_exception_handler(ChannelHubError, _handle_channel_hub_error)

    # PUBLIC_INTERFACE
    @app.get(
        "/",
        summary="Health Check",
        tags=["Health"],
        response_model=SuccessResponse[HealthData],
        responses={
            200: {
                "description": "Service is healthy",
                "content": {
                    "application/json": {
                        "example": {"status": "ok", "data": {"message": "Healthy", "env": "development"}, "meta": {}}
                    }
                },
            }
        },
    )
    def health_check():
        """Health check endpoint that returns service status and environment."""
        return ok({"message": "Healthy", "env": settings.tenant.ENV})

    # PUBLIC_INTERFACE
    @app.get("/_metrics", summary="Metrics (basic)", tags=["Health"], response_model=SuccessResponse[dict])
    def metrics():
        """Return basic service metrics (process-local) for quick visibility."""
        return ok(metrics_snapshot())

    app.include_router(providers_router)
    app.include_router(connections_router)
    app.include_router(channels_router)
    app.include_router(webhooks_router)
    return app


app = create_app()
