"""FastAPI application for the camera room signaling service."""
from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from .core.config import settings
from .core.logging import configure_logging
from .routers import rooms as rooms_router
from .routers import signaling as signaling_router
from .services.signaling import SignalingHub

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    """Build the application with its own, empty signaling hub."""

    configure_logging(settings.log_level)

    application = FastAPI(title="camlink signaling", version="0.1.0")
    application.state.hub = SignalingHub()

    if settings.cors_allow_origins:
        application.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    application.include_router(signaling_router.router, prefix="/api", tags=["signaling"])
    application.include_router(rooms_router.router, prefix="/api/rooms", tags=["rooms"])

    @application.get("/api/health", tags=["meta"])
    async def health() -> dict[str, str]:
        """Return service liveness."""

        return {"status": "ok"}

    @application.head("/api/health", tags=["meta"])
    async def health_head() -> Response:
        return Response(status_code=200)

    logger.info("Signaling app initialized (env=%s)", settings.app_env)
    return application


app = create_app()
