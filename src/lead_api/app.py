"""
Lead API - FastAPI Application

The marketing site's API: lead capture forms, CSRF token issuance, health and
security administration. Every request passes through the SecurityGateway.
"""
import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from ..shared.config import Settings, get_settings
from ..shared.logging_config import LoggingConfig
from ..shared.security import SecurityGateway, create_security_gateway, start_rate_limiter_cleanup_task
from .middleware import LoggingMiddleware, SecurityGatewayMiddleware
from .routers import debug, health, leads, security_admin

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Runs the periodic security cleanup for as long as the app is serving.
    """
    gateway: SecurityGateway = app.state.security_gateway
    interval = gateway.settings.rate_limit.cleanup_interval_seconds

    logger.info("Starting marketing site API...")
    cleanup_task = asyncio.create_task(start_rate_limiter_cleanup_task(gateway, interval))

    try:
        yield
    finally:
        logger.info("Shutting down marketing site API...")
        cleanup_task.cancel()
        with suppress(asyncio.CancelledError):
            await cleanup_task
        logger.info("Security cleanup task stopped")


def create_app(settings: Optional[Settings] = None, gateway: Optional[SecurityGateway] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Settings to build the app from; defaults to the environment
        gateway: Pre-built gateway, e.g. one with a test clock

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or (gateway.settings if gateway else get_settings())
    gateway = gateway or create_security_gateway(settings)

    app = FastAPI(
        title=settings.app_name,
        description="Lead capture and security endpoints for the marketing site",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan
    )
    app.state.security_gateway = gateway

    # Order matters - last added is executed first
    app.add_middleware(SecurityGatewayMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", settings.csrf.header_name, "X-Requested-With"],
        max_age=3600
    )
    app.add_middleware(LoggingMiddleware)

    app.include_router(health.router, prefix="/api", tags=["Health"])
    app.include_router(leads.router, prefix="/api", tags=["Leads"])
    app.include_router(security_admin.router, prefix="/api/security", tags=["Security"])
    app.include_router(debug.router, prefix="/api/debug", tags=["Debug"])

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler for unhandled errors."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return gateway.create_secure_response(
            {"error": "Internal server error"},
            status=500
        )

    return app


# Create the application instance
app = create_app()


def run_server(
    host: str = "0.0.0.0",
    port: int = 8000,
    reload: bool = False,
    workers: int = 1
):
    """
    Run the FastAPI server with uvicorn.

    Rate limit state is in-process, so more than one worker gives each worker
    its own counters.

    Args:
        host: Host to bind to
        port: Port to bind to
        reload: Enable auto-reload for development
        workers: Number of worker processes
    """
    settings = get_settings()

    uvicorn.run(
        "src.lead_api.app:app",
        host=host,
        port=port,
        reload=reload,
        workers=workers if not reload else 1,
        log_config=LoggingConfig.get_config_dict(
            level=settings.monitoring.log_level.value,
            format_type="json" if settings.is_production() else "colored",
        ),
        access_log=settings.debug
    )


if __name__ == "__main__":
    # Development server
    settings = get_settings()
    run_server(
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        workers=1
    )
