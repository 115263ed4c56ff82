"""
FastAPI application entry point.

This is the main FastAPI application that handles:
- USSD gateway callbacks
- OTP authentication and transaction management for API clients
- Settlement provider and custody webhooks
- Health checks
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ussd_wallet import __version__
from ussd_wallet.api.routes import (
    auth_router,
    health_router,
    sms_router,
    transactions_router,
    ussd_router,
    webhooks_router,
)
from ussd_wallet.config import Settings, settings
from ussd_wallet.container import ServiceContainer, build_container
from ussd_wallet.logging_config import configure_logging, get_logger

logger = get_logger(__name__)


def create_app(
    app_settings: Settings | None = None,
    container: ServiceContainer | None = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        app_settings: Settings to use (defaults to the environment)
        container: Pre-built service container; when given, the lifespan
            neither builds nor closes one

    Returns:
        Configured FastAPI app
    """
    app_settings = app_settings or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        Builds the service container at startup and closes it at shutdown.
        """
        # Startup
        configure_logging(app_settings.log_level, app_settings.log_format)
        owns_container = getattr(app.state, "container", None) is None
        if owns_container:
            app.state.container = build_container(app_settings)
        logger.info(
            "application_starting",
            environment=app_settings.environment,
            providers=app.state.container.providers.names(),
            sms_configured=app.state.container.sms.is_configured,
        )

        yield

        # Shutdown
        logger.info("application_shutting_down")
        if owns_container:
            app.state.container.close()

    app = FastAPI(
        title=app_settings.app_name,
        description="USSD wallet: transfers, mobile-money deposits and withdrawals, vault investments",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if not app_settings.is_production else None,
        redoc_url="/redoc" if not app_settings.is_production else None,
    )
    if container is not None:
        app.state.container = container

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if app_settings.environment == "development" else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ─────────────────────────────────────────────────────────────────────
    # Include Routers
    # ─────────────────────────────────────────────────────────────────────

    # API v1 routes
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(ussd_router, prefix="/api/v1")
    app.include_router(auth_router, prefix="/api/v1")
    app.include_router(transactions_router, prefix="/api/v1")
    app.include_router(webhooks_router, prefix="/api/v1")
    app.include_router(sms_router, prefix="/api/v1")

    # Also mount health at root for simpler health checks
    app.include_router(health_router)

    # ─────────────────────────────────────────────────────────────────────
    # Root Endpoint
    # ─────────────────────────────────────────────────────────────────────

    @app.get("/")
    def root():
        """Root endpoint with basic info."""
        return {
            "name": app_settings.app_name,
            "version": __version__,
            "status": "running",
            "docs": "/docs" if not app_settings.is_production else None,
            "health": "/health",
            "ussd": "/api/v1/ussd",
        }

    return app


app = create_app()


# ─────────────────────────────────────────────────────────────────────────────
# Run with Uvicorn (for development)
# ─────────────────────────────────────────────────────────────────────────────

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "ussd_wallet.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.environment == "development",
        log_level="debug" if settings.environment == "development" else "info",
    )
