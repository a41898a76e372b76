"""FastAPI application entry point."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from seedflow.core.config import get_settings
from seedflow.core.database import dispose_engine
from seedflow.core.exceptions import register_exception_handlers
from seedflow.core.health import router as health_router
from seedflow.core.logging import configure_logging, get_logger
from seedflow.core.middleware import RequestIdMiddleware
from seedflow.features.orchestrator.routes import router as orchestrator_router
from seedflow.features.orchestrator.service import SeedingOrchestrator

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup/shutdown.

    Builds the orchestrator for the configured state store, loads the
    distribution configuration and starts the real-time lane and scheduler.

    Args:
        app: FastAPI application instance.

    Yields:
        None after startup, cleans up on shutdown.
    """
    settings = get_settings()

    # Startup
    configure_logging()
    logger.info(
        "app.startup_started",
        app_name=settings.app_name,
        app_env=settings.app_env,
        debug=settings.debug,
        state_store=settings.state_store_backend,
    )

    orchestrator = SeedingOrchestrator.from_settings(settings)
    app.state.orchestrator = orchestrator
    await orchestrator.start()
    logger.info("app.startup_completed")

    yield

    # Shutdown
    await orchestrator.aclose()
    await dispose_engine()
    logger.info("app.shutdown_completed")


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance.
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Data seeding and distribution orchestrator",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    # Middleware (order matters - first added = outermost)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173",  # Vite dev server
            "http://127.0.0.1:5173",
        ]
        if settings.is_development
        else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestIdMiddleware)

    # Exception handlers
    register_exception_handlers(app)

    # Routers
    app.include_router(health_router)
    app.include_router(orchestrator_router)

    return app


app = create_app()
