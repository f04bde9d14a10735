"""
Scenario Playbook Engine - Main FastAPI Application

This is the entry point for the FastAPI application.
It configures middleware, routes, and lifecycle handlers.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config.settings import settings
from .api.routes import api_router
from .api.middleware import CorrelationIdMiddleware, register_error_handlers
from .repositories.mongo_client import create_indexes, close_connection, health_check
from .scheduler.timeout_scheduler import start_scheduler, stop_scheduler
from .services.scenario_run_service import shutdown_run_service
from .utils.logger import setup_logging, get_logger

# Setup logging first
setup_logging()
logger = get_logger(__name__)

APP_VERSION = "1.0.0"


# =============================================================================
# Application Lifecycle
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
        - Creates MongoDB indexes (mongo backend)
        - Starts the timeout / recovery scheduler

    Shutdown:
        - Stops scheduler
        - Drains the step worker pool
        - Closes database connections
    """
    logger.info("Starting Scenario Playbook Engine...")

    if not settings.uses_memory_store:
        try:
            create_indexes()
            logger.info("MongoDB indexes created")
        except Exception as e:
            logger.error(f"Failed to create indexes: {e}")

    if settings.scheduler_enabled:
        try:
            start_scheduler()
            logger.info("Timeout scheduler started")
        except Exception as e:
            logger.error(f"Failed to start scheduler: {e}")

    logger.info("Application started successfully")

    yield

    logger.info("Shutting down...")
    stop_scheduler()
    shutdown_run_service(wait=True)
    if not settings.uses_memory_store:
        close_connection()
    logger.info("Application shutdown complete")


# =============================================================================
# Application Factory
# =============================================================================

def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    application = FastAPI(
        title="Scenario Playbook Engine",
        description="Durable orchestration of scenario playbooks: dependency graphs, approvals, signals",
        version=APP_VERSION,
        lifespan=lifespan,
        docs_url="/api/docs" if settings.debug else None,
        redoc_url="/api/redoc" if settings.debug else None,
        openapi_url="/api/openapi.json" if settings.debug else None,
    )

    _configure_middleware(application)
    register_error_handlers(application)
    _configure_routes(application)

    return application


def _configure_middleware(app: FastAPI) -> None:
    """Configure application middleware."""
    # allow_credentials must be False when allowing all origins
    allow_all = settings.cors_origins.strip() == "*"

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if allow_all else settings.cors_origins_list,
        allow_credentials=not allow_all,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Correlation-Id"],
    )

    app.add_middleware(CorrelationIdMiddleware)


def _health() -> dict:
    if settings.uses_memory_store:
        store = {"status": "healthy", "backend": "memory"}
    else:
        store = health_check()
    return {
        "status": "healthy" if store.get("status") == "healthy" else "degraded",
        "version": APP_VERSION,
        "environment": settings.environment,
        "store": store
    }


def _configure_routes(app: FastAPI) -> None:
    """Configure application routes."""
    app.include_router(api_router, prefix="/api/v1")

    @app.get("/api/v1/health", tags=["Health"])
    async def health_v1():
        """Health check including storage connectivity"""
        return _health()

    @app.get("/health", tags=["Health"])
    async def health():
        return _health()

    @app.get("/", tags=["Health"])
    async def root():
        """Root endpoint with API information."""
        return {
            "name": "Scenario Playbook Engine",
            "version": APP_VERSION,
            "docs": "/api/docs" if settings.debug else None
        }


# =============================================================================
# Application Instance
# =============================================================================

app = create_app()
