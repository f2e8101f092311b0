"""
Shule API - Main Application Entry Point

This module initializes and configures the FastAPI application including:
- Database and Redis connections
- Service container (hasher, token issuer, notifier, services)
- Background job scheduler
- CORS middleware and error handlers
- API routing
- Health check endpoints
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shule.api import api_router
from shule.core.config import settings
from shule.core.database import close_db, init_db, ping_db
from shule.core.errors import register_exception_handlers
from shule.core.redis import close_redis, init_redis, ping_redis
from shule.core.scheduler import start_scheduler, stop_scheduler
from shule.dependencies import Services, build_services
from shule.modules.auth.jobs import register_auth_jobs

# Seconds to wait for queued emails on shutdown
EMAIL_DRAIN_TIMEOUT = 10.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events including:
    - Redis connection
    - Database connection
    - Background job scheduler
    - Outstanding email tasks
    """
    services: Services = app.state.services
    config = services.settings

    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    # Startup
    print(f"Starting Shule API in {config.python_env} mode...")

    # Initialize Redis
    try:
        await init_redis()
        print("[OK] Redis connected")
    except Exception as e:
        print(f"[FAIL] Redis connection failed: {e}")
        if config.is_production:
            raise

    # Initialize Database
    try:
        await init_db()
        print("[OK] Database connected")
    except Exception as e:
        print(f"[FAIL] Database connection failed: {e}")
        if config.is_production:
            raise

    # Initialize Background Job Scheduler
    try:
        # Register jobs before starting the scheduler
        register_auth_jobs(config, services.registry)

        await start_scheduler()
        print("[OK] Background scheduler started")
    except Exception as e:
        print(f"[FAIL] Background scheduler failed to start: {e}")
        if config.is_production:
            raise

    yield  # Application runs here

    # Shutdown
    print("Shutting down Shule API...")

    # Stop the scheduler first (wait for running jobs)
    await stop_scheduler()
    print("[OK] Background scheduler stopped")

    if services.notifier.pending:
        print(f"Waiting for {services.notifier.pending} queued email(s)...")
    await services.notifier.drain(timeout=EMAIL_DRAIN_TIMEOUT)

    await close_redis()
    await close_db()
    print("[OK] Cleanup complete")


def create_app(services: Services | None = None) -> FastAPI:
    """
    Build the application.

    Args:
        services: Prebuilt service container; built from settings when omitted
    """
    services = services or build_services(settings)
    config = services.settings

    app = FastAPI(
        title="Shule API",
        description="Multi-tenant School Management System API",
        version="0.1.0",
        docs_url="/docs" if config.is_development else None,
        redoc_url="/redoc" if config.is_development else None,
        lifespan=lifespan,
    )
    app.state.services = services

    register_exception_handlers(app)
    app.include_router(api_router, prefix="/api/v1")

    # CORS configuration; credentials are needed for the refresh cookie
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/", tags=["Root"])
    async def root() -> dict[str, str]:
        """Root endpoint - API welcome message."""
        return {
            "message": "Welcome to Shule API",
            "status": "running",
            "environment": config.python_env,
        }

    @app.get("/health", tags=["Health"])
    async def health_check() -> dict[str, str]:
        """Liveness check for container orchestration."""
        return {"status": "healthy"}

    @app.get("/ready", tags=["Health"])
    async def readiness_check():
        """Readiness check: the database must answer. Redis is reported but optional."""
        redis_state = "connected" if await ping_redis() else "unavailable"
        if not await ping_db():
            return JSONResponse(
                status_code=503,
                content={"status": "not_ready", "database": "unavailable", "redis": redis_state},
            )
        return {"status": "ready", "database": "connected", "redis": redis_state}

    return app


app = create_app()
