"""FastAPI application for the workshop API admission layer."""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from admission.api.routes import VehicleStore, router as api_router
from admission.config import Settings, get_settings
from admission.quota import AdmissionManager
from admission.security import TokenVerifier

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


def create_app(
    settings: Settings | None = None,
    manager: AdmissionManager | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Settings to use (cached environment settings if None)
        manager: Admission manager to use (built from settings if None)
    """
    settings = settings or get_settings()
    manager = manager or AdmissionManager.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Application lifespan events."""
        # Startup
        logger.info("Starting workshop API...")
        await manager.start()
        yield
        # Shutdown
        logger.info("Shutting down workshop API...")
        await manager.stop()

    app = FastAPI(
        title="Workshop API",
        description="Vehicle-service workshop API with per-caller admission control",
        version=VERSION,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.admission = manager
    app.state.vehicles = VehicleStore()
    app.state.token_verifier = None
    if settings.jwt_secret:
        app.state.token_verifier = TokenVerifier(
            secret=settings.jwt_secret,
            algorithm=settings.jwt_algorithm,
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
        )
        logger.info("Bearer token verification enabled")
    else:
        logger.info("No JWT secret configured, callers are partitioned by IP only")

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials="*" not in settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Retry-After", "X-RateLimit-Limit", "X-RateLimit-Remaining"],
    )

    # Request timing middleware
    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        start_time = time.perf_counter()
        response = await call_next(request)
        process_time = (time.perf_counter() - start_time) * 1000
        response.headers["X-Process-Time-Ms"] = f"{process_time:.2f}"
        return response

    # Include API routes
    app.include_router(api_router, prefix="/v1")

    # Health check
    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy" if manager.is_running else "stopped",
            "version": VERSION,
            "policies": len(manager.registry),
            "tracked_partitions": manager.controller.state_count,
        }

    @app.get("/")
    async def root():
        return {
            "name": "Workshop API",
            "version": VERSION,
            "docs": "/docs",
            "openapi": "/openapi.json",
        }

    return app
