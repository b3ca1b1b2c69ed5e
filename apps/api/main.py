"""
Storefront Auth - FastAPI Backend
Main application entry point with health check and API routing.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import health, auth
from services.providers import build_provider_registry

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("storefront")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    logger.info("Starting Storefront Auth API...")
    validate_security_settings()
    app.state.provider_registry = build_provider_registry()
    logger.info("Social providers enabled: %s", ", ".join(sorted(app.state.provider_registry)) or "none")
    if settings.PASSWORDLESS_CONVENIENCE_ENABLED:
        logger.warning(
            "Passwordless convenience sign-in is enabled; its token is derived from the email. "
            "Set PASSWORDLESS_CONVENIENCE_ENABLED=false to require email links instead."
        )
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("Database schema verified.")
        except Exception as e:
            logger.warning("Database bootstrap skipped: %s", e)
    yield
    await engine.dispose()
    logger.info("Shutting down API...")


app = FastAPI(
    title="Storefront Auth API",
    description="Sign-in, registration and session issuing for the storefront",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(auth.router, prefix="/auth", tags=["Authentication"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Storefront Auth API",
        "version": "0.1.0",
        "status": "running"
    }
