"""
Headshot Studio - FastAPI Backend
Main application entry point with health check and API routing.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from config import settings, validate_billing_settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    auth,
    billing,
    webhooks,
    generate,
    mobile,
)

logging.basicConfig(
    level=getattr(logging, str(settings.LOG_LEVEL).upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Headshot Studio API...")
    validate_security_settings()
    for problem in validate_billing_settings():
        logger.warning("Billing configuration problem: %s", problem)
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            logger.warning("Database bootstrap skipped: %s", e)
    yield
    # Shutdown
    await engine.dispose()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Headshot Studio API",
    description="AI professional headshots with credit and subscription entitlements",
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
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(webhooks.router, prefix="/billing", tags=["Billing Webhooks"])
app.include_router(generate.router, prefix="/generate", tags=["Generate"])
app.include_router(mobile.router, prefix="/mobile", tags=["Mobile Upload"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Headshot Studio API",
        "version": "0.1.0",
        "status": "running"
    }
