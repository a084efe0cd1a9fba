"""
Productica Credits - FastAPI Backend
Credit accounting and session gating for the chat client's AI features.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import auth, credits, health
from services.credit_context import credit_contexts

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Productica Credits API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Ledger schema verified.")
        except Exception as e:
            print(f"⚠️ Ledger schema bootstrap skipped: {e}")
    yield
    # Shutdown
    dropped = len(credit_contexts)
    credit_contexts.clear()
    if dropped:
        logger.info("Discarded %s in-process credit sessions", dropped)
    await engine.dispose()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Productica Credits API",
    description="Prepaid credit balances, demo allowances and gating for AI analysis features",
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
app.include_router(credits.router, prefix="/credits", tags=["Credits"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Productica Credits API",
        "version": "0.1.0",
        "status": "running"
    }
