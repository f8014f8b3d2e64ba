"""
Red Envelope Cover AI - FastAPI Backend
Main application entry point: credits ledger, payments, redemption, generation.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from sqlalchemy.exc import SQLAlchemyError

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    billing,
    redeem,
    generate,
)


logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🧧 Starting Red Envelope Cover API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except (SQLAlchemyError, OSError) as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    if not settings.STRIPE_SECRET_KEY:
        print("⚠️ STRIPE_SECRET_KEY missing; checkout and session verification will return 503.")
    yield
    # Shutdown
    await engine.dispose()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Red Envelope Cover API",
    description="Generate red envelope cover art with a credit-gated ledger",
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
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(redeem.router, prefix="/redeem", tags=["Redeem"])
app.include_router(generate.router, prefix="/generate", tags=["Generate"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Red Envelope Cover API",
        "version": "0.1.0",
        "status": "running"
    }
