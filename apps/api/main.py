"""
Credit Engine - FastAPI Backend
Credit ledger, generation settlement and subscription billing API.
"""

import asyncio
import logging
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    auth,
    billing,
    generation,
    webhooks,
    admin,
)
from services.providers import build_providers
from services.recovery import run_stuck_task_recovery


logger = logging.getLogger(__name__)


async def _periodic_stuck_task_recovery(app: FastAPI) -> None:
    interval_minutes = max(int(settings.RECOVERY_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            result = await run_stuck_task_recovery(app.state.providers)
            if result.status == "skipped":
                continue
            counts = result.counts()
            if counts["found"] or counts["released_reservations"]:
                print(
                    f"♻️ Generation recovery: found={counts['found']} completed={counts['completed']} "
                    f"failed={counts['failed']} still_processing={counts['still_processing']} "
                    f"settled_elsewhere={counts['settled_elsewhere']} errors={counts['errors']} "
                    f"released={counts['released_reservations']}"
                )
        except Exception as exc:
            print(f"⚠️ Generation recovery tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Credit Engine API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    app.state.providers = build_providers(settings)
    recovery_task = None
    if settings.RECOVERY_ENABLED and int(settings.RECOVERY_INTERVAL_MINUTES) > 0:
        recovery_task = asyncio.create_task(_periodic_stuck_task_recovery(app))
        print(
            "📅 Generation recovery loop enabled "
            f"(every {int(settings.RECOVERY_INTERVAL_MINUTES)} min)."
        )
    yield
    # Shutdown
    if recovery_task is not None:
        recovery_task.cancel()
        try:
            await recovery_task
        except asyncio.CancelledError:
            pass
    await app.state.providers.aclose()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Credit Engine API",
    description="Idempotent credit accounting for paid generation jobs and subscriptions",
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


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    logger.info("Rejected %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=422, content={"detail": str(exc)})


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(auth.router, prefix="/auth", tags=["Authentication"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(generation.router, prefix="/generation", tags=["Generation"])
app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Credit Engine API",
        "version": "0.1.0",
        "status": "running"
    }
