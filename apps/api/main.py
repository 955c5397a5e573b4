"""
ATS Resume Tailor - FastAPI Backend
Main application entry point with health check and API routing.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    onboarding,
    credits,
    billing,
    jobs,
)
from services.errors import PipelineError
from services.generation import expire_stalled_generation_jobs

logger = logging.getLogger(__name__)


async def _periodic_generation_sweep() -> None:
    interval_seconds = max(int(settings.GENERATION_SWEEP_INTERVAL_SECONDS), 0)
    if interval_seconds <= 0:
        return
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            expired = await expire_stalled_generation_jobs()
            if expired:
                logger.info("Generation sweep expired %d stalled jobs", expired)
        except Exception:
            logger.exception("Generation sweep tick failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting ATS Resume Tailor API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        expired = await expire_stalled_generation_jobs()
        if expired:
            print(f"♻️ Expired {expired} stalled generation jobs after startup.")
    except Exception as exc:
        print(f"⚠️ Stalled generation recovery skipped: {exc}")
    sweep_task = None
    if int(settings.GENERATION_SWEEP_INTERVAL_SECONDS) > 0:
        sweep_task = asyncio.create_task(_periodic_generation_sweep())
        print(
            "📅 Generation sweep loop enabled "
            f"(every {int(settings.GENERATION_SWEEP_INTERVAL_SECONDS)} s)."
        )
    yield
    # Shutdown
    if sweep_task is not None:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="ATS Resume Tailor API",
    description="Tailor resumes to job descriptions with credit-gated background generation",
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


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "code": exc.code},
    )


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(onboarding.router, prefix="/sessions", tags=["Onboarding"])
app.include_router(credits.router, prefix="/credits", tags=["Credits"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(jobs.router, prefix="/jobs", tags=["Jobs"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "ATS Resume Tailor API",
        "version": "0.1.0",
        "status": "running"
    }
