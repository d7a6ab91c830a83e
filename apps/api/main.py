"""
Workout Session Coordination - FastAPI Backend
Main application entry point with health check and API routing.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import blobs, health, live, partner, quiz, reels, videos, workouts
from services.live_session import cleanup_stale_live_sessions
from services.partner_session import cleanup_stale_partner_sessions
from services.runtime import CoachRuntime


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Workout Session Coordination API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    runtime = await CoachRuntime().init()
    app.state.runtime = runtime
    if runtime.store.change_feed_connected:
        print("📡 Document change feed connected.")
    try:
        closed_live = await cleanup_stale_live_sessions(runtime.store)
        closed_partner = await cleanup_stale_partner_sessions(runtime.store)
        if closed_live or closed_partner:
            print(f"♻️ Closed {len(closed_live)} stale live and {len(closed_partner)} stale partner sessions.")
    except Exception as exc:
        print(f"⚠️ Stale session sweep skipped: {exc}")
    yield
    # Shutdown
    await runtime.shutdown()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Workout Session Coordination API",
    description="Live broadcasts, partner workouts and community reels for the fitness app",
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
app.include_router(live.router, prefix="/live", tags=["Live"])
app.include_router(partner.router, prefix="/partner", tags=["Partner"])
app.include_router(reels.router, prefix="/reels", tags=["Reels"])
app.include_router(videos.router, prefix="/videos", tags=["Videos"])
app.include_router(workouts.router, prefix="/workouts", tags=["Workouts"])
app.include_router(quiz.router, prefix="/quiz", tags=["Quiz"])
app.include_router(blobs.router, prefix="/blobs", tags=["Blobs"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Workout Session Coordination API",
        "version": "0.1.0",
        "status": "running"
    }
