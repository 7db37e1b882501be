"""
Advisor Agent - Main Application Entry Point
"""

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from app.agent.dispatcher import EventDispatcher
from app.agent.poll_scheduler import PollScheduler
from app.agent.structured_logging import configure_logging
from app.agent.tool_definitions import CATALOG_VERSION
from app.api import (
    instructions_router,
    notifications_router,
    tasks_router,
    proactive_router,
    webhooks_router,
)
from app.config import settings
from app.db import async_session_maker, init_db
from app.services.notification_service import NotificationSink
from app.services.openai_agent_service import get_openai_agent_service

logger = logging.getLogger(__name__)

APP_VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler - runs on startup and shutdown"""
    configure_logging(settings.log_level, settings.log_json)
    app.state.started_at = time.time()

    logger.info(f"{settings.app_name} starting up...")
    await init_db()
    logger.info("Database initialized")

    notifier = NotificationSink(async_session_maker)
    dispatcher = EventDispatcher(
        session_factory=async_session_maker,
        oracle=get_openai_agent_service(),
        notifier=notifier,
    )
    app.state.dispatcher = dispatcher

    scheduler = None
    if settings.poll_enabled:
        try:
            scheduler = PollScheduler(dispatcher)
            scheduler.start()
        except Exception as e:
            logger.error(f"Could not start poll scheduler: {e}")
            scheduler = None
    app.state.scheduler = scheduler

    yield

    if scheduler is not None:
        await scheduler.stop()
    await notifier.flush()
    logger.info(f"{settings.app_name} shutdown complete.")


app = FastAPI(
    title=settings.app_name,
    description="Proactive agent that runs standing instructions against Gmail, Google Calendar and HubSpot",
    version=APP_VERSION,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(instructions_router, prefix=settings.api_prefix)
app.include_router(notifications_router, prefix=settings.api_prefix)
app.include_router(tasks_router, prefix=settings.api_prefix)
app.include_router(proactive_router, prefix=settings.api_prefix)
app.include_router(webhooks_router, prefix=settings.api_prefix)


@app.get("/health")
async def health():
    """Health check: database connectivity and scheduler state."""
    db_status = "connected"
    try:
        async with async_session_maker() as db:
            await db.execute(text("SELECT 1"))
    except Exception as e:
        db_status = f"error: {e}"

    started_at = getattr(app.state, "started_at", None)
    scheduler = getattr(app.state, "scheduler", None)
    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "version": APP_VERSION,
        "uptime_seconds": round(time.time() - started_at, 1) if started_at else 0,
        "database": db_status,
        "agent_model": settings.agent_model,
        "tool_catalog_version": CATALOG_VERSION,
        "scheduler": {
            "running": bool(scheduler and scheduler.running),
            "ticks_run": scheduler.ticks_run if scheduler else 0,
            "ticks_skipped": scheduler.ticks_skipped if scheduler else 0,
        },
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
