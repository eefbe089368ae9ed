"""
Vidya — Main FastAPI Application

Publication & engagement core of the educational video site.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app

from app.core.config import get_settings
from app.core.database import init_db
from app.core.errors import register_error_handlers

settings = get_settings()

# ── Logging ──────────────────────────────────────────────────────────────

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        logging.getLevelName(settings.log_level)
    ),
)
logging.basicConfig(level=settings.log_level)

logger = structlog.get_logger()


# ── Lifespan ─────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Vidya", version=settings.app_version)
    await init_db()
    logger.info("Vidya ready", api_prefix=settings.api_prefix)

    yield

    # Flush queued notifications before the loop goes away
    from app.services.notifications.notification_service import notification_dispatcher
    await notification_dispatcher.stop()
    logger.info("Shutting down Vidya", **notification_dispatcher.get_stats())


# ── App ──────────────────────────────────────────────────────────────────

app = FastAPI(
    title="Vidya",
    description="Moderated publishing, engagement and realtime notifications for educational videos",
    version=settings.app_version,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

# Prometheus metrics
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

# ── Routes ───────────────────────────────────────────────────────────────

from app.api.routes import comments, engagement, moderation, notifications, uploads, videos, websocket

app.include_router(videos.router, prefix=settings.api_prefix)
app.include_router(moderation.router, prefix=settings.api_prefix)
app.include_router(engagement.router, prefix=settings.api_prefix)
app.include_router(notifications.router, prefix=settings.api_prefix)
app.include_router(comments.router, prefix=settings.api_prefix)
app.include_router(uploads.router, prefix=settings.api_prefix)
app.include_router(websocket.router, prefix=settings.api_prefix)


@app.get("/")
async def root():
    return {
        "name": settings.app_name,
        "description": "Educational video publishing core",
        "version": settings.app_version,
        "features": [
            "moderation_queue", "engagement_ledger",
            "notification_fanout", "realtime_sync",
        ],
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    return {"status": "healthy", "version": settings.app_version}
