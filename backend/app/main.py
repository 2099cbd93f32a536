"""
Mail Capture Backend API
FastAPI application hosting the email capture channel.
"""

import logging
import os
from typing import List

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from app.channel import build_email_channel
from app.db import get_supabase_admin
from app.routers import email
from app.services.thread_tracker import THREAD_TABLE

# Configure logging to output to console
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Mail Capture API",
    description="Email capture channel: inbound polling, confirmations and digests",
    version="0.1.0",
)


def get_cors_origins() -> List[str]:
    """
    Build the list of allowed CORS origins.

    Always includes http://localhost:3000. Additional origins are read from
    the CORS_ORIGINS environment variable as a comma-separated list.
    Duplicates are removed while preserving order.
    """
    origins: List[str] = ["http://localhost:3000"]
    cors_env = os.getenv("CORS_ORIGINS", "").strip()
    for origin in cors_env.split(","):
        origin = origin.strip()
        if origin and origin not in origins:
            origins.append(origin)
    return origins


app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(email.router, prefix="/api/email", tags=["email"])


@app.on_event("startup")
async def start_email_channel() -> None:
    channel = build_email_channel()
    app.state.email = channel
    if channel.config.imap is not None:
        channel.service.start_polling()
    else:
        logger.info("Inbound email not configured, poller not started")


@app.on_event("shutdown")
async def stop_email_channel() -> None:
    channel = getattr(app.state, "email", None)
    if channel is not None:
        channel.service.stop_polling()


@app.get("/")
async def root():
    return {"message": "Mail Capture API", "version": "0.1.0"}


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/health/db")
async def health_db():
    """
    Test the Supabase database connection.

    Reads one row from email_threads to verify that the admin client can
    reach the database. Returns 503 on failure.
    """
    client = get_supabase_admin()
    if client is None:
        raise HTTPException(
            status_code=503,
            detail="Database client unavailable: SUPABASE_SERVICE_KEY is not configured",
        )

    try:
        client.table(THREAD_TABLE).select("id").limit(1).execute()
        return {"status": "ok", "database": "reachable"}
    except Exception as exc:
        logger.error(f"Database health check failed: {exc}")
        raise HTTPException(
            status_code=503,
            detail=f"Database connection failed: {str(exc)}",
        )


@app.get("/health/email")
def health_email():
    """Connect-and-authenticate check against both mail transports."""
    channel = getattr(app.state, "email", None)
    if channel is None:
        raise HTTPException(status_code=503, detail="Email channel is not initialised")

    return {
        "smtp": channel.smtp_sender.verify(),
        "imap": channel.poller.test_connection(),
    }
