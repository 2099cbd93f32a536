"""
Email channel router.

Endpoints:
  GET  /status           - transport configuration and poller state (no auth)
  GET  /inbound-address  - the caller's personal capture address (auth: JWT)
  POST /poll             - run one poll cycle now (auth: JWT)
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from app.auth import get_current_user
from app.channel import EmailChannel
from app.config import get_inbound_email_address
from app.models.email import PollResult

logger = logging.getLogger(__name__)

router = APIRouter()


def get_email_channel(request: Request) -> EmailChannel:
    channel = getattr(request.app.state, "email", None)
    if channel is None:
        raise HTTPException(status_code=503, detail="Email channel is not initialised")
    return channel


@router.get("/status")
async def get_status(channel: EmailChannel = Depends(get_email_channel)) -> dict:
    return channel.status()


@router.get("/inbound-address")
async def get_inbound_address(
    user_id: str = Depends(get_current_user),
    channel: EmailChannel = Depends(get_email_channel),
) -> dict:
    """
    Return the caller's routing address, e.g. capture+a3f2e1@example.com.

    A code is assigned on first request if the user doesn't have one yet.
    When inbound email is not configured the address is null.
    """
    if channel.config.imap is None:
        return {"inbound_address": None, "enabled": False}

    code = channel.user_directory.ensure_inbound_code(user_id)
    if code is None:
        raise HTTPException(status_code=404, detail="User not found")

    return {
        "inbound_address": get_inbound_email_address(code, channel.config),
        "enabled": channel.config.enabled,
    }


@router.post("/poll")
def poll_now(
    user_id: str = Depends(get_current_user),
    channel: EmailChannel = Depends(get_email_channel),
) -> PollResult:
    if channel.config.imap is None:
        raise HTTPException(status_code=503, detail="Inbound email is not configured")

    logger.info(f"Manual poll requested by user {user_id}")
    return channel.service.poll_now()
