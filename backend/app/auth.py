"""
Authentication dependency for Supabase JWT verification.

get_current_user verifies JWTs locally with python-jose when
SUPABASE_JWT_SECRET is set, and otherwise asks the Supabase Auth API.
"""

import os
from typing import Optional

from fastapi import Header, HTTPException

from app.db import get_supabase

# Set SUPABASE_JWT_SECRET in your environment (Project Settings > API > JWT Secret).
# When not set the implementation falls back to the Supabase Auth API.
SUPABASE_JWT_SECRET: Optional[str] = os.environ.get("SUPABASE_JWT_SECRET") or None


async def get_current_user(authorization: Optional[str] = Header(None)) -> str:
    """
    Extract and verify the JWT from the Authorization header.

    Args:
        authorization: Authorization header with format "Bearer <token>"

    Returns:
        user_id: Authenticated user's ID (the JWT ``sub`` claim)

    Raises:
        HTTPException: 401 if token is missing, invalid, or expired
    """
    if not authorization:
        raise HTTPException(status_code=401, detail="Not authenticated")

    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer":
        raise HTTPException(status_code=401, detail="Invalid authentication credentials")

    token = parts[1]

    if SUPABASE_JWT_SECRET:
        return _verify_jwt_locally(token)

    return await _verify_jwt_remotely(token)


def _verify_jwt_locally(token: str) -> str:
    """
    Verify a Supabase HS256 JWT with python-jose and return the user ID.

    Raises:
        HTTPException 401 on any verification failure.
    """
    from jose import ExpiredSignatureError, JWTError, jwt

    try:
        payload = jwt.decode(
            token,
            SUPABASE_JWT_SECRET,
            algorithms=["HS256"],
            options={"verify_aud": False},  # Supabase tokens carry aud="authenticated"
        )
    except ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id: Optional[str] = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")

    return user_id


async def _verify_jwt_remotely(token: str) -> str:
    """Verify a JWT via the Supabase Auth API."""
    client = get_supabase()
    if client is None:
        raise HTTPException(status_code=401, detail="Authentication is not configured")

    try:
        response = client.auth.get_user(token)
    except Exception as e:
        if "expired" in str(e).lower():
            raise HTTPException(status_code=401, detail="Token expired")
        raise HTTPException(status_code=401, detail="Invalid token")

    if not response or not response.user:
        raise HTTPException(status_code=401, detail="Invalid token")

    return response.user.id
