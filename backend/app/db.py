"""
Database client configuration.
Uses Supabase for PostgreSQL + Auth.

Clients are created on first use so that a missing configuration degrades
the features that need the database instead of failing at import time.
"""

import logging
import os
from typing import Optional

from dotenv import load_dotenv
from supabase import Client, create_client

load_dotenv()

logger = logging.getLogger(__name__)

_supabase: Optional[Client] = None
_supabase_admin: Optional[Client] = None


def get_supabase() -> Optional[Client]:
    """Client for user-level operations (anon key + RLS). None if unconfigured."""
    global _supabase
    if _supabase is None:
        url = os.getenv("SUPABASE_URL")
        key = os.getenv("SUPABASE_KEY")
        if not url or not key:
            logger.warning("SUPABASE_URL / SUPABASE_KEY not set, user client unavailable")
            return None
        _supabase = create_client(url, key)
    return _supabase


def get_supabase_admin() -> Optional[Client]:
    """Admin client for service-level operations (bypasses RLS). None if unconfigured."""
    global _supabase_admin
    if _supabase_admin is None:
        url = os.getenv("SUPABASE_URL")
        key = os.getenv("SUPABASE_SERVICE_KEY")
        if not url or not key:
            logger.warning("SUPABASE_URL / SUPABASE_SERVICE_KEY not set, admin client unavailable")
            return None
        _supabase_admin = create_client(url, key)
    return _supabase_admin
