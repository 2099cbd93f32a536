"""
User directory: resolves per-user routing codes.

Each user gets a 6-char lowercase hex inbound code at provisioning time,
stored in users.inbound_email_code (unique). Mail sent to
"capture+{code}@domain" is routed to that user.
"""

import logging
import re
import secrets
from typing import Any, Optional

from app.db import get_supabase_admin
from app.models.email import EmailAddress

logger = logging.getLogger(__name__)

USERS_TABLE = "users"
ROUTING_CODE_PATTERN = re.compile(r"\+([a-f0-9]{6})@", re.IGNORECASE)


def extract_recipient_code(recipients: list[EmailAddress]) -> Optional[str]:
    """
    Return the first "+{6 hex}@" routing code found across recipients.

    "user+a3f2e1@example.com" -> "a3f2e1"; no match anywhere -> None.
    """
    for recipient in recipients:
        match = ROUTING_CODE_PATTERN.search(recipient.address)
        if match:
            return match.group(1).lower()
    return None


def generate_inbound_email_code() -> str:
    return secrets.token_hex(3)


class UserDirectory:
    def __init__(self, db: Optional[Any] = None):
        self._db = db

    def get_user_by_inbound_code(self, code: str) -> Optional[dict]:
        """
        Find the user owning an inbound code.

        Returns the user row (id, email, inbound_email_code) or None. Lookup
        errors are logged and treated as "not found".
        """
        db = self._db or get_supabase_admin()
        if db is None:
            logger.warning("UserDirectory: database not configured, cannot resolve routing codes")
            return None
        try:
            result = (
                db.table(USERS_TABLE)
                .select("id, email, inbound_email_code")
                .eq("inbound_email_code", code.lower())
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.warning(f"Failed to look up user by inbound code {code!r}: {e}")
            return None
        return result.data[0] if result.data else None

    def get_user_by_id(self, user_id: str) -> Optional[dict]:
        db = self._db or get_supabase_admin()
        if db is None:
            return None
        try:
            result = (
                db.table(USERS_TABLE)
                .select("id, email, inbound_email_code")
                .eq("id", user_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.warning(f"Failed to fetch user {user_id!r}: {e}")
            return None
        return result.data[0] if result.data else None

    def ensure_inbound_code(self, user_id: str) -> Optional[str]:
        """
        Return the user's inbound code, assigning a fresh one if they have none.

        Returns None when the user doesn't exist or the database is unavailable.
        """
        user = self.get_user_by_id(user_id)
        if user is None:
            return None
        if user.get("inbound_email_code"):
            return user["inbound_email_code"]

        code = generate_inbound_email_code()
        db = self._db or get_supabase_admin()
        try:
            db.table(USERS_TABLE).update({"inbound_email_code": code}).eq("id", user_id).execute()
        except Exception as e:
            logger.error(f"Failed to assign inbound code to user {user_id!r}: {e}")
            return None
        logger.info(f"Assigned inbound code to user {user_id}")
        return code
