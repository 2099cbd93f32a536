"""
Thread tracker service.

Binds separate email exchanges into one conversation. Every outbound reply
carries an "[SB-xxxxxxxx]" marker (8 lowercase hex chars) in its subject and
body footer; when the user replies, the marker maps the new message back to
the conversation it continues.

Rows live in the email_threads table:

  id, user_id, message_id (unique), thread_id, in_reply_to, subject,
  from_address, conversation_id, created_at

get_by_message_id doubles as the poller's duplicate check: a Message-ID
that already has a row has been processed before.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from app.db import get_supabase_admin
from app.models.email import CreateThreadParams, EmailThread

logger = logging.getLogger(__name__)

THREAD_TABLE = "email_threads"
THREAD_ID_LENGTH = 8


class ThreadTracker:
    def __init__(self, db: Optional[Any] = None):
        self._db = db

    # ------------------------------------------------------------------
    # Token algorithm (no persistence)
    # ------------------------------------------------------------------

    @staticmethod
    def generate_thread_id() -> str:
        """First 8 hex chars of a random UUID4."""
        return uuid.uuid4().hex[:THREAD_ID_LENGTH]

    @staticmethod
    def format_thread_id(thread_id: str) -> str:
        return f"[SB-{thread_id}]"

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _client(self) -> Any:
        db = self._db or get_supabase_admin()
        if db is None:
            raise ValueError("SUPABASE_SERVICE_KEY is required for email thread tracking")
        return db

    def create_thread(self, params: CreateThreadParams) -> EmailThread:
        """Insert an email_threads row and return it."""
        row = {
            "id": str(uuid.uuid4()),
            "user_id": params.user_id,
            "message_id": params.message_id,
            "thread_id": params.thread_id,
            "in_reply_to": params.in_reply_to,
            "subject": params.subject,
            "from_address": params.from_address,
            "conversation_id": params.conversation_id,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        result = self._client().table(THREAD_TABLE).insert(row).execute()
        if not result.data:
            raise ValueError(f"email_threads insert returned no data for {params.message_id!r}")
        return EmailThread(**result.data[0])

    def find_by_thread_id(self, thread_id: str, user_id: Optional[str] = None) -> Optional[EmailThread]:
        """Most recent row carrying thread_id, or None."""
        query = self._client().table(THREAD_TABLE).select("*").eq("thread_id", thread_id)
        if user_id:
            query = query.eq("user_id", user_id)
        result = query.order("created_at", desc=True).limit(1).execute()
        if not result.data:
            return None
        return EmailThread(**result.data[0])

    def find_conversation(self, thread_id: str, user_id: Optional[str] = None) -> Optional[str]:
        """Conversation id linked to thread_id, or None for an unknown thread."""
        thread = self.find_by_thread_id(thread_id, user_id)
        return thread.conversation_id if thread else None

    def get_by_message_id(self, message_id: str, user_id: Optional[str] = None) -> Optional[EmailThread]:
        """Row recorded for this Message-ID, or None if it has never been seen."""
        query = self._client().table(THREAD_TABLE).select("*").eq("message_id", message_id)
        if user_id:
            query = query.eq("user_id", user_id)
        result = query.limit(1).execute()
        if not result.data:
            return None
        return EmailThread(**result.data[0])
