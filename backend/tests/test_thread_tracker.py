"""
Unit tests for the thread tracker service.

The Supabase client is a MagicMock; query chains are configured per test.
"""

import re

import pytest
from unittest.mock import MagicMock, Mock, patch

from app.models.email import CreateThreadParams, EmailThread
from app.services.thread_tracker import THREAD_TABLE, ThreadTracker


def _row(**overrides) -> dict:
    row = {
        "id": "row-1",
        "user_id": "user-1",
        "message_id": "<m1@example.com>",
        "thread_id": "1a2b3c4d",
        "in_reply_to": None,
        "subject": "Groceries",
        "from_address": "alice@example.com",
        "conversation_id": "conv-1",
        "created_at": "2024-01-15T10:00:00+00:00",
    }
    row.update(overrides)
    return row


@pytest.fixture
def db():
    return MagicMock()


# ---------------------------------------------------------------------------
# Token helpers
# ---------------------------------------------------------------------------

class TestThreadIdHelpers:
    def test_generate_is_eight_lowercase_hex(self):
        thread_id = ThreadTracker.generate_thread_id()

        assert re.fullmatch(r"[a-f0-9]{8}", thread_id)

    def test_generated_ids_are_distinct(self):
        ids = {ThreadTracker.generate_thread_id() for _ in range(100)}

        assert len(ids) == 100

    def test_format_then_extract_round_trip(self):
        from app.services.email_parser import EmailParser

        thread_id = ThreadTracker.generate_thread_id()

        assert EmailParser().extract_thread_id(ThreadTracker.format_thread_id(thread_id), "") == thread_id

    def test_format_thread_id(self):
        assert ThreadTracker.format_thread_id("1a2b3c4d") == "[SB-1a2b3c4d]"


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

class TestCreateThread:
    def test_inserts_row_and_returns_model(self, db):
        db.table.return_value.insert.return_value.execute.return_value = Mock(data=[_row()])
        tracker = ThreadTracker(db)

        thread = tracker.create_thread(
            CreateThreadParams(
                message_id="<m1@example.com>",
                thread_id="1a2b3c4d",
                subject="Groceries",
                from_address="alice@example.com",
                conversation_id="conv-1",
                user_id="user-1",
            )
        )

        assert isinstance(thread, EmailThread)
        assert thread.conversation_id == "conv-1"
        db.table.assert_called_with(THREAD_TABLE)
        inserted = db.table.return_value.insert.call_args[0][0]
        assert inserted["message_id"] == "<m1@example.com>"
        assert inserted["thread_id"] == "1a2b3c4d"
        assert inserted["user_id"] == "user-1"
        assert inserted["created_at"]

    def test_empty_insert_result_raises(self, db):
        db.table.return_value.insert.return_value.execute.return_value = Mock(data=[])
        tracker = ThreadTracker(db)

        with pytest.raises(ValueError):
            tracker.create_thread(
                CreateThreadParams(
                    message_id="<m1@example.com>",
                    thread_id="1a2b3c4d",
                    subject="s",
                    from_address="a@b.c",
                    conversation_id="conv-1",
                )
            )

    def test_missing_database_raises(self):
        with patch("app.services.thread_tracker.get_supabase_admin", return_value=None):
            tracker = ThreadTracker()

            with pytest.raises(ValueError):
                tracker.get_by_message_id("<m1@example.com>")


class TestFindByThreadId:
    def test_returns_most_recent_row(self, db):
        chain = db.table.return_value.select.return_value.eq.return_value
        chain.order.return_value.limit.return_value.execute.return_value = Mock(data=[_row()])
        tracker = ThreadTracker(db)

        thread = tracker.find_by_thread_id("1a2b3c4d")

        assert thread.thread_id == "1a2b3c4d"
        chain.order.assert_called_once_with("created_at", desc=True)

    def test_scoped_to_user(self, db):
        chain = db.table.return_value.select.return_value.eq.return_value.eq.return_value
        chain.order.return_value.limit.return_value.execute.return_value = Mock(data=[_row()])
        tracker = ThreadTracker(db)

        tracker.find_by_thread_id("1a2b3c4d", user_id="user-1")

        db.table.return_value.select.return_value.eq.return_value.eq.assert_called_once_with("user_id", "user-1")

    def test_unknown_thread_returns_none(self, db):
        chain = db.table.return_value.select.return_value.eq.return_value
        chain.order.return_value.limit.return_value.execute.return_value = Mock(data=[])

        assert ThreadTracker(db).find_by_thread_id("ffffffff") is None


class TestFindConversation:
    def test_returns_conversation_id(self, db):
        chain = db.table.return_value.select.return_value.eq.return_value
        chain.order.return_value.limit.return_value.execute.return_value = Mock(
            data=[_row(conversation_id="conv-42")]
        )

        assert ThreadTracker(db).find_conversation("1a2b3c4d") == "conv-42"

    def test_unknown_thread_returns_none(self, db):
        chain = db.table.return_value.select.return_value.eq.return_value
        chain.order.return_value.limit.return_value.execute.return_value = Mock(data=[])

        assert ThreadTracker(db).find_conversation("ffffffff") is None


class TestGetByMessageId:
    def test_known_message(self, db):
        chain = db.table.return_value.select.return_value.eq.return_value
        chain.limit.return_value.execute.return_value = Mock(data=[_row()])

        thread = ThreadTracker(db).get_by_message_id("<m1@example.com>")

        assert thread.message_id == "<m1@example.com>"
        db.table.return_value.select.return_value.eq.assert_called_once_with("message_id", "<m1@example.com>")

    def test_unknown_message(self, db):
        chain = db.table.return_value.select.return_value.eq.return_value
        chain.limit.return_value.execute.return_value = Mock(data=[])

        assert ThreadTracker(db).get_by_message_id("<new@example.com>") is None
