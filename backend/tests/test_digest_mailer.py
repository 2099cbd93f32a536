"""
Unit tests for the digest mailer service.
"""

from datetime import date, datetime

import pytest
from unittest.mock import MagicMock

from app.config import EmailConfig
from app.models.email import SendEmailResult
from app.services.digest_mailer import DigestMailer


@pytest.fixture
def smtp_sender():
    sender = MagicMock()
    sender.is_available.return_value = True
    sender.send_email.return_value = SendEmailResult(success=True, message_id="<d@example.com>")
    return sender


def _enabled() -> EmailConfig:
    return EmailConfig(enabled=True)


class TestSubjects:
    def test_daily_subject(self):
        subject = DigestMailer.format_daily_subject(date(2024, 1, 15))

        assert subject == "JustDo.so Daily Digest - Monday, January 15"

    def test_weekly_subject(self):
        subject = DigestMailer.format_weekly_subject(date(2024, 1, 8), date(2024, 1, 15))

        assert subject == "JustDo.so Weekly Review - Jan 8 to Jan 15"


class TestAvailability:
    def test_requires_enabled_config(self, smtp_sender):
        assert DigestMailer(smtp_sender, EmailConfig(enabled=False)).is_available() is False

    def test_requires_smtp(self, smtp_sender):
        smtp_sender.is_available.return_value = False

        assert DigestMailer(smtp_sender, _enabled()).is_available() is False

    def test_available(self, smtp_sender):
        assert DigestMailer(smtp_sender, _enabled()).is_available() is True


class TestSendDailyDigest:
    def test_sends_new_thread(self, smtp_sender):
        result = DigestMailer(smtp_sender, _enabled()).send_daily_digest("alice@example.com", "Top 3 today")

        assert result.success is True
        assert result.skipped is False
        assert result.message_id == "<d@example.com>"
        options = smtp_sender.send_email.call_args[0][0]
        assert options.to == "alice@example.com"
        assert options.subject.startswith("JustDo.so Daily Digest - ")
        assert options.text == "Top 3 today"
        assert options.in_reply_to is None
        assert options.references is None
        smtp_sender.send_reply.assert_not_called()

    def test_skipped_when_disabled(self, smtp_sender):
        result = DigestMailer(smtp_sender, EmailConfig()).send_daily_digest("alice@example.com", "x")

        assert result.success is True
        assert result.skipped is True
        smtp_sender.send_email.assert_not_called()

    def test_failure_propagates_error(self, smtp_sender):
        smtp_sender.send_email.return_value = SendEmailResult(success=False, error="timeout")

        result = DigestMailer(smtp_sender, _enabled()).send_daily_digest("alice@example.com", "x")

        assert result.success is False
        assert result.error == "timeout"
        assert result.skipped is False


class TestSendWeeklyReview:
    def test_explicit_window(self, smtp_sender):
        DigestMailer(smtp_sender, _enabled()).send_weekly_review(
            "alice@example.com",
            "Week summary",
            start=datetime(2024, 1, 8),
            end=datetime(2024, 1, 15),
        )

        options = smtp_sender.send_email.call_args[0][0]
        assert options.subject == "JustDo.so Weekly Review - Jan 8 to Jan 15"

    def test_default_window_is_seven_days(self, smtp_sender):
        DigestMailer(smtp_sender, _enabled()).send_weekly_review(
            "alice@example.com", "Week summary", end=datetime(2024, 3, 10)
        )

        options = smtp_sender.send_email.call_args[0][0]
        assert options.subject == "JustDo.so Weekly Review - Mar 3 to Mar 10"

    def test_skipped_when_disabled(self, smtp_sender):
        result = DigestMailer(smtp_sender, EmailConfig()).send_weekly_review("alice@example.com", "x")

        assert result.skipped is True
        smtp_sender.send_email.assert_not_called()
