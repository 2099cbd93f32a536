"""
Digest mailer service.

Delivery sink for the digest generator: takes already-formatted digest or
weekly review text and sends it as a brand new thread (no In-Reply-To or
References). When email is disabled the send is skipped and reported as
success so scheduled digest jobs don't register failures.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Optional

from app.config import EmailConfig, get_email_config
from app.models.email import DigestEmailResult, SendEmailOptions
from app.services.smtp_sender import SmtpSender

logger = logging.getLogger(__name__)

PRODUCT_NAME = "JustDo.so"
WEEKLY_WINDOW_DAYS = 7


def _month_day(d: date) -> str:
    return f"{d.strftime('%b')} {d.day}"


class DigestMailer:
    def __init__(self, smtp_sender: SmtpSender, config: Optional[EmailConfig] = None):
        self._smtp_sender = smtp_sender
        self._config = config or get_email_config()

    def is_available(self) -> bool:
        return self._config.enabled and self._smtp_sender.is_available()

    @staticmethod
    def format_daily_subject(today: Optional[date] = None) -> str:
        today = today or date.today()
        return f"{PRODUCT_NAME} Daily Digest - {today.strftime('%A, %B')} {today.day}"

    @staticmethod
    def format_weekly_subject(start: date, end: date) -> str:
        return f"{PRODUCT_NAME} Weekly Review - {_month_day(start)} to {_month_day(end)}"

    def send_daily_digest(self, to: str, content: str) -> DigestEmailResult:
        return self._send(to, self.format_daily_subject(), content)

    def send_weekly_review(
        self,
        to: str,
        content: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> DigestEmailResult:
        end = end or datetime.now()
        start = start or end - timedelta(days=WEEKLY_WINDOW_DAYS)
        return self._send(to, self.format_weekly_subject(start, end), content)

    def _send(self, to: str, subject: str, content: str) -> DigestEmailResult:
        if not self.is_available():
            logger.info(f"DigestMailer: email disabled, skipping {subject!r}")
            return DigestEmailResult(success=True, skipped=True)

        result = self._smtp_sender.send_email(
            SendEmailOptions(to=to, subject=subject, text=content)
        )
        return DigestEmailResult(
            success=result.success,
            message_id=result.message_id,
            error=result.error,
        )
