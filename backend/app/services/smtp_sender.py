"""
SMTP sender service.

Delivers outbound email and, for replies, sets the RFC 5322 threading
headers (In-Reply-To, References) so mail clients group the reply with the
message it answers.

Transport selection
-------------------
secure=True   implicit TLS from the first byte (smtplib.SMTP_SSL, port 465)
secure=False  plain connect, then STARTTLS when the server offers it
              (smtplib.SMTP, port 587)

Nothing here raises to callers. An unconfigured transport, a network error
or an auth failure all come back as SendEmailResult(success=False, error=...).
"""

import logging
import smtplib
import ssl
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from typing import Optional

from app.config import EmailConfig, SmtpConfig, get_email_config
from app.models.email import SendEmailOptions, SendEmailResult

logger = logging.getLogger(__name__)

# Connect/auth timeout for verify(); sends get a little longer for the DATA phase
VERIFY_TIMEOUT_SECONDS = 10
SEND_TIMEOUT_SECONDS = 30

NOT_CONFIGURED_ERROR = "SMTP not configured"


class SmtpSendError(Exception):
    """Internal wrapper for smtplib failures; converted to a result, never raised."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"SMTP send failed: {reason}")


class SmtpSender:
    def __init__(self, config: Optional[EmailConfig] = None):
        config = config or get_email_config()
        self._smtp: Optional[SmtpConfig] = config.smtp
        if self._smtp is None:
            logger.warning("SmtpSender: SMTP not configured, email sending disabled")

    def is_available(self) -> bool:
        return self._smtp is not None

    def verify(self) -> dict:
        """
        Connect and authenticate without sending anything.

        Returns {"success": True} or {"success": False, "error": "..."}.
        """
        if self._smtp is None:
            return {"success": False, "error": NOT_CONFIGURED_ERROR}
        try:
            with self._connect(VERIFY_TIMEOUT_SECONDS) as server:
                server.noop()
            return {"success": True}
        except Exception as e:
            logger.error(f"SmtpSender: verify failed: {e}")
            return {"success": False, "error": str(e)}

    def send_email(self, options: SendEmailOptions) -> SendEmailResult:
        """Send one message. Never raises."""
        if self._smtp is None:
            logger.warning("SmtpSender: Cannot send email - SMTP not available")
            return SendEmailResult(success=False, error=NOT_CONFIGURED_ERROR)

        try:
            message = self._build_message(options)
        except ValueError as e:
            logger.error(f"SmtpSender: Invalid message for {options.to!r}: {e}")
            return SendEmailResult(success=False, error=f"Invalid message: {e}")

        try:
            self._deliver(message)
        except SmtpSendError as e:
            logger.error(
                f"SmtpSender: Failed to send email to {options.to!r} "
                f"(subject {options.subject!r}): {e}"
            )
            return SendEmailResult(success=False, error=e.reason)

        logger.info(f"SmtpSender: Sent {message['Message-ID']} to {options.to}")
        return SendEmailResult(success=True, message_id=message["Message-ID"])

    def send_reply(
        self,
        to: str,
        subject: str,
        text: str,
        original_message_id: str,
        references: Optional[list[str]] = None,
        html: Optional[str] = None,
    ) -> SendEmailResult:
        """
        Send a reply threaded under original_message_id.

        In-Reply-To is the original id; References is the existing chain
        with the original id appended once (never duplicated).
        """
        all_references = list(references or [])
        if original_message_id not in all_references:
            all_references.append(original_message_id)

        return self.send_email(
            SendEmailOptions(
                to=to,
                subject=subject,
                text=text,
                html=html,
                in_reply_to=original_message_id,
                references=all_references,
            )
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _build_message(self, options: SendEmailOptions) -> EmailMessage:
        sender = self._smtp.user
        domain = sender.partition("@")[2] or None

        message = EmailMessage()
        message["From"] = sender
        message["To"] = options.to
        message["Subject"] = options.subject
        message["Date"] = formatdate(localtime=True)
        message["Message-ID"] = make_msgid(domain=domain)
        if options.in_reply_to:
            message["In-Reply-To"] = options.in_reply_to
        if options.references:
            message["References"] = " ".join(options.references)

        message.set_content(options.text)
        if options.html:
            message.add_alternative(options.html, subtype="html")
        return message

    def _connect(self, timeout: int) -> smtplib.SMTP:
        """Open an authenticated connection using the configured TLS mode."""
        smtp = self._smtp
        context = ssl.create_default_context()
        if smtp.secure:
            server = smtplib.SMTP_SSL(smtp.host, smtp.port, timeout=timeout, context=context)
        else:
            server = smtplib.SMTP(smtp.host, smtp.port, timeout=timeout)
            server.ehlo()
            if server.has_extn("starttls"):
                server.starttls(context=context)
                server.ehlo()
        try:
            server.login(smtp.user, smtp.password)
        except Exception:
            server.close()
            raise
        return server

    def _deliver(self, message: EmailMessage) -> None:
        try:
            with self._connect(SEND_TIMEOUT_SECONDS) as server:
                server.send_message(message)
        except (smtplib.SMTPException, OSError, ValueError) as e:
            # ValueError covers non-ASCII credentials rejected by AUTH
            raise SmtpSendError(str(e) or type(e).__name__) from e
