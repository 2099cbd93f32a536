"""
Confirmation sender service.

Composes the replies the capture channel sends back to the user:

  confirmation     - after an entry is stored: name, category, confidence,
                     reclassify instructions when confidence is low, and the
                     thread marker in both subject and footer
  routing failure  - when the recipient address carries no valid personal
                     routing code

Both go out through SmtpSender.send_reply so they thread under the
user's original message.
"""

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from app.models.email import ConfirmationEntry, FormattedEmail, SendEmailResult
from app.services.smtp_sender import SmtpSender
from app.services.thread_tracker import ThreadTracker

logger = logging.getLogger(__name__)

# Entries below this confidence were routed to the inbox and need clarification.
# Exactly 0.7 counts as high confidence.
LOW_CONFIDENCE_THRESHOLD = 0.7

HINT_KEYWORDS = ("[person]", "[project]", "[idea]", "[task]")

CONFIRMATION_OPENING = "Your thought has been captured!"
REPLY_INSTRUCTION = "Reply to this email to continue the conversation."


def confidence_percent(confidence: float) -> int:
    """
    confidence * 100 rounded half-up to a whole percent (0.675 -> 68).

    Rounding works on the decimal literal, not the binary float, so
    0.285 -> 29 even though 0.285 * 100 is 28.499999... as a float.
    """
    scaled = Decimal(str(confidence)) * 100
    return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class ConfirmationSender:
    def __init__(self, smtp_sender: SmtpSender, thread_tracker: ThreadTracker):
        self._smtp_sender = smtp_sender
        self._thread_tracker = thread_tracker

    def is_available(self) -> bool:
        return self._smtp_sender.is_available()

    # ------------------------------------------------------------------
    # Formatting
    # ------------------------------------------------------------------

    def format_confirmation_email(
        self,
        original_subject: str,
        thread_id: str,
        entry: ConfirmationEntry,
    ) -> FormattedEmail:
        marker = self._thread_tracker.format_thread_id(thread_id)
        subject = f"Re: {original_subject} {marker}"

        lines = [
            CONFIRMATION_OPENING,
            "",
            f"Entry: {entry.name}",
            f"Category: {entry.category}",
            f"Confidence: {confidence_percent(entry.confidence)}%",
        ]

        if entry.confidence < LOW_CONFIDENCE_THRESHOLD:
            keywords = ", ".join(HINT_KEYWORDS[:-1]) + f", or {HINT_KEYWORDS[-1]}"
            lines += [
                "",
                "This entry was routed to your inbox due to low confidence.",
                f"To reclassify, reply with a category hint like {keywords}.",
                'For example: "[project] This should be a project"',
            ]

        lines += [
            "",
            "---",
            f"Thread ID: {marker}",
            REPLY_INSTRUCTION,
        ]
        return FormattedEmail(subject=subject, body="\n".join(lines))

    @staticmethod
    def format_routing_failure(original_subject: str) -> FormattedEmail:
        body = "\n".join([
            "We couldn't file your email because it wasn't sent to your personal capture address.",
            "",
            "Every account has its own address with a routing code after a plus sign,",
            "for example: capture+a1b2c3@example.com. You can find yours in your account settings.",
            "",
            "Please resend your message to that address.",
        ])
        return FormattedEmail(subject=f"Re: {original_subject}", body=body)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def send_confirmation(
        self,
        to: str,
        original_subject: str,
        original_message_id: str,
        thread_id: str,
        entry: ConfirmationEntry,
        references: Optional[list[str]] = None,
    ) -> SendEmailResult:
        """Compose and send a confirmation as a reply to original_message_id."""
        email = self.format_confirmation_email(original_subject, thread_id, entry)
        result = self._smtp_sender.send_reply(
            to,
            email.subject,
            email.body,
            original_message_id,
            references,
        )
        if not result.success:
            logger.warning(f"Confirmation to {to} for thread {thread_id} not sent: {result.error}")
        return result

    def send_routing_failure(
        self,
        to: str,
        original_subject: str,
        original_message_id: str,
    ) -> SendEmailResult:
        """Explain the missing/invalid routing code, threaded under the original only."""
        email = self.format_routing_failure(original_subject)
        return self._smtp_sender.send_reply(
            to,
            email.subject,
            email.body,
            original_message_id,
        )
