"""
Email service.

Coordinates the capture channel end to end and is the processor the
ImapPoller calls for every routed message:

  1. Skip messages whose Message-ID already has a thread row
  2. Continue an existing conversation when the subject or body carries a
     [SB-xxxxxxxx] marker, otherwise mint a new thread id
  3. Pull the [person]/[project]/[idea]/[task] hint and the cleaned text
     (falls back to the subject when the body is only a signature)
  4. Hand the text to the entry processor (classification lives elsewhere)
  5. Record the thread row
  6. Reply: confirmation when an entry was stored, the processor's
     clarification message otherwise
"""

import logging
from typing import Optional, Protocol

from app.config import EmailConfig, get_email_config
from app.models.email import (
    ChatResponse,
    ConfirmationEntry,
    CreateThreadParams,
    ParsedEmail,
    ProcessResult,
    SendEmailOptions,
    SendEmailResult,
)
from app.services.confirmation_sender import REPLY_INSTRUCTION, ConfirmationSender
from app.services.email_parser import HINT_PATTERN, EmailParser
from app.services.imap_poller import ImapPoller
from app.services.smtp_sender import NOT_CONFIGURED_ERROR, SmtpSender
from app.services.thread_tracker import ThreadTracker

logger = logging.getLogger(__name__)

# Bodies shorter than this are treated as signature-only
MIN_BODY_LENGTH = 10


class EntryProcessor(Protocol):
    """Classification collaborator that turns captured text into an entry."""

    def process_message(
        self,
        conversation_id: Optional[str],
        text: str,
        hint_category: Optional[str],
        user_id: Optional[str],
    ) -> ChatResponse:
        ...


class EmailService:
    def __init__(
        self,
        parser: EmailParser,
        thread_tracker: ThreadTracker,
        smtp_sender: SmtpSender,
        confirmation_sender: ConfirmationSender,
        poller: ImapPoller,
        entry_processor: Optional[EntryProcessor] = None,
        config: Optional[EmailConfig] = None,
    ):
        self._config = config or get_email_config()
        self._parser = parser
        self._thread_tracker = thread_tracker
        self._smtp_sender = smtp_sender
        self._confirmation_sender = confirmation_sender
        self._poller = poller
        self._entry_processor = entry_processor

        self._poller.set_processor(self._process_email_callback)

    def is_enabled(self) -> bool:
        return self._config.enabled

    def set_entry_processor(self, entry_processor: EntryProcessor) -> None:
        self._entry_processor = entry_processor

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def send_email(self, options: SendEmailOptions) -> SendEmailResult:
        if self._config.smtp is None:
            return SendEmailResult(success=False, error=NOT_CONFIGURED_ERROR)
        return self._smtp_sender.send_email(options)

    def send_reply(self, thread_id: str, content: str, subject: Optional[str] = None) -> SendEmailResult:
        """Reply into a tracked thread, addressed to whoever started it."""
        if self._config.smtp is None:
            return SendEmailResult(success=False, error=NOT_CONFIGURED_ERROR)

        thread = self._thread_tracker.find_by_thread_id(thread_id)
        if thread is None:
            return SendEmailResult(success=False, error=f"Thread not found: {thread_id}")

        return self._smtp_sender.send_reply(
            thread.from_address,
            subject or f"Re: {thread.subject}",
            content,
            thread.message_id,
            [thread.message_id],
        )

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def process_inbound_email(self, email: ParsedEmail, user_id: Optional[str] = None) -> ProcessResult:
        try:
            return self._process_email(email, user_id)
        except Exception as e:
            logger.exception(f"EmailService: Error processing email {email.message_id}")
            return ProcessResult(success=False, error=str(e) or type(e).__name__)

    def _process_email_callback(self, email: ParsedEmail, user_id: Optional[str]) -> bool:
        return self.process_inbound_email(email, user_id).success

    def _process_email(self, email: ParsedEmail, user_id: Optional[str]) -> ProcessResult:
        existing = self._thread_tracker.get_by_message_id(email.message_id)
        if existing is not None:
            logger.info(f"EmailService: Skipping duplicate email: {email.message_id}")
            return ProcessResult(
                success=True,
                conversation_id=existing.conversation_id,
                thread_id=existing.thread_id,
            )

        if self._entry_processor is None:
            return ProcessResult(success=False, error="No entry processor configured")

        extracted_thread_id = self._parser.extract_thread_id(email.subject, email.text or "")
        conversation_id = None
        if extracted_thread_id:
            conversation_id = self._thread_tracker.find_conversation(extracted_thread_id, user_id)
        thread_id = extracted_thread_id or self._thread_tracker.generate_thread_id()

        hint = self._parser.extract_hint(email.subject)
        text = self._parser.extract_text(email)
        if len(text) < MIN_BODY_LENGTH:
            text = self._subject_as_content(email.subject)
            logger.info(f"EmailService: Body is signature only, using subject as content: {text!r}")

        response = self._entry_processor.process_message(
            conversation_id,
            text,
            hint.category if hint else None,
            user_id,
        )

        self._thread_tracker.create_thread(
            CreateThreadParams(
                message_id=email.message_id,
                thread_id=thread_id,
                in_reply_to=email.in_reply_to,
                subject=email.subject,
                from_address=email.sender.address,
                conversation_id=response.conversation_id,
                user_id=user_id,
            )
        )

        if response.entry is not None:
            self._confirmation_sender.send_confirmation(
                to=email.sender.address,
                original_subject=email.subject,
                original_message_id=email.message_id,
                thread_id=thread_id,
                entry=ConfirmationEntry(
                    name=response.entry.name,
                    category=response.entry.category,
                    confidence=response.entry.confidence,
                ),
                references=email.references,
            )
        elif response.message:
            self._send_clarification(email, thread_id, response.message)

        return ProcessResult(
            success=True,
            conversation_id=response.conversation_id,
            entry_path=response.entry.path if response.entry else None,
            thread_id=thread_id,
        )

    def _subject_as_content(self, subject: str) -> str:
        return HINT_PATTERN.sub("", self._parser.strip_subject_markers(subject), count=1).strip()

    def _send_clarification(self, email: ParsedEmail, thread_id: str, message: str) -> None:
        marker = self._thread_tracker.format_thread_id(thread_id)
        body = "\n".join([message, "", "---", f"Thread ID: {marker}", REPLY_INSTRUCTION])
        result = self._smtp_sender.send_reply(
            email.sender.address,
            f"Re: {email.subject} {marker}",
            body,
            email.message_id,
            email.references,
        )
        if not result.success:
            logger.error(f"EmailService: Failed to send clarification email: {result.error}")

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def start_polling(self) -> None:
        if self._config.imap is None:
            logger.warning("EmailService: IMAP not configured, cannot start polling")
            return
        self._poller.start()

    def stop_polling(self) -> None:
        self._poller.stop()

    def poll_now(self):
        return self._poller.poll_now()
