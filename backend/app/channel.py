"""
Composition root for the email capture channel.

build_email_channel() wires config, parser, tracker, transports and the
poller together once at startup. main.py keeps the result on
app.state.email; routers read it from there.
"""

import logging
from typing import Any, Optional

from app.config import EmailConfig, get_email_config
from app.services.confirmation_sender import ConfirmationSender
from app.services.digest_mailer import DigestMailer
from app.services.email_parser import EmailParser
from app.services.email_service import EmailService, EntryProcessor
from app.services.imap_poller import ImapPoller
from app.services.smtp_sender import SmtpSender
from app.services.thread_tracker import ThreadTracker
from app.services.user_directory import UserDirectory

logger = logging.getLogger(__name__)


class EmailChannel:
    def __init__(
        self,
        config: EmailConfig,
        smtp_sender: SmtpSender,
        poller: ImapPoller,
        service: EmailService,
        digest_mailer: DigestMailer,
        user_directory: UserDirectory,
    ):
        self.config = config
        self.smtp_sender = smtp_sender
        self.poller = poller
        self.service = service
        self.digest_mailer = digest_mailer
        self.user_directory = user_directory

    def status(self) -> dict:
        return {
            "enabled": self.config.enabled,
            "smtp_configured": self.config.smtp is not None,
            "imap_configured": self.config.imap is not None,
            "polling": self.poller.is_running(),
            "poll_interval": self.config.poll_interval,
        }


def build_email_channel(
    config: Optional[EmailConfig] = None,
    db: Optional[Any] = None,
    entry_processor: Optional[EntryProcessor] = None,
) -> EmailChannel:
    config = config or get_email_config()

    parser = EmailParser()
    thread_tracker = ThreadTracker(db)
    user_directory = UserDirectory(db)
    smtp_sender = SmtpSender(config)
    confirmation_sender = ConfirmationSender(smtp_sender, thread_tracker)
    poller = ImapPoller(
        parser,
        thread_tracker,
        confirmation_sender,
        user_directory,
        config=config,
    )
    service = EmailService(
        parser,
        thread_tracker,
        smtp_sender,
        confirmation_sender,
        poller,
        entry_processor=entry_processor,
        config=config,
    )
    digest_mailer = DigestMailer(smtp_sender, config)

    logger.info(
        f"Email channel built (smtp={'on' if config.smtp else 'off'}, "
        f"imap={'on' if config.imap else 'off'})"
    )
    return EmailChannel(config, smtp_sender, poller, service, digest_mailer, user_directory)
