"""
IMAP poller service.

Periodically pulls unread mail from the capture mailbox and hands each
message to the injected processor.

One poll cycle
--------------
1. Connect (TLS, lenient certificates), open INBOX read/write, search UNSEEN.
2. Fetch every message body, then parse the batch concurrently. The batch
   waits for all parses (bounded by EMAIL_PARSE_TIMEOUT) before moving on.
3. Mark every fetched message \\Seen and disconnect. This happens before any
   processing, so a processing failure never causes the server to
   redeliver the message.
4. Sort oldest first and, per message:
     a. resolve the "+{6 hex}@" routing code in the recipients to a user;
        no code or unknown code -> routing-failure reply, message dropped
     b. skip Message-IDs the thread tracker has already recorded
     c. call processor(email, user_id); truthy -> processed, falsy or
        raised -> error string, batch continues

poll_now() never raises. A connection-level failure ends the cycle with a
single "IMAP connection error: ..." entry in PollResult.errors, and the
next scheduled cycle runs normally.

Cycles never overlap: the scheduler thread and POST /poll share one lock,
and a cycle requested while another is running returns immediately with
POLL_IN_PROGRESS_ERROR.
"""

import imaplib
import logging
import ssl
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Any, Callable, Optional

from app.config import EmailConfig, ImapConfig, get_email_config
from app.models.email import ParsedEmail, PollResult
from app.services.confirmation_sender import ConfirmationSender
from app.services.email_parser import UNKNOWN_ADDRESS, EmailParser
from app.services.scheduler import IntervalScheduler
from app.services.thread_tracker import ThreadTracker
from app.services.user_directory import UserDirectory, extract_recipient_code

logger = logging.getLogger(__name__)

# (email, user_id) -> True when the message was durably stored
EmailProcessor = Callable[[ParsedEmail, Optional[str]], bool]

CONNECT_TIMEOUT_SECONDS = 10
INBOX = "INBOX"
MAX_PARSE_WORKERS = 8

NOT_CONFIGURED_ERROR = "IMAP not configured"
POLL_IN_PROGRESS_ERROR = "Poll already in progress"


class ImapConnectionError(Exception):
    """Mailbox-level failure (connect, auth, select, search)."""

    def __init__(self, message: str):
        super().__init__(f"IMAP connection failed: {message}")


# ---------------------------------------------------------------------------
# Mailbox client
# ---------------------------------------------------------------------------

class ImapMailbox:
    """
    Thin imaplib wrapper exposing the handful of operations a poll needs.

    All commands are UID-based. Bodies are fetched with BODY.PEEK[] so the
    \\Seen flag is only set by mark_seen().
    """

    def __init__(self, config: ImapConfig, timeout: float = CONNECT_TIMEOUT_SECONDS):
        self._config = config
        self._timeout = timeout
        self._conn: Optional[imaplib.IMAP4] = None
        self._selected = False

    @staticmethod
    def _ssl_context() -> ssl.SSLContext:
        # Self-signed certificates are accepted (test and self-hosted servers)
        context = ssl.create_default_context()
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        return context

    def connect(self) -> None:
        cfg = self._config
        try:
            if cfg.tls:
                self._conn = imaplib.IMAP4_SSL(
                    cfg.host, cfg.port, ssl_context=self._ssl_context(), timeout=self._timeout
                )
            else:
                self._conn = imaplib.IMAP4(cfg.host, cfg.port, timeout=self._timeout)
            self._conn.login(cfg.user, cfg.password)
        except (imaplib.IMAP4.error, OSError) as e:
            self.close()
            raise ImapConnectionError(str(e)) from e

    def select_inbox(self) -> int:
        """Open INBOX read/write; returns the message count."""
        try:
            typ, data = self._conn.select(INBOX, readonly=False)
        except (imaplib.IMAP4.error, OSError) as e:
            raise ImapConnectionError(f"Failed to open {INBOX}: {e}") from e
        if typ != "OK":
            raise ImapConnectionError(f"Failed to open {INBOX}: {data!r}")
        self._selected = True
        try:
            return int(data[0])
        except (TypeError, ValueError, IndexError):
            return 0

    def search_unseen(self) -> list[bytes]:
        try:
            typ, data = self._conn.uid("SEARCH", None, "UNSEEN")
        except (imaplib.IMAP4.error, OSError) as e:
            raise ImapConnectionError(f"Search failed: {e}") from e
        if typ != "OK":
            raise ImapConnectionError(f"Search failed: {data!r}")
        if not data or not data[0]:
            return []
        return data[0].split()

    def fetch(self, uid: bytes) -> bytes:
        """Full RFC 822 source of one message."""
        typ, data = self._conn.uid("FETCH", uid, "(BODY.PEEK[])")
        if typ != "OK":
            raise ImapConnectionError(f"Fetch of UID {uid!r} failed: {data!r}")
        for part in data or []:
            if isinstance(part, tuple) and len(part) >= 2:
                return part[1]
        raise ImapConnectionError(f"Fetch of UID {uid!r} returned no body")

    def mark_seen(self, uids: list[bytes]) -> None:
        if not uids:
            return
        typ, data = self._conn.uid("STORE", b",".join(uids), "+FLAGS", "(\\Seen)")
        if typ != "OK":
            raise ImapConnectionError(f"Failed to mark messages read: {data!r}")

    def close(self) -> None:
        if self._conn is None:
            return
        try:
            if self._selected:
                self._conn.close()
            self._conn.logout()
        except (imaplib.IMAP4.error, OSError) as e:
            logger.debug(f"ImapPoller: error while disconnecting: {e}")
        finally:
            self._conn = None
            self._selected = False


# ---------------------------------------------------------------------------
# Poller
# ---------------------------------------------------------------------------

class ImapPoller:
    def __init__(
        self,
        parser: EmailParser,
        thread_tracker: ThreadTracker,
        confirmation_sender: ConfirmationSender,
        user_directory: UserDirectory,
        processor: Optional[EmailProcessor] = None,
        config: Optional[EmailConfig] = None,
        mailbox_factory: Callable[[ImapConfig], Any] = ImapMailbox,
        scheduler_factory: Callable[[float, Callable[[], object]], Any] = IntervalScheduler,
    ):
        self._config = config or get_email_config()
        self._parser = parser
        self._thread_tracker = thread_tracker
        self._confirmation_sender = confirmation_sender
        self._user_directory = user_directory
        self._processor = processor
        self._mailbox_factory = mailbox_factory
        self._scheduler_factory = scheduler_factory
        self._scheduler = None
        self._running = False
        self._cycle_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def set_processor(self, processor: EmailProcessor) -> None:
        self._processor = processor

    def is_running(self) -> bool:
        return self._running

    @property
    def poll_interval(self) -> int:
        return self._config.poll_interval

    def start(self) -> None:
        """Poll now, then every poll_interval seconds. No-op if running or unconfigured."""
        if self._running:
            logger.warning("ImapPoller: Already running")
            return
        if self._config.imap is None:
            logger.warning("ImapPoller: IMAP not configured, cannot start polling")
            return

        self._running = True
        logger.info(f"ImapPoller: Starting polling every {self._config.poll_interval} seconds")
        self._scheduler = self._scheduler_factory(self._config.poll_interval, self._scheduled_poll)
        self._scheduler.start()

    def stop(self) -> None:
        """Cancel future cycles. Safe to call when idle; an in-flight cycle finishes."""
        if self._scheduler is not None:
            self._scheduler.stop()
            self._scheduler = None
        if self._running:
            logger.info("ImapPoller: Stopped polling")
        self._running = False

    def _scheduled_poll(self) -> None:
        result = self.poll_now()
        if result.errors:
            logger.warning(f"ImapPoller: cycle finished with {len(result.errors)} error(s): {result.errors}")

    def test_connection(self) -> dict:
        """Connect and authenticate once; {"success": bool, "error"?: str}."""
        if self._config.imap is None:
            return {"success": False, "error": NOT_CONFIGURED_ERROR}
        mailbox = self._mailbox_factory(self._config.imap)
        try:
            mailbox.connect()
            return {"success": True}
        except Exception as e:
            return {"success": False, "error": str(e)}
        finally:
            mailbox.close()

    # ------------------------------------------------------------------
    # Poll cycle
    # ------------------------------------------------------------------

    def poll_now(self) -> PollResult:
        if self._config.imap is None:
            return PollResult(errors=[NOT_CONFIGURED_ERROR])

        if not self._cycle_lock.acquire(blocking=False):
            logger.info("ImapPoller: Poll already in progress, skipping")
            return PollResult(errors=[POLL_IN_PROGRESS_ERROR])
        try:
            return self._run_cycle()
        finally:
            self._cycle_lock.release()

    def _run_cycle(self) -> PollResult:
        result = PollResult()
        logger.info("ImapPoller: Polling for new emails...")

        try:
            emails = self._fetch_unseen_emails(result)
        except Exception as e:
            result.errors.append(f"IMAP connection error: {e}")
            logger.error(f"ImapPoller: Connection error: {e}")
            return result

        if not emails:
            return result

        emails.sort(key=lambda email: email.date)

        for email in emails:
            self._handle_email(email, result)

        logger.info(
            f"ImapPoller: Cycle done - found {result.emails_found}, "
            f"processed {result.emails_processed}, errors {len(result.errors)}"
        )
        return result

    def _fetch_unseen_emails(self, result: PollResult) -> list[ParsedEmail]:
        """
        Fetch, parse, mark read, disconnect.

        Connection-level failures raise ImapConnectionError. Individual
        fetch or parse failures are recorded in result.errors.
        """
        mailbox = self._mailbox_factory(self._config.imap)
        try:
            mailbox.connect()
            mailbox.select_inbox()
            uids = mailbox.search_unseen()
            result.emails_found = len(uids)
            logger.info(f"ImapPoller: Found {len(uids)} unseen email(s)")
            if not uids:
                return []

            raw_messages: dict[bytes, bytes] = {}
            for uid in uids:
                try:
                    raw_messages[uid] = mailbox.fetch(uid)
                except Exception as e:
                    result.errors.append(f"Failed to fetch message UID {uid.decode()}: {e}")
                    logger.error(f"ImapPoller: Fetch error for UID {uid!r}: {e}")

            emails = self._parse_batch(raw_messages, result)

            # Every fetched message is marked read, parsed or not
            try:
                mailbox.mark_seen(list(raw_messages))
            except Exception as e:
                result.errors.append(f"Failed to mark emails as read: {e}")
                logger.error(f"ImapPoller: Failed to mark emails as read: {e}")

            return emails
        finally:
            mailbox.close()

    def _parse_batch(self, raw_messages: dict[bytes, bytes], result: PollResult) -> list[ParsedEmail]:
        """Parse concurrently; wait for the whole batch, at most parse_timeout seconds."""
        if not raw_messages:
            return []

        executor = ThreadPoolExecutor(max_workers=min(MAX_PARSE_WORKERS, len(raw_messages)))
        try:
            futures = {
                executor.submit(self._parser.parse, raw): uid
                for uid, raw in raw_messages.items()
            }
            done, not_done = wait(futures, timeout=self._config.parse_timeout)

            emails: list[ParsedEmail] = []
            for future in futures:
                uid = futures[future].decode()
                if future in not_done:
                    result.errors.append(f"Timed out parsing message UID {uid}")
                    logger.error(f"ImapPoller: Parse of UID {uid} exceeded {self._config.parse_timeout}s")
                    continue
                try:
                    emails.append(future.result())
                except Exception as e:
                    result.errors.append(f"Failed to parse message UID {uid}: {e}")
                    logger.error(f"ImapPoller: Failed to parse UID {uid}: {e}")
            return emails
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _handle_email(self, email: ParsedEmail, result: PollResult) -> None:
        logger.info(
            f"ImapPoller: Processing email - Subject: {email.subject!r} From: {email.sender.address}"
        )
        try:
            user_id = self._route(email)
            if user_id is None:
                return

            if self._thread_tracker.get_by_message_id(email.message_id):
                logger.info(f"ImapPoller: Skipping duplicate email: {email.message_id}")
                return

            if self._processor is None:
                result.errors.append(f"No processor configured for email: {email.message_id}")
                logger.warning(f"ImapPoller: No processor set, dropping email {email.message_id}")
                return

            if self._processor(email, user_id):
                result.emails_processed += 1
                logger.info(f"ImapPoller: Successfully processed email - Subject: {email.subject!r}")
            else:
                result.errors.append(f"Failed to process email: {email.message_id}")
                logger.error(f"ImapPoller: Failed to process email - Subject: {email.subject!r}")
        except Exception as e:
            result.errors.append(f"Error processing {email.message_id}: {e}")
            logger.exception(f"ImapPoller: Error processing email {email.subject!r}")

    def _route(self, email: ParsedEmail) -> Optional[str]:
        """
        Resolve the recipient routing code to a user id.

        Returns None (after sending a routing-failure reply) when there is
        no code or the code belongs to nobody.
        """
        code = extract_recipient_code(email.to)
        if code is None:
            logger.info(f"ImapPoller: No routing code in recipients, dropping email: {email.message_id}")
            self._reply_routing_failure(email)
            return None

        user = self._user_directory.get_user_by_inbound_code(code)
        if user is None:
            logger.info(f"ImapPoller: Unknown inbound code {code!r}, dropping email: {email.message_id}")
            self._reply_routing_failure(email)
            return None

        logger.info(f"ImapPoller: Routed to user {user['id']} via code {code}")
        return user["id"]

    def _reply_routing_failure(self, email: ParsedEmail) -> None:
        sender = email.sender.address
        if sender == UNKNOWN_ADDRESS:
            logger.info(f"ImapPoller: No sender address on {email.message_id}, not replying")
            return
        if sender.lower() == self._config.imap.user.lower():
            # Bounce from our own mailbox; replying would loop
            logger.info(f"ImapPoller: Message {email.message_id} came from the capture mailbox, not replying")
            return

        try:
            reply = self._confirmation_sender.send_routing_failure(
                to=sender,
                original_subject=email.subject,
                original_message_id=email.message_id,
            )
        except Exception as e:
            logger.warning(f"ImapPoller: Routing-failure reply to {sender} failed: {e}")
            return
        if not reply.success:
            logger.warning(f"ImapPoller: Routing-failure reply to {sender} not sent: {reply.error}")
