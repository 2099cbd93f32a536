"""
Email parser service.

Turns a raw mail payload (bytes fetched over IMAP) into a ParsedEmail and
extracts the three things the capture pipeline needs from it:

  extract_text       - clean body text (signature, quotes and our own
                       thread footer removed; HTML stripped when there is
                       no plain-text part)
  extract_hint       - category hint from a "[person]"-style subject prefix
  extract_thread_id  - the 8-hex thread id from an "[SB-xxxxxxxx]" marker

Parsing is forgiving. Only a payload that cannot be read as
mail at all raises EmailParseError; missing headers get fallback values so
a single odd message never crashes the poller.
"""

import hashlib
import logging
import re
from datetime import datetime, timezone
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from typing import Optional, Union

from app.models.email import CategoryHint, EmailAddress, ParsedEmail

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

UNKNOWN_ADDRESS = "unknown@unknown"

# Only matches at the very start of the subject
HINT_PATTERN = re.compile(r"^\[(person|project|idea|task)\]\s*", re.IGNORECASE)

HINT_TO_CATEGORY = {
    "person": "people",
    "project": "projects",
    "idea": "ideas",
    "task": "admin",
}

THREAD_ID_PATTERN = re.compile(r"\[SB-([a-f0-9]{8})\]", re.IGNORECASE)

# A line that is only dashes or only underscores (3+), or the RFC 3676 "-- "
_SIGNATURE_LINE = re.compile(r"^(?:-{3,}|_{3,}|--)$")

# "Thread ID: [SB-xxxxxxxx]" plus the optional reply-instruction line after it,
# at the very end of the text
_THREAD_FOOTER = re.compile(
    r"(?:^|\n)[ \t]*Thread ID:[ \t]*\[SB-[a-f0-9]{8}\][^\n]*(?:\n[^\n]*)?\s*$",
    re.IGNORECASE,
)

_SCRIPT_STYLE = re.compile(r"<(script|style)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_BLOCK_TAGS = re.compile(r"</?(?:p|div|br|h[1-6]|li|tr)[^>]*>", re.IGNORECASE)
_ANY_TAG = re.compile(r"<[^>]+>")
_EXCESS_NEWLINES = re.compile(r"\n{3,}")

# &amp; is decoded last so "&amp;lt;" becomes "&lt;", not "<"
_HTML_ENTITIES = (
    ("&nbsp;", " "),
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&quot;", '"'),
    ("&#39;", "'"),
    ("&amp;", "&"),
)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class EmailParseError(ValueError):
    """Raised when a payload cannot be interpreted as an email at all."""

    def __init__(self, message: str):
        super().__init__(f"Email parsing failed: {message}")


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

class EmailParser:
    """Stateless; one instance can be shared by every poll cycle."""

    def parse(self, source: Union[bytes, str]) -> ParsedEmail:
        """
        Parse a raw RFC 5322 payload.

        Fallbacks:
          - no Message-ID  -> "<{sha256 prefix of payload}@fallback.local>",
                              stable across re-deliveries of the same bytes
          - no From        -> unknown@unknown
          - no/invalid Date -> now (UTC)

        Raises:
            EmailParseError: payload is not bytes/str, is empty, or has no
                             header section.
        """
        if isinstance(source, str):
            source = source.encode("utf-8", errors="replace")
        if not isinstance(source, (bytes, bytearray)):
            raise EmailParseError(f"unsupported payload type {type(source).__name__}")
        if not source.strip():
            raise EmailParseError("empty payload")

        try:
            message = BytesParser(policy=policy.default).parsebytes(bytes(source))
        except Exception as e:
            raise EmailParseError(str(e)) from e

        if not message.keys():
            raise EmailParseError("no headers found")

        text, html = self._extract_bodies(message)

        return ParsedEmail(
            message_id=self._header(message, "Message-ID") or self._fallback_message_id(source),
            in_reply_to=self._header(message, "In-Reply-To"),
            references=self._references(message),
            sender=self._first_address(message, "From"),
            to=self._addresses(message, "To") + self._addresses(message, "Cc"),
            subject=self._header(message, "Subject") or "",
            text=text,
            html=html,
            date=self._date(message),
        )

    def extract_text(self, email: ParsedEmail) -> str:
        """
        Return the cleaned body text.

        Source preference: plain text, else HTML with tags stripped, else "".
        Cleaning passes, in order:
          1. cut from the first signature delimiter line onward
          2. drop quoted reply lines (trimmed line starts with ">")
          3. drop our trailing "Thread ID: [SB-...]" footer block
          4. trim
        Re-cleaning already-cleaned text returns it unchanged.
        """
        text = email.text or ""
        if not text and email.html:
            text = self.strip_html(email.html)
        return self.clean_text(text)

    def clean_text(self, text: str) -> str:
        text = text.replace("\r\n", "\n")
        text = self._remove_signature(text)
        text = self._remove_quoted_replies(text)
        text = self._remove_thread_footer(text)
        return text.strip()

    def extract_hint(self, subject: str) -> Optional[CategoryHint]:
        """
        Match "[person]", "[project]", "[idea]" or "[task]" at the start of
        the subject (case-insensitive). Anywhere else, or any other bracket
        word, is no hint.
        """
        match = HINT_PATTERN.match(subject or "")
        if not match:
            return None
        category = HINT_TO_CATEGORY.get(match.group(1).lower())
        if category is None:
            return None
        return CategoryHint(category=category, original_text=match.group(0))

    def extract_thread_id(self, subject: str, body: str) -> Optional[str]:
        """Return the lowercase 8-hex thread id, searching subject before body."""
        for source in (subject or "", body or ""):
            match = THREAD_ID_PATTERN.search(source)
            if match:
                return match.group(1).lower()
        return None

    def strip_subject_markers(self, subject: str) -> str:
        """Subject with any leading category hint and thread markers removed."""
        subject = HINT_PATTERN.sub("", subject or "", count=1)
        subject = THREAD_ID_PATTERN.sub("", subject)
        return " ".join(subject.split())

    @staticmethod
    def strip_html(html: str) -> str:
        text = _SCRIPT_STYLE.sub("", html)
        text = _BLOCK_TAGS.sub("\n", text)
        text = _ANY_TAG.sub("", text)
        for entity, replacement in _HTML_ENTITIES:
            text = re.sub(re.escape(entity), replacement, text, flags=re.IGNORECASE)
        return _EXCESS_NEWLINES.sub("\n\n", text)

    # ------------------------------------------------------------------
    # Cleaning passes
    # ------------------------------------------------------------------

    @staticmethod
    def _remove_signature(text: str) -> str:
        lines = text.split("\n")
        for index, line in enumerate(lines):
            # Judged without surrounding whitespace, which the final trim removes
            stripped = line.strip()
            if stripped.startswith("-- ") or _SIGNATURE_LINE.match(stripped):
                return "\n".join(lines[:index])
        return text

    @staticmethod
    def _remove_quoted_replies(text: str) -> str:
        return "\n".join(
            line for line in text.split("\n") if not line.strip().startswith(">")
        )

    @staticmethod
    def _remove_thread_footer(text: str) -> str:
        while True:
            stripped = _THREAD_FOOTER.sub("", text)
            if stripped == text:
                return text
            text = stripped

    # ------------------------------------------------------------------
    # Header helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _header(message: EmailMessage, name: str) -> Optional[str]:
        try:
            value = message.get(name)
        except Exception as e:
            logger.debug(f"Unreadable {name} header: {e}")
            return None
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    def _references(self, message: EmailMessage) -> Optional[list[str]]:
        raw = self._header(message, "References")
        if not raw:
            return None
        return raw.split()

    @staticmethod
    def _addresses(message: EmailMessage, name: str) -> list[EmailAddress]:
        try:
            header = message.get(name)
            addresses = getattr(header, "addresses", None) or ()
        except Exception as e:
            logger.debug(f"Unreadable {name} header: {e}")
            return []
        return [
            EmailAddress(
                address=addr.addr_spec if addr.username else UNKNOWN_ADDRESS,
                name=addr.display_name or None,
            )
            for addr in addresses
        ]

    def _first_address(self, message: EmailMessage, name: str) -> EmailAddress:
        addresses = self._addresses(message, name)
        return addresses[0] if addresses else EmailAddress(address=UNKNOWN_ADDRESS)

    @staticmethod
    def _date(message: EmailMessage) -> datetime:
        try:
            header = message.get("Date")
            parsed = getattr(header, "datetime", None)
        except Exception:
            parsed = None
        if parsed is None:
            return datetime.now(timezone.utc)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    @staticmethod
    def _fallback_message_id(source: bytes) -> str:
        digest = hashlib.sha256(source).hexdigest()[:24]
        return f"<{digest}@fallback.local>"

    # ------------------------------------------------------------------
    # Body helpers
    # ------------------------------------------------------------------

    def _extract_bodies(self, message: EmailMessage) -> tuple[Optional[str], Optional[str]]:
        """Best-effort single text/plain and text/html body."""
        return (
            self._body_content(message, "plain"),
            self._body_content(message, "html"),
        )

    @staticmethod
    def _body_content(message: EmailMessage, subtype: str) -> Optional[str]:
        try:
            part = message.get_body(preferencelist=(subtype,))
        except Exception:
            part = None
        if part is None:
            return None

        try:
            content = part.get_content()
        except (LookupError, UnicodeError, AssertionError):
            payload = part.get_payload(decode=True) or b""
            content = payload.decode("utf-8", errors="replace")

        if isinstance(content, bytes):
            content = content.decode("utf-8", errors="replace")
        return content or None
