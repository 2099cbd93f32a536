"""
Pydantic models for the email capture channel.

Models:
  EmailAddress        - a single address with optional display name
  ParsedEmail         - a raw mail payload parsed into structured fields
  CategoryHint        - bracketed category keyword found in a subject
  EmailThread         - email_threads DB row (message -> thread -> conversation)
  CreateThreadParams  - insert payload for email_threads
  SendEmailOptions    - outbound message request
  SendEmailResult     - outcome of an outbound send (never raised)
  DigestEmailResult   - outcome of a digest send (may be skipped)
  ConfirmationEntry   - entry summary shown in a confirmation email
  FormattedEmail      - composed subject + body pair
  PollResult          - per-cycle poller outcome (reported, never persisted)
  CapturedEntry       - entry stored by the classification collaborator
  ChatResponse        - collaborator reply for one captured message
  ProcessResult       - outcome of processing one inbound email
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


# ---------------------------------------------------------------------------
# Inbound message
# ---------------------------------------------------------------------------

class EmailAddress(BaseModel):
    """An email address with an optional display name."""
    model_config = ConfigDict(frozen=True)

    address: str
    name: Optional[str] = None


class ParsedEmail(BaseModel):
    """
    A mail payload after parsing, before any cleaning.

    Immutable once fetched. Missing headers are replaced with deterministic
    fallbacks by the parser (see EmailParser.parse), so every field that is
    not Optional is always populated.
    """
    model_config = ConfigDict(frozen=True)

    message_id: str
    in_reply_to: Optional[str] = None
    references: Optional[list[str]] = None
    sender: EmailAddress
    to: list[EmailAddress] = []
    subject: str = ""
    text: Optional[str] = None
    html: Optional[str] = None
    date: datetime


class CategoryHint(BaseModel):
    """Category requested by the sender via a [keyword] subject prefix."""
    category: Literal["people", "projects", "ideas", "admin"]
    original_text: str


# ---------------------------------------------------------------------------
# Thread tracking
# ---------------------------------------------------------------------------

class CreateThreadParams(BaseModel):
    """Fields needed to record an inbound message against a thread."""
    message_id: str
    thread_id: str
    in_reply_to: Optional[str] = None
    subject: str
    from_address: str
    conversation_id: str
    user_id: Optional[str] = None


class EmailThread(BaseModel):
    """Full email_threads record from the database."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    message_id: str
    thread_id: str
    in_reply_to: Optional[str] = None
    subject: str
    from_address: str
    conversation_id: str
    user_id: Optional[str] = None
    created_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Outbound
# ---------------------------------------------------------------------------

class SendEmailOptions(BaseModel):
    """
    Request for SmtpSender.send_email.

    references is omitted from the outgoing message entirely when empty;
    some servers reject an explicitly empty References header.
    """
    to: str
    subject: str
    text: str
    html: Optional[str] = None
    in_reply_to: Optional[str] = None
    references: Optional[list[str]] = None


class SendEmailResult(BaseModel):
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class DigestEmailResult(BaseModel):
    """Digest delivery outcome. skipped=True means email is disabled."""
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    skipped: bool = False


class ConfirmationEntry(BaseModel):
    """Summary of the entry created from an inbound email."""
    name: str
    category: str
    confidence: float


class FormattedEmail(BaseModel):
    subject: str
    body: str


# ---------------------------------------------------------------------------
# Poller
# ---------------------------------------------------------------------------

class PollResult(BaseModel):
    """Outcome of one poll cycle. Discarded after being reported."""
    emails_found: int = 0
    emails_processed: int = 0
    errors: list[str] = []


# ---------------------------------------------------------------------------
# Inbound processing
# ---------------------------------------------------------------------------

class CapturedEntry(BaseModel):
    """Entry created by the classification collaborator."""
    name: str
    category: str
    confidence: float
    path: Optional[str] = None


class ChatResponse(BaseModel):
    """
    What the classification collaborator returns for one captured message.

    entry is set when an entry was stored; message carries the assistant's
    reply text, used as a clarification email when no entry was created.
    """
    conversation_id: str
    entry: Optional[CapturedEntry] = None
    message: Optional[str] = None


class ProcessResult(BaseModel):
    success: bool
    conversation_id: Optional[str] = None
    entry_path: Optional[str] = None
    thread_id: Optional[str] = None
    error: Optional[str] = None
