"""
Email channel configuration.

Loads SMTP/IMAP settings from environment variables (and a .env file, via
python-dotenv). The email channel is optional: when a transport is not
configured the rest of the app keeps working and the channel degrades to
disabled instead of failing startup.

Environment variables
---------------------
SMTP_HOST / SMTP_USER / SMTP_PASS   Outbound transport (all three required).
SMTP_PORT                           Default 587.
SMTP_SECURE                         true/1/yes or false/0/no. When unset or
                                    unparseable: port 465 => implicit TLS,
                                    any other port => STARTTLS.
IMAP_HOST / IMAP_USER / IMAP_PASS   Inbound transport (all three required).
IMAP_PORT                           Default 993. Always TLS.
EMAIL_POLL_INTERVAL                 Seconds between poll cycles (default 60, min 1).
EMAIL_PARSE_TIMEOUT                 Seconds to wait for a fetched batch to parse
                                    (default 30).
INBOUND_EMAIL_DOMAIN                Optional domain override for per-user
                                    routing addresses.
"""

import logging
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_SMTP_PORT = 587
DEFAULT_IMAP_PORT = 993
DEFAULT_POLL_INTERVAL = 60
DEFAULT_PARSE_TIMEOUT = 30
IMPLICIT_TLS_PORT = 465

_TRUE_VALUES = {"true", "1", "yes"}
_FALSE_VALUES = {"false", "0", "no"}


class SmtpConfig(BaseModel):
    host: str
    port: int
    user: str
    password: str
    secure: bool


class ImapConfig(BaseModel):
    host: str
    port: int
    user: str
    password: str
    tls: bool = True


class EmailConfig(BaseModel):
    """
    Resolved email channel settings.

    smtp / imap are None when the corresponding transport is not fully
    configured. enabled is True only when both are present.
    """
    smtp: Optional[SmtpConfig] = None
    imap: Optional[ImapConfig] = None
    poll_interval: int = DEFAULT_POLL_INTERVAL
    parse_timeout: int = DEFAULT_PARSE_TIMEOUT
    inbound_domain: Optional[str] = None
    enabled: bool = False


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------

def _missing(*names: str) -> list[str]:
    return [name for name in names if not os.getenv(name)]


def _parse_port(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        port = int(raw)
    except ValueError:
        port = 0
    if port < 1 or port > 65535:
        logger.warning(f"Invalid {name} {raw!r}, using default {default}")
        return default
    return port


def _parse_smtp_secure(port: int) -> bool:
    """
    Decide between implicit TLS and STARTTLS.

    An explicit SMTP_SECURE wins. Otherwise (or when the value is not a
    recognised boolean) port 465 means implicit TLS and anything else
    means a STARTTLS upgrade.
    """
    raw = os.getenv("SMTP_SECURE", "")
    if raw:
        lowered = raw.strip().lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        logger.warning(f"Invalid SMTP_SECURE {raw!r}, auto-detecting based on port")
    return port == IMPLICIT_TLS_PORT


def _parse_positive_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        value = 0
    if value < 1:
        logger.warning(f"Invalid {name} {raw!r}, using default {default}")
        return default
    return value


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def load_email_config() -> EmailConfig:
    """
    Build an EmailConfig from the current environment.

    Logs a single warning listing every missing variable when either
    transport is incomplete.
    """
    smtp_missing = _missing("SMTP_HOST", "SMTP_USER", "SMTP_PASS")
    imap_missing = _missing("IMAP_HOST", "IMAP_USER", "IMAP_PASS")

    if smtp_missing or imap_missing:
        logger.warning(
            "Email channel disabled: missing environment variables: "
            + ", ".join(smtp_missing + imap_missing)
        )

    smtp: Optional[SmtpConfig] = None
    if not smtp_missing:
        smtp_port = _parse_port("SMTP_PORT", DEFAULT_SMTP_PORT)
        smtp = SmtpConfig(
            host=os.environ["SMTP_HOST"],
            port=smtp_port,
            user=os.environ["SMTP_USER"],
            password=os.environ["SMTP_PASS"],
            secure=_parse_smtp_secure(smtp_port),
        )

    imap: Optional[ImapConfig] = None
    if not imap_missing:
        imap = ImapConfig(
            host=os.environ["IMAP_HOST"],
            port=_parse_port("IMAP_PORT", DEFAULT_IMAP_PORT),
            user=os.environ["IMAP_USER"],
            password=os.environ["IMAP_PASS"],
        )

    return EmailConfig(
        smtp=smtp,
        imap=imap,
        poll_interval=_parse_positive_int("EMAIL_POLL_INTERVAL", DEFAULT_POLL_INTERVAL),
        parse_timeout=_parse_positive_int("EMAIL_PARSE_TIMEOUT", DEFAULT_PARSE_TIMEOUT),
        inbound_domain=os.getenv("INBOUND_EMAIL_DOMAIN", "").strip() or None,
        enabled=smtp is not None and imap is not None,
    )


_email_config: Optional[EmailConfig] = None


def get_email_config() -> EmailConfig:
    """Return the process-wide EmailConfig, loading it on first use."""
    global _email_config
    if _email_config is None:
        _email_config = load_email_config()
    return _email_config


def reset_email_config() -> None:
    """Forget the cached EmailConfig (tests change the environment)."""
    global _email_config
    _email_config = None


def get_inbound_email_address(code: str, config: Optional[EmailConfig] = None) -> Optional[str]:
    """
    Compose the per-user routing address for a 6-hex inbound code.

    Uses the IMAP mailbox's local part with a +code suffix, e.g.
    "capture@example.com" + "a3f2e1" -> "capture+a3f2e1@example.com".
    INBOUND_EMAIL_DOMAIN replaces the domain when set.

    Returns None when inbound email is not configured.
    """
    config = config or get_email_config()
    if config.imap is None:
        return None

    local, _, domain = config.imap.user.partition("@")
    # Strip any existing +suffix from the mailbox user
    local = local.split("+", 1)[0]
    domain = config.inbound_domain or domain
    if not domain:
        return None
    return f"{local}+{code}@{domain}"
