"""
CRM Runtime Core
----------------
Centralized utilities for logging, retries, time handling and
phone normalization. Every module gets its logger from here.
"""

from __future__ import annotations

import logging
import os
import re
import time
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Tuple, TypeVar

T = TypeVar("T")

_LOGGING_CONFIGURED = False
_DIGIT_PATTERN = re.compile(r"\d+")


# ────────────────────────────────────────────────
# ENV MASKING + LOGGING CONFIG
# ────────────────────────────────────────────────
def mask_secret(value: Optional[str]) -> str:
    """Mask sensitive values (API keys, tokens, etc.)."""
    if not value:
        return "<missing>"
    trimmed = value.strip()
    if len(trimmed) <= 4:
        return "*" * len(trimmed)
    if len(trimmed) <= 8:
        return f"{trimmed[:2]}...{trimmed[-2:]}"
    return f"{trimmed[:4]}...{trimmed[-4:]}"


def _normalize_level(value: int | str | None) -> int:
    if value is None:
        value = os.getenv("CRM_LOG_LEVEL")
        if not value:
            return logging.INFO
    if isinstance(value, int):
        return value
    level = logging.getLevelName(str(value).upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(level: int | str | None = None) -> None:
    """Initialize root logging configuration once."""
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return
    logging.basicConfig(
        level=_normalize_level(level),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    _LOGGING_CONFIGURED = True


def get_logger(name: str = "crm") -> logging.Logger:
    """Return module-specific logger."""
    if not _LOGGING_CONFIGURED:
        configure_logging()
    return logging.getLogger(name)


def log_env_summary() -> None:
    """Logs masked configuration for observability."""
    from crm.config import settings

    s = settings()
    get_logger("env").info(
        "Core env summary: airtable_key=%s base=%s in_memory=%s | twilio_sid=%s msid=%s from=%s dry_run=%s | "
        "cron_secret=%s auth_url=%s redis=%s",
        mask_secret(s.AIRTABLE_API_KEY),
        s.AIRTABLE_BASE_ID or "<missing>",
        s.FORCE_IN_MEMORY,
        mask_secret(s.TWILIO_ACCOUNT_SID),
        bool(s.TWILIO_MESSAGING_SERVICE_SID),
        s.TWILIO_FROM_NUMBER or "<missing>",
        s.SMS_DRY_RUN,
        mask_secret(s.CRON_SECRET),
        s.AUTH_URL or "<missing>",
        bool(s.REDIS_URL),
    )


# ────────────────────────────────────────────────
# TIME UTILITIES
# ────────────────────────────────────────────────
def utc_now() -> datetime:
    """Return UTC datetime (always timezone-aware)."""
    return datetime.now(timezone.utc)


def iso(dt: datetime) -> str:
    """ISO8601 string for an aware datetime, normalized to UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="seconds")


def iso_now() -> str:
    return iso(utc_now())


def parse_dt(value) -> Optional[datetime]:
    """Parse an ISO timestamp (``Z`` accepted); naive values are taken as UTC."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


# ────────────────────────────────────────────────
# PHONE UTILITIES
# ────────────────────────────────────────────────
def only_digits(value: str | None) -> str:
    """Extract all digits from a string."""
    if value is None:
        return ""
    return "".join(_DIGIT_PATTERN.findall(str(value)))


def last_10_digits(value: str | None) -> Optional[str]:
    """Return the last 10 digits from a phone number-like string."""
    digits = only_digits(value)
    return digits[-10:] if len(digits) >= 10 else None


def normalize_phone(value: str | None) -> Optional[str]:
    """
    Normalize loosely formatted phone text to a dialable +E.164-ish string.

    - keeps digits and a leading ``+`` only
    - ``+`` prefixed input is returned without further validation
    - 10 digits → North American, ``+1`` prefix
    - 11 digits starting with 1 → ``+`` prefix
    - anything else → ``+`` prefix, best effort (the provider rejects bad numbers)
    """
    if not value:
        return None
    raw = str(value).strip()
    digits = only_digits(raw)
    if not digits:
        return None
    if raw.startswith("+"):
        return f"+{digits}"
    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    return f"+{digits}"


def phone_variants(last10: str) -> Tuple[str, str, str]:
    """Stored-phone spellings for one North American subscriber number."""
    return (f"+1{last10}", f"1{last10}", last10)


# ────────────────────────────────────────────────
# RETRY UTILITIES
# ────────────────────────────────────────────────
def retry(
    func: Callable[[], T],
    *,
    retries: int = 2,
    base_delay: float = 0.5,
    backoff: float = 2.0,
    exceptions: Iterable[type[BaseException]] = (Exception,),
    logger: Optional[logging.Logger] = None,
) -> T:
    """Retry a callable with exponential backoff."""
    log = logger or get_logger(__name__)
    exc_types = tuple(exceptions)
    attempt = 0
    while True:
        try:
            return func()
        except exc_types as exc:
            if attempt >= retries:
                log.error("Retry exhausted after %s attempts: %s", attempt + 1, exc)
                raise
            delay = base_delay * (backoff ** attempt)
            log.warning("Retryable error (%s/%s): %s; sleeping %.2fs", attempt + 1, retries + 1, exc, delay)
            time.sleep(delay)
            attempt += 1
