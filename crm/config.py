from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional, Tuple

# -----------------------------
# .env Loader
# -----------------------------
from dotenv import load_dotenv

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
ENV_PATH = os.path.join(BASE_DIR, "..", ".env")
load_dotenv(dotenv_path=ENV_PATH, override=False)


# -----------------------------
# Env helpers
# -----------------------------
def env_bool(key: str, default: bool = False) -> bool:
    v = os.getenv(key)
    if v is None:
        return default
    return str(v).strip().lower() in ("1", "true", "yes", "on")


def env_int(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, default))
    except (TypeError, ValueError):
        return default


def env_str(key: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(key)
    return v.strip() if (v and str(v).strip() != "") else default


def env_list(key: str) -> Tuple[str, ...]:
    raw = env_str(key, "") or ""
    return tuple(part.strip().lower() for part in raw.split(",") if part.strip())


# -----------------------------
# Table names
# -----------------------------
RECRUITS_TABLE = "Recruits"
STAGES_TABLE = "Stages"
TEMPLATES_TABLE = "Message Templates"
SEQUENCES_TABLE = "Stage Sequences"
FOLLOW_UPS_TABLE = "Follow Ups"
MESSAGES_TABLE = "Messages"
INBOX_READS_TABLE = "Inbox Reads"
PROFILES_TABLE = "Profiles"

DEFAULT_SENDER_NAME = "Directions Group"
DEFAULT_TWILIO_API_BASE = "https://api.twilio.com"


# -----------------------------
# Settings Object
# -----------------------------
@dataclass(frozen=True)
class Settings:
    AIRTABLE_API_KEY: Optional[str]
    AIRTABLE_BASE_ID: Optional[str]
    FORCE_IN_MEMORY: bool
    RECRUITS_TABLE: str
    STAGES_TABLE: str
    TEMPLATES_TABLE: str
    SEQUENCES_TABLE: str
    FOLLOW_UPS_TABLE: str
    MESSAGES_TABLE: str
    INBOX_READS_TABLE: str
    PROFILES_TABLE: str
    TWILIO_ACCOUNT_SID: Optional[str]
    TWILIO_AUTH_TOKEN: Optional[str]
    TWILIO_MESSAGING_SERVICE_SID: Optional[str]
    TWILIO_FROM_NUMBER: Optional[str]
    TWILIO_API_BASE: str
    SMS_DRY_RUN: bool
    SMS_TIMEOUT_SEC: int
    SENDER_NAME: str
    CRON_SECRET: Optional[str]
    AUTH_URL: Optional[str]
    AUTH_API_KEY: Optional[str]
    ADMIN_EMAILS: Tuple[str, ...]
    REDIS_URL: Optional[str]
    REDIS_TLS: bool
    FOLLOWUP_BATCH_LIMIT: int
    FOLLOWUP_MAX_ATTEMPTS: int
    CLAIM_TTL_SEC: int


@lru_cache(maxsize=1)
def settings() -> Settings:
    return Settings(
        AIRTABLE_API_KEY=env_str("AIRTABLE_API_KEY"),
        AIRTABLE_BASE_ID=env_str("AIRTABLE_BASE_ID"),
        FORCE_IN_MEMORY=env_bool("CRM_FORCE_IN_MEMORY"),
        RECRUITS_TABLE=env_str("RECRUITS_TABLE", RECRUITS_TABLE),
        STAGES_TABLE=env_str("STAGES_TABLE", STAGES_TABLE),
        TEMPLATES_TABLE=env_str("TEMPLATES_TABLE", TEMPLATES_TABLE),
        SEQUENCES_TABLE=env_str("SEQUENCES_TABLE", SEQUENCES_TABLE),
        FOLLOW_UPS_TABLE=env_str("FOLLOW_UPS_TABLE", FOLLOW_UPS_TABLE),
        MESSAGES_TABLE=env_str("MESSAGES_TABLE", MESSAGES_TABLE),
        INBOX_READS_TABLE=env_str("INBOX_READS_TABLE", INBOX_READS_TABLE),
        PROFILES_TABLE=env_str("PROFILES_TABLE", PROFILES_TABLE),
        TWILIO_ACCOUNT_SID=env_str("TWILIO_ACCOUNT_SID"),
        TWILIO_AUTH_TOKEN=env_str("TWILIO_AUTH_TOKEN"),
        TWILIO_MESSAGING_SERVICE_SID=env_str("TWILIO_MESSAGING_SERVICE_SID"),
        TWILIO_FROM_NUMBER=env_str("TWILIO_FROM_NUMBER") or env_str("TWILIO_PHONE_NUMBER"),
        TWILIO_API_BASE=env_str("TWILIO_API_BASE", DEFAULT_TWILIO_API_BASE),
        SMS_DRY_RUN=env_bool("SMS_DRY_RUN"),
        SMS_TIMEOUT_SEC=env_int("SMS_TIMEOUT_SEC", 15),
        SENDER_NAME=env_str("SENDER_NAME", DEFAULT_SENDER_NAME),
        CRON_SECRET=env_str("CRON_SECRET"),
        AUTH_URL=env_str("AUTH_URL"),
        AUTH_API_KEY=env_str("AUTH_API_KEY"),
        ADMIN_EMAILS=env_list("ADMIN_EMAILS"),
        REDIS_URL=env_str("REDIS_URL"),
        REDIS_TLS=env_bool("REDIS_TLS", False),
        FOLLOWUP_BATCH_LIMIT=env_int("FOLLOWUP_BATCH_LIMIT", 50),
        FOLLOWUP_MAX_ATTEMPTS=env_int("FOLLOWUP_MAX_ATTEMPTS", 5),
        CLAIM_TTL_SEC=env_int("FOLLOWUP_CLAIM_TTL_SEC", 300),
    )
