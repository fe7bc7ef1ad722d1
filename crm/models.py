"""
Typed rows for every CRM table.

Each ``from_record`` validates the fields a caller relies on, so loosely shaped
store rows are rejected at the boundary instead of deep inside the scheduler
or the delivery loop.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from crm.errors import DependencyError, ValidationError
from crm.runtime import parse_dt

TERMINAL_STAGE_NAMES = frozenset({"hired", "not interested"})
INTAKE_STAGE_NAME = "Intake"

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d(:[0-5]\d)?$")


class FollowUpStatus(str, Enum):
    SCHEDULED = "scheduled"
    SENT = "sent"
    CANCELLED = "cancelled"


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class ScheduleType(str, Enum):
    RELATIVE = "relative"
    ABSOLUTE = "absolute"


def is_terminal_stage(name: Optional[str]) -> bool:
    return (name or "").strip().lower() in TERMINAL_STAGE_NAMES


def _fields(record: Optional[Dict[str, Any]], table: str) -> Dict[str, Any]:
    if not record or not record.get("id"):
        raise DependencyError(f"Malformed {table} row: missing id")
    return record.get("fields") or {}


def _required(fields: Dict[str, Any], name: str, table: str, record_id: str) -> Any:
    value = fields.get(name)
    if value in (None, ""):
        raise DependencyError(f"Malformed {table} row {record_id}: missing {name}")
    return value


def _opt_str(value: Any) -> Optional[str]:
    if value in (None, ""):
        return None
    return str(value)


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass
class Recruit:
    id: str
    owner_user_id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    stage_id: Optional[str] = None
    status: Optional[str] = None
    notes: Optional[str] = None
    notes_updated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Recruit":
        f = _fields(record, "recruit")
        return cls(
            id=record["id"],
            owner_user_id=str(_required(f, "owner_user_id", "recruit", record["id"])),
            first_name=_opt_str(f.get("first_name")),
            last_name=_opt_str(f.get("last_name")),
            phone=_opt_str(f.get("phone")),
            stage_id=_opt_str(f.get("stage_id")),
            status=_opt_str(f.get("status")),
            notes=_opt_str(f.get("notes")),
            notes_updated_at=parse_dt(f.get("notes_updated_at")),
            created_at=parse_dt(f.get("created_at")),
        )

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


@dataclass
class Stage:
    id: str
    owner_user_id: str
    name: str
    sort_order: int = 0
    is_locked: bool = False

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Stage":
        f = _fields(record, "stage")
        return cls(
            id=record["id"],
            owner_user_id=str(_required(f, "owner_user_id", "stage", record["id"])),
            name=str(f.get("name") or ""),
            sort_order=_int(f.get("sort_order")),
            is_locked=bool(f.get("is_locked")),
        )

    @property
    def terminal(self) -> bool:
        return is_terminal_stage(self.name)


@dataclass
class MessageTemplate:
    id: str
    owner_user_id: str
    title: str
    body: str
    sort_order: int = 0

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "MessageTemplate":
        f = _fields(record, "template")
        return cls(
            id=record["id"],
            owner_user_id=str(_required(f, "owner_user_id", "template", record["id"])),
            title=str(f.get("title") or ""),
            body=str(f.get("body") or ""),
            sort_order=_int(f.get("sort_order")),
        )


@dataclass
class SequenceRule:
    id: str
    owner_user_id: str
    stage_id: str
    template_id: str
    schedule_type: ScheduleType
    offset_minutes: int = 0
    send_date: Optional[str] = None
    send_time_local: Optional[str] = None
    timezone: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "SequenceRule":
        f = _fields(record, "sequence")
        rid = record["id"]
        raw_type = str(f.get("schedule_type") or ScheduleType.RELATIVE.value).strip().lower()
        try:
            schedule_type = ScheduleType(raw_type)
        except ValueError as exc:
            raise DependencyError(f"Malformed sequence row {rid}: unknown schedule_type {raw_type!r}") from exc
        return cls(
            id=rid,
            owner_user_id=str(_required(f, "owner_user_id", "sequence", rid)),
            stage_id=str(_required(f, "stage_id", "sequence", rid)),
            template_id=str(_required(f, "template_id", "sequence", rid)),
            schedule_type=schedule_type,
            offset_minutes=_int(f.get("offset_minutes")),
            send_date=_opt_str(f.get("send_date")),
            send_time_local=_opt_str(f.get("send_time_local")),
            timezone=_opt_str(f.get("timezone")),
            created_at=parse_dt(f.get("created_at")),
        )

    def validate(self) -> "SequenceRule":
        """Relative rules carry only an offset; absolute rules need date, time and zone."""
        if self.schedule_type is ScheduleType.RELATIVE:
            if self.offset_minutes < 0:
                raise ValidationError("offset_minutes must be >= 0")
            if self.send_date or self.send_time_local:
                raise ValidationError("Relative rules cannot set send_date or send_time_local")
            return self

        if not (self.send_date and _DATE_RE.match(self.send_date)):
            raise ValidationError("send_date must be YYYY-MM-DD")
        if not (self.send_time_local and _TIME_RE.match(self.send_time_local)):
            raise ValidationError("send_time_local must be HH:MM")
        if not self.timezone:
            raise ValidationError("timezone is required for absolute rules")
        try:
            date.fromisoformat(self.send_date)
            ZoneInfo(self.timezone)
        except (ValueError, ZoneInfoNotFoundError) as exc:
            raise ValidationError(f"Invalid absolute schedule: {exc}") from exc
        return self


@dataclass
class FollowUp:
    id: str
    owner_user_id: str
    recruit_id: str
    template_id: Optional[str]
    scheduled_for: Optional[datetime]
    status: FollowUpStatus
    stage_id: Optional[str] = None
    source_sequence_id: Optional[str] = None
    attempt_count: int = 0
    last_attempt_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "FollowUp":
        f = _fields(record, "follow_up")
        rid = record["id"]
        try:
            status = FollowUpStatus(str(f.get("status") or FollowUpStatus.SCHEDULED.value).lower())
        except ValueError as exc:
            raise DependencyError(f"Malformed follow_up row {rid}: unknown status {f.get('status')!r}") from exc
        return cls(
            id=rid,
            owner_user_id=str(_required(f, "owner_user_id", "follow_up", rid)),
            recruit_id=str(_required(f, "recruit_id", "follow_up", rid)),
            template_id=_opt_str(f.get("template_id")),
            scheduled_for=parse_dt(f.get("scheduled_for")),
            status=status,
            stage_id=_opt_str(f.get("stage_id")),
            source_sequence_id=_opt_str(f.get("source_sequence_id")),
            attempt_count=_int(f.get("attempt_count")),
            last_attempt_at=parse_dt(f.get("last_attempt_at")),
            sent_at=parse_dt(f.get("sent_at")),
            error_message=_opt_str(f.get("error_message")),
        )


@dataclass
class Message:
    id: str
    owner_user_id: str
    recruit_id: str
    direction: Direction
    body: str
    provider_message_id: Optional[str] = None
    from_phone: Optional[str] = None
    to_phone: Optional[str] = None
    status: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Message":
        f = _fields(record, "message")
        rid = record["id"]
        return cls(
            id=rid,
            owner_user_id=str(_required(f, "owner_user_id", "message", rid)),
            recruit_id=str(_required(f, "recruit_id", "message", rid)),
            direction=Direction(str(_required(f, "direction", "message", rid)).lower()),
            body=str(f.get("body") or ""),
            provider_message_id=_opt_str(f.get("provider_message_id")),
            from_phone=_opt_str(f.get("from_phone")),
            to_phone=_opt_str(f.get("to_phone")),
            status=_opt_str(f.get("status")),
            created_at=parse_dt(f.get("created_at")),
        )


@dataclass
class Profile:
    id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Profile":
        f = _fields(record, "profile")
        # The profile row is keyed by the auth user id, stored in the ``id`` field.
        return cls(
            id=str(f.get("id") or record["id"]),
            first_name=_opt_str(f.get("first_name")),
            last_name=_opt_str(f.get("last_name")),
        )


@dataclass
class AuthUser:
    id: str
    email: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
