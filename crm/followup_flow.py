"""
Follow-Up Flow
--------------
Handles the stage transition side of automated messaging:
  • moves a recruit to its new stage
  • cancels follow-ups still scheduled from the stage it left
  • schedules the new stage's sequence rules (upserted per recruit + rule)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from crm.datastore import Datastore, eq
from crm.errors import AuthError, NotFoundError, ValidationError
from crm.models import FollowUpStatus, Recruit, ScheduleType, SequenceRule, Stage
from crm.runtime import get_logger, iso, utc_now

logger = get_logger("followup_flow")

UPSERT_KEY = ("recruit_id", "source_sequence_id")


@dataclass
class StageChangeResult:
    cancelled_old: int
    created: int
    terminal: bool = False
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"ok": True, "cancelledOld": True, "cancelled": self.cancelled_old, "created": self.created}
        if self.terminal:
            out["terminal"] = True
        if self.reason:
            out["reason"] = self.reason
        return out


# ---------------------------------------------------------------------------
# Scheduling math
# ---------------------------------------------------------------------------
def _parse_time_of_day(raw: str) -> time:
    parts = [int(p) for p in raw.strip().split(":")]
    if len(parts) == 2:
        return time(parts[0], parts[1])
    if len(parts) == 3:
        return time(parts[0], parts[1], parts[2])
    raise ValueError(f"bad time of day {raw!r}")


def absolute_send_time(send_date: Optional[str], send_time_local: Optional[str], tz_name: Optional[str]) -> Optional[datetime]:
    """Local date + time-of-day in the rule's IANA zone, or None when incomplete/unparseable."""
    if not (send_date and send_time_local and tz_name):
        return None
    try:
        zone = ZoneInfo(tz_name)
        local = datetime.combine(date.fromisoformat(send_date.strip()), _parse_time_of_day(send_time_local))
    except (ZoneInfoNotFoundError, ValueError) as exc:
        logger.warning("Skipping absolute schedule %s %s %s: %s", send_date, send_time_local, tz_name, exc)
        return None
    return local.replace(tzinfo=zone)


def scheduled_for(rule: SequenceRule, now: datetime) -> Optional[datetime]:
    if rule.schedule_type is ScheduleType.RELATIVE:
        return now + timedelta(minutes=rule.offset_minutes)
    return absolute_send_time(rule.send_date, rule.send_time_local, rule.timezone)


# ---------------------------------------------------------------------------
# Core Scheduling Logic
# ---------------------------------------------------------------------------
class StageScheduler:
    def __init__(self, store: Datastore, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.store = store
        self.clock = clock

    def _load_recruit(self, recruit_id: str) -> Recruit:
        row = self.store.recruits.get(recruit_id)
        if not row:
            raise NotFoundError("Recruit not found", recruit_id=recruit_id)
        return Recruit.from_record(row)

    def _load_stage(self, stage_id: str, owner_user_id: str) -> Stage:
        row = self.store.stages.get(stage_id)
        if not row:
            raise NotFoundError("Stage not found", stage_id=stage_id)
        stage = Stage.from_record(row)
        if stage.owner_user_id != owner_user_id:
            raise NotFoundError("Stage not found", stage_id=stage_id)
        return stage

    def cancel_scheduled(self, recruit: Recruit, stage_id: Optional[str]) -> int:
        """Cancel scheduled follow-ups from ``stage_id`` (all of them when None)."""
        where = [
            eq("recruit_id", recruit.id),
            eq("owner_user_id", recruit.owner_user_id),
            eq("status", FollowUpStatus.SCHEDULED.value),
        ]
        if stage_id:
            where.append(eq("stage_id", stage_id))
        return self.store.follow_ups.update_where(where, {"status": FollowUpStatus.CANCELLED.value})

    def load_rules(self, stage_id: str, owner_user_id: str) -> List[SequenceRule]:
        rows = self.store.sequences.select(
            [eq("stage_id", stage_id), eq("owner_user_id", owner_user_id)],
            sort=["created_at"],
        )
        return [SequenceRule.from_record(r) for r in rows]

    def build_follow_ups(self, recruit: Recruit, stage: Stage, rules: List[SequenceRule]) -> List[Dict[str, Any]]:
        now = self.clock()
        rows: List[Dict[str, Any]] = []
        for rule in rules:
            when = scheduled_for(rule, now)
            if when is None:
                continue
            rows.append(
                {
                    "owner_user_id": recruit.owner_user_id,
                    "recruit_id": recruit.id,
                    "stage_id": stage.id,
                    "template_id": rule.template_id,
                    "scheduled_for": iso(when),
                    "status": FollowUpStatus.SCHEDULED.value,
                    "source_sequence_id": rule.id,
                    "attempt_count": 0,
                    "last_attempt_at": None,
                    "sent_at": None,
                    "error_message": None,
                }
            )
        return rows

    def on_stage_change(
        self,
        recruit_id: str,
        new_stage_id: str,
        *,
        owner_user_id: Optional[str] = None,
    ) -> StageChangeResult:
        if not recruit_id or not new_stage_id:
            raise ValidationError("Missing recruitId or newStageId")

        recruit = self._load_recruit(recruit_id)
        if owner_user_id and recruit.owner_user_id != owner_user_id:
            raise AuthError("Forbidden", forbidden=True)
        stage = self._load_stage(new_stage_id, recruit.owner_user_id)
        old_stage_id = recruit.stage_id

        self.store.recruits.update(recruit.id, {"stage_id": stage.id})
        cancelled = self.cancel_scheduled(recruit, old_stage_id)
        logger.info(
            "Recruit %s moved %s → %s; cancelled %s scheduled follow-up(s)",
            recruit.id,
            old_stage_id or "<none>",
            stage.id,
            cancelled,
        )

        if stage.terminal:
            return StageChangeResult(cancelled_old=cancelled, created=0, terminal=True)

        rows = self.build_follow_ups(recruit, stage, self.load_rules(stage.id, recruit.owner_user_id))
        if not rows:
            return StageChangeResult(cancelled_old=cancelled, created=0, reason="no sequences")

        self.store.follow_ups.upsert(rows, key_fields=UPSERT_KEY)
        logger.info("Scheduled %s follow-up(s) for recruit %s in stage %s", len(rows), recruit.id, stage.name)
        return StageChangeResult(cancelled_old=cancelled, created=len(rows))
