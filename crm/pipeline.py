"""
Pipeline configuration
----------------------
Per-owner stages (one locked "Intake" stage pinned first), the message
templates they send, and the sequence rules hanging off each stage.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from crm.datastore import Datastore, eq
from crm.errors import NotFoundError, ValidationError
from crm.models import INTAKE_STAGE_NAME, FollowUpStatus, MessageTemplate, ScheduleType, SequenceRule, Stage
from crm.runtime import get_logger

logger = get_logger("pipeline")

SORT_STEP = 10


def _intake_first(stages: List[Stage]) -> List[Stage]:
    return sorted(stages, key=lambda s: (not s.is_locked, s.sort_order, s.name.lower()))


def list_stages(store: Datastore, owner_user_id: str) -> List[Stage]:
    rows = store.stages.select([eq("owner_user_id", owner_user_id)], sort=["sort_order"])
    return _intake_first([Stage.from_record(r) for r in rows])


def ensure_intake_stage(store: Datastore, owner_user_id: str) -> Stage:
    """Create the locked Intake stage the first time an owner shows up."""
    row = store.stages.first([eq("owner_user_id", owner_user_id), eq("is_locked", True)])
    if row:
        return Stage.from_record(row)
    row = store.stages.insert(
        {"owner_user_id": owner_user_id, "name": INTAKE_STAGE_NAME, "sort_order": 0, "is_locked": True}
    )
    logger.info("Created Intake stage for owner=%s", owner_user_id)
    return Stage.from_record(row)


def get_stage(store: Datastore, owner_user_id: str, stage_id: str) -> Stage:
    row = store.stages.get(stage_id)
    if not row:
        raise NotFoundError("Stage not found", stage_id=stage_id)
    stage = Stage.from_record(row)
    if stage.owner_user_id != owner_user_id:
        raise NotFoundError("Stage not found", stage_id=stage_id)
    return stage


def create_stage(store: Datastore, owner_user_id: str, name: str) -> Stage:
    clean = (name or "").strip()
    if not clean:
        raise ValidationError("Stage name is required")
    ensure_intake_stage(store, owner_user_id)
    last = max((s.sort_order for s in list_stages(store, owner_user_id)), default=0)
    row = store.stages.insert(
        {"owner_user_id": owner_user_id, "name": clean, "sort_order": last + SORT_STEP, "is_locked": False}
    )
    return Stage.from_record(row)


def rename_stage(store: Datastore, owner_user_id: str, stage_id: str, name: str) -> Stage:
    stage = get_stage(store, owner_user_id, stage_id)
    if stage.is_locked:
        raise ValidationError("The Intake stage cannot be renamed")
    clean = (name or "").strip()
    if not clean:
        raise ValidationError("Stage name is required")
    return Stage.from_record(store.stages.update(stage.id, {"name": clean}))


def delete_stage(store: Datastore, owner_user_id: str, stage_id: str) -> Dict[str, Any]:
    """Drop a stage; its recruits fall back to Intake and its scheduled follow-ups are cancelled."""
    stage = get_stage(store, owner_user_id, stage_id)
    if stage.is_locked:
        raise ValidationError("The Intake stage cannot be deleted")
    intake = ensure_intake_stage(store, owner_user_id)

    cancelled = store.follow_ups.update_where(
        [eq("owner_user_id", owner_user_id), eq("stage_id", stage.id), eq("status", FollowUpStatus.SCHEDULED.value)],
        {"status": FollowUpStatus.CANCELLED.value},
    )
    moved = store.recruits.update_where(
        [eq("owner_user_id", owner_user_id), eq("stage_id", stage.id)],
        {"stage_id": intake.id},
    )
    rules = store.sequences.delete_where([eq("owner_user_id", owner_user_id), eq("stage_id", stage.id)])
    store.stages.delete([stage.id])
    logger.info("Deleted stage %s: moved=%s cancelled=%s rules=%s", stage.id, moved, cancelled, rules)
    return {"ok": True, "moved": moved, "cancelled": cancelled, "rulesDeleted": rules}


def reorder_stages(store: Datastore, owner_user_id: str, ordered_ids: Sequence[str]) -> List[Stage]:
    """Positions 10, 20, ... in the given order; Intake stays at 0."""
    stages = {s.id: s for s in list_stages(store, owner_user_id)}
    unknown = [i for i in ordered_ids if i not in stages]
    if unknown:
        raise NotFoundError("Stage not found", stage_id=unknown[0])

    position = 0
    for stage_id in ordered_ids:
        stage = stages[stage_id]
        if stage.is_locked:
            continue
        position += SORT_STEP
        if stage.sort_order != position:
            store.stages.update(stage.id, {"sort_order": position})
    return list_stages(store, owner_user_id)


# -------------------------------------------------------------------
# Message templates
# -------------------------------------------------------------------
def list_templates(store: Datastore, owner_user_id: str) -> List[MessageTemplate]:
    rows = store.templates.select([eq("owner_user_id", owner_user_id)], sort=["sort_order", "created_at"])
    return [MessageTemplate.from_record(r) for r in rows]


def get_template(store: Datastore, owner_user_id: str, template_id: str) -> MessageTemplate:
    row = store.templates.get(template_id) if template_id else None
    if not row or (row.get("fields") or {}).get("owner_user_id") != owner_user_id:
        raise NotFoundError("Template not found", template_id=template_id)
    return MessageTemplate.from_record(row)


def create_template(store: Datastore, owner_user_id: str, title: str, body: Optional[str]) -> MessageTemplate:
    """New templates go to the end of the owner's list."""
    clean_title = (title or "").strip()
    if not clean_title:
        raise ValidationError("Title is required")
    last = max((t.sort_order for t in list_templates(store, owner_user_id)), default=0)
    row = store.templates.insert(
        {
            "owner_user_id": owner_user_id,
            "title": clean_title,
            "body": (body or "").strip() or None,
            "sort_order": last + 1,
        }
    )
    return MessageTemplate.from_record(row)


def delete_template(store: Datastore, owner_user_id: str, template_id: str) -> Dict[str, Any]:
    """Drop a template together with the rules that use it and its pending follow-ups."""
    template = get_template(store, owner_user_id, template_id)
    cancelled = store.follow_ups.update_where(
        [
            eq("owner_user_id", owner_user_id),
            eq("template_id", template.id),
            eq("status", FollowUpStatus.SCHEDULED.value),
        ],
        {"status": FollowUpStatus.CANCELLED.value},
    )
    rules = store.sequences.delete_where([eq("owner_user_id", owner_user_id), eq("template_id", template.id)])
    store.templates.delete([template.id])
    logger.info("Deleted template %s: cancelled=%s rules=%s", template.id, cancelled, rules)
    return {"ok": True, "cancelled": cancelled, "rulesDeleted": rules}


# -------------------------------------------------------------------
# Sequence rules
# -------------------------------------------------------------------
def create_sequence_rule(
    store: Datastore,
    owner_user_id: str,
    stage_id: str,
    template_id: str,
    schedule_type: str,
    *,
    offset_minutes: Optional[int] = None,
    send_date: Optional[str] = None,
    send_time_local: Optional[str] = None,
    timezone: Optional[str] = None,
) -> SequenceRule:
    stage = get_stage(store, owner_user_id, stage_id)
    get_template(store, owner_user_id, template_id)

    try:
        kind = ScheduleType(str(schedule_type or "").strip().lower())
    except ValueError as exc:
        raise ValidationError("schedule_type must be 'relative' or 'absolute'") from exc

    rule = SequenceRule(
        id="",
        owner_user_id=owner_user_id,
        stage_id=stage.id,
        template_id=template_id,
        schedule_type=kind,
        offset_minutes=int(offset_minutes or 0),
        send_date=(send_date or "").strip() or None,
        send_time_local=(send_time_local or "").strip() or None,
        timezone=(timezone or "").strip() or None,
    ).validate()

    fields: Dict[str, Any] = {
        "owner_user_id": owner_user_id,
        "stage_id": stage.id,
        "template_id": template_id,
        "schedule_type": kind.value,
    }
    if kind is ScheduleType.RELATIVE:
        fields["offset_minutes"] = rule.offset_minutes
    else:
        fields.update(send_date=rule.send_date, send_time_local=rule.send_time_local, timezone=rule.timezone)
    return SequenceRule.from_record(store.sequences.insert(fields))
