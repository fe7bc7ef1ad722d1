# crm/routes/stages.py
"""
Pipeline stages and their sequence rules.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from crm import pipeline
from crm.profiles import ensure_profile
from crm.auth import current_user
from crm.models import AuthUser, Stage

router = APIRouter(prefix="/api/stages", tags=["stages"])


class StageRequest(BaseModel):
    name: Optional[str] = None


class ReorderRequest(BaseModel):
    order: List[str] = []


class SequenceRuleRequest(BaseModel):
    templateId: Optional[str] = None
    scheduleType: Optional[str] = None
    offsetMinutes: Optional[int] = None
    sendDate: Optional[str] = None
    sendTimeLocal: Optional[str] = None
    timezone: Optional[str] = None


def _stage_out(stage: Stage) -> dict:
    return {"id": stage.id, "name": stage.name, "sort_order": stage.sort_order, "is_locked": stage.is_locked}


@router.get("")
def list_stages(request: Request, user: AuthUser = Depends(current_user)):
    store = request.app.state.store
    ensure_profile(store, user)
    pipeline.ensure_intake_stage(store, user.id)
    return {"ok": True, "stages": [_stage_out(s) for s in pipeline.list_stages(store, user.id)]}


@router.post("")
def create_stage(payload: StageRequest, request: Request, user: AuthUser = Depends(current_user)):
    stage = pipeline.create_stage(request.app.state.store, user.id, payload.name or "")
    return {"ok": True, "stage": _stage_out(stage)}


@router.post("/reorder")
def reorder(payload: ReorderRequest, request: Request, user: AuthUser = Depends(current_user)):
    stages = pipeline.reorder_stages(request.app.state.store, user.id, payload.order)
    return {"ok": True, "stages": [_stage_out(s) for s in stages]}


@router.patch("/{stage_id}")
def rename(stage_id: str, payload: StageRequest, request: Request, user: AuthUser = Depends(current_user)):
    stage = pipeline.rename_stage(request.app.state.store, user.id, stage_id, payload.name or "")
    return {"ok": True, "stage": _stage_out(stage)}


@router.delete("/{stage_id}")
def delete(stage_id: str, request: Request, user: AuthUser = Depends(current_user)):
    return pipeline.delete_stage(request.app.state.store, user.id, stage_id)


@router.post("/{stage_id}/sequences")
def create_sequence(stage_id: str, payload: SequenceRuleRequest, request: Request, user: AuthUser = Depends(current_user)):
    rule = pipeline.create_sequence_rule(
        request.app.state.store,
        user.id,
        stage_id,
        payload.templateId or "",
        payload.scheduleType or "",
        offset_minutes=payload.offsetMinutes,
        send_date=payload.sendDate,
        send_time_local=payload.sendTimeLocal,
        timezone=payload.timezone,
    )
    return {
        "ok": True,
        "sequence": {
            "id": rule.id,
            "stage_id": rule.stage_id,
            "template_id": rule.template_id,
            "schedule_type": rule.schedule_type.value,
            "offset_minutes": rule.offset_minutes,
            "send_date": rule.send_date,
            "send_time_local": rule.send_time_local,
            "timezone": rule.timezone,
        },
    }
