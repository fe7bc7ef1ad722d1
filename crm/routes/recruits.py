# crm/routes/recruits.py
"""
Recruit endpoints: stage changes (which drive follow-up scheduling) and CSV export.
"""

import csv
import io
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response
from pydantic import BaseModel

from crm.auth import current_user
from crm.datastore import eq
from crm.errors import ValidationError
from crm.followup_flow import StageScheduler
from crm.models import AuthUser, Recruit, Stage
from crm.runtime import get_logger, utc_now

log = get_logger("routes.recruits")

router = APIRouter(prefix="/api/recruits", tags=["recruits"])

EXPORT_LIMIT = 5000
EXPORT_HEADER = ["id", "first_name", "last_name", "phone", "status", "stage", "created_at"]


class ChangeStageRequest(BaseModel):
    recruitId: Optional[str] = None
    newStageId: Optional[str] = None


@router.post("/change-stage")
def change_stage(payload: ChangeStageRequest, request: Request, user: AuthUser = Depends(current_user)):
    if not payload.recruitId or not payload.newStageId:
        raise ValidationError("Missing recruitId or newStageId")
    scheduler: StageScheduler = request.app.state.scheduler
    result = scheduler.on_stage_change(payload.recruitId, payload.newStageId, owner_user_id=user.id)
    return result.to_dict()


@router.get("/export")
def export_recruits(request: Request, user: AuthUser = Depends(current_user)):
    store = request.app.state.store
    stages = {
        r["id"]: Stage.from_record(r).name
        for r in store.stages.select([eq("owner_user_id", user.id)])
    }
    rows = store.recruits.select([eq("owner_user_id", user.id)], sort=["-created_at"], limit=EXPORT_LIMIT)

    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(EXPORT_HEADER)
    for row in rows:
        r = Recruit.from_record(row)
        writer.writerow(
            [
                r.id,
                r.first_name or "",
                r.last_name or "",
                r.phone or "",
                r.status or "",
                stages.get(r.stage_id or "", ""),
                (row.get("fields") or {}).get("created_at") or "",
            ]
        )

    filename = f"recruits-{utc_now().date().isoformat()}.csv"
    log.info("Exported %s recruits for owner=%s", len(rows), user.id)
    return Response(
        content=buf.getvalue(),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
