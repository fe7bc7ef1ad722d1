# crm/routes/followups.py
"""
🧠 Follow-up Job Router
-----------------------
Cron-triggered and user-triggered runs of the delivery loop.
"""

from fastapi import APIRouter, Depends, Query, Request

from crm.auth import current_user, require_cron_secret
from crm.followup_runner import FollowUpRunner
from crm.models import AuthUser

router = APIRouter(tags=["follow-ups"])

TRUTHY = {"1", "true", "yes"}


@router.api_route("/api/cron/send-followups", methods=["GET", "POST"], dependencies=[Depends(require_cron_secret)])
def send_followups(request: Request, debug: str = Query(default="0")):
    runner: FollowUpRunner = request.app.state.runner
    return runner.run_once(debug=debug.strip().lower() in TRUTHY)


@router.post("/api/follow-ups/run-now")
def run_now(request: Request, user: AuthUser = Depends(current_user)):
    runner: FollowUpRunner = request.app.state.runner
    return {"ok": True, "triggeredBy": user.id, "result": runner.run_once()}
