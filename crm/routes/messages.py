# crm/routes/messages.py
"""
Manual sends and the inbox read cursor.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from crm.auth import current_user
from crm.errors import AuthError, NotFoundError, ValidationError
from crm.inbox import mark_read, unread_counts
from crm.models import AuthUser, Direction, Recruit
from crm.runtime import get_logger, normalize_phone
from crm.sms_sender import Dispatcher

log = get_logger("routes.messages")

router = APIRouter(tags=["messages"])


class SendMessageRequest(BaseModel):
    recruitId: Optional[str] = None
    body: Optional[str] = None


def _owned_recruit(request: Request, user: AuthUser, recruit_id: str) -> Recruit:
    row = request.app.state.store.recruits.get(recruit_id)
    if not row:
        raise NotFoundError("Recruit not found", recruit_id=recruit_id)
    recruit = Recruit.from_record(row)
    if recruit.owner_user_id != user.id:
        raise AuthError("Forbidden", forbidden=True)
    return recruit


@router.post("/api/messages/send")
def send_message(payload: SendMessageRequest, request: Request, user: AuthUser = Depends(current_user)):
    body = (payload.body or "").strip()
    if not payload.recruitId or not body:
        raise ValidationError("Missing recruitId or body")

    recruit = _owned_recruit(request, user, payload.recruitId)
    to = normalize_phone(recruit.phone)
    if not to:
        raise ValidationError("Recruit phone is missing/invalid")

    dispatcher: Dispatcher = request.app.state.dispatcher
    result = dispatcher.send(to, body, {"route": "api/messages/send", "recruit_id": recruit.id, "owner_user_id": user.id})

    request.app.state.store.messages.insert(
        {
            "owner_user_id": user.id,
            "recruit_id": recruit.id,
            "direction": Direction.OUTBOUND.value,
            "body": body,
            "provider_message_id": result.id,
            "from_phone": result.from_number,
            "to_phone": result.to,
            "status": "sent",
        }
    )
    return {"ok": True, "sid": result.id}


@router.post("/api/inbox/{recruit_id}/read")
def read_inbox(recruit_id: str, request: Request, user: AuthUser = Depends(current_user)):
    recruit = _owned_recruit(request, user, recruit_id)
    return {"ok": True, **mark_read(request.app.state.store, user.id, recruit.id)}


@router.get("/api/inbox")
def inbox(request: Request, user: AuthUser = Depends(current_user)):
    return {"ok": True, "unread": unread_counts(request.app.state.store, user.id)}
