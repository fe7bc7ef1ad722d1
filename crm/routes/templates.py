# crm/routes/templates.py
"""
Message templates owned by the signed-in user.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from crm import pipeline
from crm.auth import current_user
from crm.models import AuthUser, MessageTemplate

router = APIRouter(prefix="/api/templates", tags=["templates"])


class TemplateRequest(BaseModel):
    title: Optional[str] = None
    body: Optional[str] = None


def _template_out(t: MessageTemplate) -> dict:
    return {"id": t.id, "title": t.title, "body": t.body, "sort_order": t.sort_order}


@router.get("")
def list_templates(request: Request, user: AuthUser = Depends(current_user)):
    templates = pipeline.list_templates(request.app.state.store, user.id)
    return {"ok": True, "templates": [_template_out(t) for t in templates]}


@router.post("")
def create_template(payload: TemplateRequest, request: Request, user: AuthUser = Depends(current_user)):
    template = pipeline.create_template(request.app.state.store, user.id, payload.title or "", payload.body)
    return {"ok": True, "template": _template_out(template)}


@router.delete("/{template_id}")
def delete_template(template_id: str, request: Request, user: AuthUser = Depends(current_user)):
    return pipeline.delete_template(request.app.state.store, user.id, template_id)
