# crm/routes/admin.py
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from crm.admin import purge_user
from crm.auth import require_admin
from crm.errors import ValidationError
from crm.models import AuthUser

router = APIRouter(prefix="/api/admin", tags=["admin"])

LIST_PAGE = 1
LIST_PER_PAGE = 2000


class DeleteUserRequest(BaseModel):
    userId: Optional[str] = None


@router.post("/delete-user")
def delete_user(payload: DeleteUserRequest, request: Request, admin: AuthUser = Depends(require_admin)):
    if not payload.userId:
        raise ValidationError("Missing userId")
    return purge_user(request.app.state.store, request.app.state.auth, payload.userId)


@router.get("/list-users")
def list_users(request: Request, admin: AuthUser = Depends(require_admin)):
    users = request.app.state.auth.list_users(page=LIST_PAGE, per_page=LIST_PER_PAGE)
    return {"users": users, "meta": {"page": LIST_PAGE, "perPage": LIST_PER_PAGE, "returned": len(users)}}
