"""Bearer-token and shared-secret auth for API and cron routes."""

from __future__ import annotations

import hmac
from typing import Any, Dict, List, Optional

import httpx
from fastapi import Request

from crm.config import Settings
from crm.errors import AuthError, ConfigError, DependencyError
from crm.models import AuthUser
from crm.runtime import get_logger

logger = get_logger("auth")


def _token_from_authorization(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    parts = header.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return None


class AuthClient:
    """Talks to the hosted auth provider (GoTrue-style ``/user`` and ``/admin/users``)."""

    def __init__(
        self,
        base_url: Optional[str],
        api_key: Optional[str],
        *,
        timeout: float = 10,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    @classmethod
    def from_settings(cls, s: Settings) -> "AuthClient":
        return cls(s.AUTH_URL, s.AUTH_API_KEY)

    def _request(self, method: str, path: str, bearer: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        if not (self.base_url and self.api_key):
            raise ConfigError("Missing AUTH_URL or AUTH_API_KEY")
        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {bearer}", "apikey": self.api_key}
        try:
            if self._client is not None:
                return self._client.request(method, url, headers=headers, params=params, timeout=self.timeout)
            return httpx.request(method, url, headers=headers, params=params, timeout=self.timeout)
        except httpx.HTTPError as exc:
            raise DependencyError(f"Auth provider unreachable: {exc}") from exc

    def get_user(self, token: str) -> AuthUser:
        resp = self._request("GET", "/user", token)
        if resp.status_code >= 400:
            raise AuthError("Invalid auth token")
        data: Dict[str, Any] = resp.json() or {}
        if not data.get("id"):
            raise AuthError("Invalid auth token")
        return AuthUser(id=str(data["id"]), email=data.get("email"), metadata=data.get("user_metadata") or {})

    def list_users(self, page: int = 1, per_page: int = 2000) -> List[Dict[str, Any]]:
        resp = self._request("GET", "/admin/users", self.api_key or "", params={"page": page, "per_page": per_page})
        if resp.status_code >= 400:
            raise DependencyError(
                f"Failed listing users ({resp.status_code})",
                provider_status=resp.status_code,
                body=resp.text,
            )
        data = resp.json() or {}
        users = data.get("users") if isinstance(data, dict) else data
        return [
            {
                "id": u.get("id"),
                "email": u.get("email"),
                "created_at": u.get("created_at"),
                "last_sign_in_at": u.get("last_sign_in_at"),
            }
            for u in (users or [])
        ]

    def delete_user(self, user_id: str) -> None:
        resp = self._request("DELETE", f"/admin/users/{user_id}", self.api_key or "")
        if resp.status_code >= 400 and resp.status_code != 404:
            raise DependencyError(
                f"Auth provider refused delete ({resp.status_code})",
                provider_status=resp.status_code,
                body=resp.text,
            )
        logger.info("Deleted auth user %s", user_id)


# -------------------------------------------------------------------
# FastAPI dependencies
# -------------------------------------------------------------------
def current_user(request: Request) -> AuthUser:
    """Require ``Authorization: Bearer <token>`` and resolve it to a user."""
    token = _token_from_authorization(request.headers.get("authorization"))
    if not token:
        raise AuthError("Missing auth token")
    auth: AuthClient = request.app.state.auth
    return auth.get_user(token)


def require_admin(request: Request) -> AuthUser:
    user = current_user(request)
    admins = request.app.state.settings.ADMIN_EMAILS
    if (user.email or "").strip().lower() not in admins:
        raise AuthError("Forbidden (not an admin)", forbidden=True)
    return user


def require_cron_secret(request: Request) -> None:
    """Require CRON_SECRET as bearer token, ``x-cron-secret`` header or ``?secret=``."""
    expected = request.app.state.settings.CRON_SECRET
    if not expected:
        raise ConfigError("CRON_SECRET is not configured")

    provided = _token_from_authorization(request.headers.get("authorization"))
    provided = provided or request.headers.get("x-cron-secret")
    provided = provided or request.query_params.get("secret")

    if not provided or not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise AuthError("Unauthorized")
