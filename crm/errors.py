"""Error taxonomy shared by the HTTP layer, the scheduler and the delivery loop."""

from __future__ import annotations

from typing import Any, Dict, Optional


class CRMError(Exception):
    """Base error that carries an HTTP status and JSON-safe context."""

    status_code = 500

    def __init__(self, message: str, *, status_code: Optional[int] = None, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, **self.context}


class ValidationError(CRMError):
    status_code = 400


class AuthError(CRMError):
    status_code = 401

    def __init__(self, message: str, *, forbidden: bool = False, **context: Any) -> None:
        super().__init__(message, status_code=403 if forbidden else 401, **context)


class NotFoundError(CRMError):
    status_code = 404


class ConfigError(CRMError):
    status_code = 500


class DependencyError(CRMError):
    """A persistence or channel call failed; carries provider metadata when known."""

    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        provider_status: Optional[int] = None,
        body: Any = None,
        **context: Any,
    ) -> None:
        super().__init__(message, **context)
        self.provider_status = provider_status
        self.body = body

    def __str__(self) -> str:
        base = super().__str__()
        if self.body in (None, "", b"", {}):
            return base
        body_repr = str(self.body).strip()
        if not body_repr or body_repr in base:
            return base
        return f"{base} | body={body_repr}"


class TemplateLeakError(CRMError):
    """Blocked send: the body still contains ``{{...}}`` tokens."""

    status_code = 422
    code = "UNRENDERED_TEMPLATE_BLOCKED"

    def __init__(self, message: str = "Blocked SMS send: body contains unresolved template tokens", **context: Any) -> None:
        super().__init__(message, code=self.code, **context)
