"""
SMS Sender: Twilio-compatible transport + dispatch safety gate
- Uses the 2010-04-01 Messages endpoint
- Refuses bodies with unresolved {{tokens}} before any provider call
- Logs a preview + short hash of each body, never the full text
"""

from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from crm.config import Settings
from crm.errors import ConfigError, DependencyError, TemplateLeakError, ValidationError
from crm.runtime import get_logger, normalize_phone
from crm.templates import has_unresolved_tokens

logger = get_logger("sms_sender")

PREVIEW_CHARS = 120
ACCEPTED_STATUSES = {"queued", "accepted", "sending", "sent", "delivered", "scheduled"}


# =========================
# Errors
# =========================
class ChannelError(DependencyError):
    """Provider call failed (HTTP error status or transport failure)."""


# =========================
# Small helpers
# =========================
def body_hash(body: str) -> str:
    return hashlib.sha256(body.encode("utf-8")).hexdigest()[:12]


def _extract_error_body(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return (resp.text or "").strip()


def _summarize_error_body(body: Any) -> str:
    if isinstance(body, dict):
        for key in ("message", "error", "detail", "error_message"):
            if body.get(key):
                return str(body[key])
    return str(body or "")


# =========================
# Transport
# =========================
class TwilioChannel:
    """Outbound channel: ``create(to, body, from|messaging service) -> {id, status}``."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        *,
        api_base: str = "https://api.twilio.com",
        timeout: float = 15,
        dry_run: bool = False,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.url = f"{api_base.rstrip('/')}/2010-04-01/Accounts/{account_sid}/Messages.json"
        self.timeout = timeout
        self.dry_run = dry_run
        self._client = client

    @classmethod
    def from_settings(cls, s: Settings) -> Optional["TwilioChannel"]:
        if not (s.TWILIO_ACCOUNT_SID and s.TWILIO_AUTH_TOKEN):
            return None
        return cls(
            s.TWILIO_ACCOUNT_SID,
            s.TWILIO_AUTH_TOKEN,
            api_base=s.TWILIO_API_BASE,
            timeout=s.SMS_TIMEOUT_SEC,
            dry_run=s.SMS_DRY_RUN,
        )

    def _post(self, data: Dict[str, Any]) -> httpx.Response:
        auth = (self.account_sid, self.auth_token)
        if self._client is not None:
            return self._client.post(self.url, data=data, auth=auth, timeout=self.timeout)
        return httpx.post(self.url, data=data, auth=auth, timeout=self.timeout)

    def create(
        self,
        *,
        to: str,
        body: str,
        from_number: Optional[str] = None,
        messaging_service_sid: Optional[str] = None,
    ) -> Dict[str, Any]:
        data: Dict[str, Any] = {"To": to, "Body": body}
        if messaging_service_sid:
            data["MessagingServiceSid"] = messaging_service_sid
        else:
            data["From"] = from_number

        if self.dry_run:
            logger.info("[DRY RUN] POST %s to=%s", self.url, to)
            return {"id": f"SM_dry_{int(time.time() * 1000)}", "status": "queued", "raw": None}

        try:
            resp = self._post(data)
        except httpx.HTTPError as exc:
            raise ChannelError(f"SMS provider unreachable: {exc}") from exc

        if resp.status_code == 429:
            raise ChannelError(
                f"SMS provider rate limited; retry_after={resp.headers.get('Retry-After')}",
                provider_status=429,
                body=resp.headers.get("Retry-After"),
            )
        if resp.status_code >= 400:
            err_body = _extract_error_body(resp)
            summary = _summarize_error_body(err_body)
            logger.error("SMS provider %s error body: %s", resp.status_code, summary)
            message = f"SMS provider HTTP {resp.status_code}"
            if summary:
                message = f"{message}: {summary}"
            raise ChannelError(message, provider_status=resp.status_code, body=err_body)

        try:
            payload = resp.json()
        except ValueError:
            payload = {}
        sid = payload.get("sid") or payload.get("id") or payload.get("messageSid")
        return {"id": sid, "status": str(payload.get("status") or "queued").lower(), "raw": payload}


# =========================
# Dispatcher
# =========================
@dataclass
class SendResult:
    id: Optional[str]
    status: str
    to: str
    from_number: Optional[str]


class Dispatcher:
    """
    Sends one rendered SMS.

    Raises ``ValidationError`` for a missing/invalid recipient or empty body,
    ``TemplateLeakError`` when ``{{`` / ``}}`` survive in the body and
    ``ConfigError`` when no channel or no sender identity is configured.
    Provider failures propagate as ``ChannelError``.
    """

    def __init__(
        self,
        channel: Optional[TwilioChannel],
        *,
        messaging_service_sid: Optional[str] = None,
        from_number: Optional[str] = None,
    ) -> None:
        self.channel = channel
        self.messaging_service_sid = messaging_service_sid
        self.from_number = from_number

    @classmethod
    def from_settings(cls, s: Settings, channel: Optional[TwilioChannel] = None) -> "Dispatcher":
        return cls(
            channel if channel is not None else TwilioChannel.from_settings(s),
            messaging_service_sid=s.TWILIO_MESSAGING_SERVICE_SID,
            from_number=s.TWILIO_FROM_NUMBER,
        )

    def send(self, to: Optional[str], body: Optional[str], meta: Optional[Dict[str, Any]] = None) -> SendResult:
        meta = meta or {}
        to_raw = (to or "").strip()
        text = (body or "").strip()
        if not to_raw:
            raise ValidationError("sendSms: missing 'to'")
        if not text:
            raise ValidationError("sendSms: missing 'body'")

        to_e164 = normalize_phone(to_raw)
        if not to_e164:
            raise ValidationError("sendSms: invalid 'to' phone number")

        digest = body_hash(text)
        if has_unresolved_tokens(text):
            logger.error("sms.blocked to=%s body_hash=%s preview=%r meta=%s", to_e164, digest, text[:PREVIEW_CHARS], meta)
            raise TemplateLeakError()

        if self.channel is None:
            raise ConfigError("Missing TWILIO_ACCOUNT_SID or TWILIO_AUTH_TOKEN")
        if not (self.messaging_service_sid or self.from_number):
            raise ConfigError("Missing TWILIO_MESSAGING_SERVICE_SID or TWILIO_FROM_NUMBER/TWILIO_PHONE_NUMBER")

        using = "messaging_service" if self.messaging_service_sid else "from"
        logger.info(
            "sms.sending to=%s body_hash=%s preview=%r length=%s using=%s meta=%s",
            to_e164,
            digest,
            text[:PREVIEW_CHARS],
            len(text),
            using,
            meta,
        )

        res = self.channel.create(
            to=to_e164,
            body=text,
            from_number=None if self.messaging_service_sid else self.from_number,
            messaging_service_sid=self.messaging_service_sid,
        )

        logger.info("sms.sent sid=%s status=%s to=%s body_hash=%s meta=%s", res.get("id"), res.get("status"), to_e164, digest, meta)
        if res.get("status") not in ACCEPTED_STATUSES:
            raise ChannelError(f"SMS provider returned status {res.get('status')!r}", body=res.get("raw"))
        return SendResult(id=res.get("id"), status=res.get("status") or "queued", to=to_e164, from_number=self.from_number)
