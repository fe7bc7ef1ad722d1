"""
Inbound SMS webhook.

The provider always gets an empty TwiML 200, whatever happens here, so it
never retries. Matched messages are logged as inbound Message rows owned by
the recruit's owner; unmatched ones are dropped.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Request
from fastapi.responses import Response

from crm.datastore import Datastore, any_of, digits_contain, eq
from crm.locks import KeyStore
from crm.models import Direction, Recruit
from crm.runtime import get_logger, last_10_digits, normalize_phone, phone_variants

router = APIRouter()
logger = get_logger("inbound")

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'


def _twiml() -> Response:
    return Response(content=EMPTY_TWIML, media_type="text/xml", status_code=200)


def _pick(data: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return str(value)
    return ""


async def _parse_body(request: Request) -> Dict[str, Any]:
    """Parse request body supporting both form data and JSON."""
    content_type = request.headers.get("content-type", "").lower()
    try:
        if "application/json" in content_type:
            body = await request.json()
            return dict(body) if isinstance(body, dict) else {}
        form = await request.form()
        return {k: (v if isinstance(v, str) else str(v)) for k, v in form.items()}
    except Exception as exc:
        logger.warning("Failed to parse inbound body: %s", exc)
        return {}


# === MATCHING ===
class InboundMatcher:
    def __init__(self, store: Datastore, keys: Optional[KeyStore] = None) -> None:
        self.store = store
        self.keys = keys if keys is not None else KeyStore()

    def match_recruit(self, from_e164: str) -> Optional[Recruit]:
        """Exact phone, then +1/1/bare variants of the last 10 digits, then digits-contain."""
        last10 = last_10_digits(from_e164)
        attempts = [[eq("phone", from_e164)]]
        if last10:
            attempts.append([any_of(*(eq("phone", v) for v in phone_variants(last10)))])
            attempts.append([digits_contain("phone", last10)])

        for where in attempts:
            row = self.store.recruits.first(where, sort=["created_at"])
            if row:
                return Recruit.from_record(row)
        return None

    def on_inbound_message(
        self,
        from_raw: Optional[str],
        to_raw: Optional[str],
        body_raw: Optional[str],
        provider_message_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Log the message against its recruit. Returns the stored row, or None when dropped."""
        from_e164 = normalize_phone(from_raw)
        to_e164 = normalize_phone(to_raw)
        body = (body_raw or "").strip()
        if not from_e164 or not to_e164 or not body:
            logger.info("Inbound ignored: missing from/to/body")
            return None

        recruit = self.match_recruit(from_e164)
        if recruit is None:
            logger.info("Inbound from %s matched no recruit; dropped", from_e164)
            return None

        if self.keys.seen(provider_message_id):
            logger.info("Duplicate inbound %s ignored", provider_message_id)
            return None

        row = self.store.messages.insert(
            {
                "owner_user_id": recruit.owner_user_id,
                "recruit_id": recruit.id,
                "direction": Direction.INBOUND.value,
                "body": body,
                "provider_message_id": provider_message_id,
                "from_phone": from_e164,
                "to_phone": to_e164,
                "status": "received",
            }
        )
        logger.info("Inbound %s logged for recruit=%s owner=%s", provider_message_id, recruit.id, recruit.owner_user_id)
        return row


# === ROUTES ===
@router.post("/api/twilio/inbound")
async def inbound_handler(request: Request):
    matcher: InboundMatcher = request.app.state.inbound
    try:
        data = await _parse_body(request)
        matcher.on_inbound_message(
            _pick(data, "From", "from"),
            _pick(data, "To", "to"),
            _pick(data, "Body", "body"),
            _pick(data, "MessageSid", "SmsMessageSid", "sid") or None,
        )
    except Exception:
        logger.exception("Inbound webhook error")
    return _twiml()
