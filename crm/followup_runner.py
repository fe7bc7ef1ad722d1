"""
🔁 Follow-Up Runner
──────────────────
Sends every follow-up that is due:
  • oldest due first, bounded by ``limit``
  • one sender-profile query per batch
  • each item isolated: a broken row never aborts the run
  • debug mode renders previews without sending or writing

Failure policy:
  • permanent (missing template/recruit/phone, empty render, leaked token)
    → ``cancelled``
  • transient (channel or store errors, missing channel config)
    → stays ``scheduled`` until ``FOLLOWUP_MAX_ATTEMPTS``, then ``cancelled``
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from crm.config import Settings, settings as get_settings
from crm.datastore import RECORD_ID, Datastore, eq, in_, lte
from crm.errors import ConfigError, CRMError, DependencyError, NotFoundError, TemplateLeakError, ValidationError
from crm.locks import KeyStore
from crm.models import Direction, FollowUp, FollowUpStatus, MessageTemplate, Profile, Recruit
from crm.profiles import load_profiles
from crm.runtime import get_logger, iso, normalize_phone, utc_now
from crm.sms_sender import Dispatcher, SendResult
from crm.templates import render_sms

logger = get_logger("followup_runner")

DEBUG_NOTE = "debug=1 → no sends, no DB updates"
LIVE_NOTE = "live run"


class PermanentFailure(CRMError):
    """Structurally broken follow-up; retrying will not help."""


PERMANENT_ERRORS = (PermanentFailure, ValidationError, TemplateLeakError, NotFoundError)
TRANSIENT_ERRORS = (DependencyError, ConfigError)


@dataclass
class Prepared:
    follow_up: FollowUp
    recruit: Recruit
    template: MessageTemplate
    sender: Profile
    to: str
    body: str

    def preview(self) -> Dict[str, Any]:
        return {
            "follow_up_id": self.follow_up.id,
            "scheduled_for": iso(self.follow_up.scheduled_for) if self.follow_up.scheduled_for else None,
            "template_body": self.template.body,
            "body": self.body,
            "to": self.to,
            "recruit": {
                "id": self.recruit.id,
                "first_name": self.recruit.first_name,
                "last_name": self.recruit.last_name,
                "phone": self.recruit.phone,
            },
            "sender": {"first_name": self.sender.first_name, "last_name": self.sender.last_name},
        }


# --------------------------
# Core class
# --------------------------
class FollowUpRunner:
    def __init__(
        self,
        store: Datastore,
        dispatcher: Dispatcher,
        *,
        keys: Optional[KeyStore] = None,
        config: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.config = config or get_settings()
        self.keys = keys if keys is not None else KeyStore()
        self.clock = clock

    # ---- fetch
    def due(self, now: datetime, limit: int) -> List[Dict[str, Any]]:
        return self.store.follow_ups.select(
            [eq("status", FollowUpStatus.SCHEDULED.value), lte("scheduled_for", iso(now))],
            sort=["scheduled_for"],
            limit=limit,
        )

    def _load_by_id(self, table, ids: List[str], parse) -> Dict[str, Any]:
        ids = sorted({i for i in ids if i})
        if not ids:
            return {}
        out: Dict[str, Any] = {}
        for row in table.select([in_(RECORD_ID, ids)]):
            try:
                out[row["id"]] = parse(row)
            except DependencyError as exc:
                logger.warning("Skipping malformed row: %s", exc)
        return out

    # ---- per item
    def prepare(
        self,
        fu: FollowUp,
        recruits: Dict[str, Recruit],
        templates: Dict[str, MessageTemplate],
        profiles: Dict[str, Profile],
    ) -> Prepared:
        template = templates.get(fu.template_id or "")
        if template is None or not template.body.strip():
            raise PermanentFailure("Missing template body")
        recruit = recruits.get(fu.recruit_id)
        if recruit is None:
            raise PermanentFailure("Missing recruit record")
        to = normalize_phone(recruit.phone)
        if not to:
            raise PermanentFailure("Recruit phone is missing/invalid")

        sender = profiles.get(fu.owner_user_id) or Profile(id=fu.owner_user_id)
        body = render_sms(template.body, recruit, sender, default_sender_name=self.config.SENDER_NAME)
        if not body:
            raise PermanentFailure("Rendered message is empty")
        return Prepared(follow_up=fu, recruit=recruit, template=template, sender=sender, to=to, body=body)

    def _still_scheduled(self, fu: FollowUp) -> bool:
        row = self.store.follow_ups.get(fu.id)
        if not row:
            return False
        return str((row.get("fields") or {}).get("status") or "").lower() == FollowUpStatus.SCHEDULED.value

    def _mark_sent(self, fu: FollowUp) -> None:
        stamp = iso(self.clock())
        self.store.follow_ups.update(
            fu.id,
            {
                "status": FollowUpStatus.SENT.value,
                "sent_at": stamp,
                "last_attempt_at": stamp,
                "error_message": None,
                "attempt_count": fu.attempt_count + 1,
            },
        )

    def _log_outbound(self, item: Prepared, result: SendResult) -> None:
        fu = item.follow_up
        self.store.messages.insert(
            {
                "owner_user_id": fu.owner_user_id,
                "recruit_id": fu.recruit_id,
                "direction": Direction.OUTBOUND.value,
                "body": item.body,
                "provider_message_id": result.id,
                "from_phone": result.from_number,
                "to_phone": result.to,
                "status": "sent",
            }
        )

    def _record_failure(self, fu: FollowUp, error: str, *, permanent: bool) -> str:
        attempts = fu.attempt_count + 1
        give_up = permanent or attempts >= self.config.FOLLOWUP_MAX_ATTEMPTS
        status = FollowUpStatus.CANCELLED if give_up else FollowUpStatus.SCHEDULED
        self.store.follow_ups.update(
            fu.id,
            {
                "status": status.value,
                "error_message": error,
                "last_attempt_at": iso(self.clock()),
                "attempt_count": attempts,
            },
        )
        return status.value

    def process(self, item_row: Dict[str, Any], recruits, templates, profiles) -> Tuple[str, Optional[str]]:
        """
        Returns (``sent`` | ``failed`` | ``skipped``, error message).

        The claim is taken before the status re-read, so a competing run that
        finished in between is always seen. Once the provider has accepted the
        message the claim is only released after the row is marked ``sent``;
        if that write fails the claim is left to expire on its TTL.
        """
        fu = FollowUp.from_record(item_row)
        if not self.keys.claim(fu.id, self.config.CLAIM_TTL_SEC):
            logger.info("Follow-up %s claimed by another run; skipping", fu.id)
            return "skipped", None

        release = True
        try:
            if not self._still_scheduled(fu):
                logger.info("Follow-up %s no longer scheduled; skipping", fu.id)
                return "skipped", None

            try:
                item = self.prepare(fu, recruits, templates, profiles)
                result = self.dispatcher.send(
                    item.to,
                    item.body,
                    {"route": "cron/send-followups", "follow_up_id": fu.id, "recruit_id": fu.recruit_id, "owner_user_id": fu.owner_user_id},
                )
            except PERMANENT_ERRORS as exc:
                status = self._record_failure(fu, str(exc), permanent=True)
                logger.warning("Follow-up %s failed permanently → %s: %s", fu.id, status, exc)
                return "failed", str(exc)
            except TRANSIENT_ERRORS as exc:
                status = self._record_failure(fu, str(exc), permanent=False)
                logger.warning("Follow-up %s failed (attempt %s) → %s: %s", fu.id, fu.attempt_count + 1, status, exc)
                return "failed", str(exc)

            release = False
            try:
                self._mark_sent(fu)
            except CRMError as exc:
                logger.error(
                    "Follow-up %s sent (sid=%s) but status write failed; claim held for %ss: %s",
                    fu.id,
                    result.id,
                    self.config.CLAIM_TTL_SEC,
                    exc,
                )
                return "sent", None
            release = True

            try:
                self._log_outbound(item, result)
            except CRMError as exc:
                logger.error("Follow-up %s sent (sid=%s) but message log failed: %s", fu.id, result.id, exc)
            return "sent", None
        finally:
            if release:
                self.keys.release(fu.id)

    # ---- run
    def run_once(self, now: Optional[datetime] = None, *, limit: Optional[int] = None, debug: bool = False) -> Dict[str, Any]:
        start = time.time()
        now = now or self.clock()
        if limit is None:
            limit = self.config.FOLLOWUP_BATCH_LIMIT
        rows = self.due(now, limit) if limit > 0 else []

        owner_ids = [(r.get("fields") or {}).get("owner_user_id") for r in rows]
        profiles = load_profiles(self.store, owner_ids)
        recruits = self._load_by_id(self.store.recruits, [(r.get("fields") or {}).get("recruit_id") for r in rows], Recruit.from_record)
        templates = self._load_by_id(self.store.templates, [(r.get("fields") or {}).get("template_id") for r in rows], MessageTemplate.from_record)

        summary: Dict[str, Any] = {
            "now": iso(now),
            "debug": debug,
            "checked": len(rows),
            "sent": 0,
            "failed": 0,
            "skipped": 0,
            "previews": [],
            "errors": [],
            "note": DEBUG_NOTE if debug else LIVE_NOTE,
        }

        for row in rows:
            if debug:
                try:
                    summary["previews"].append(self.prepare(FollowUp.from_record(row), recruits, templates, profiles).preview())
                except CRMError as exc:
                    summary["failed"] += 1
                    summary["errors"].append({"follow_up_id": row.get("id"), "error": str(exc)})
                continue

            try:
                outcome, error = self.process(row, recruits, templates, profiles)
            except Exception as exc:
                logger.exception("Follow-up %s crashed", row.get("id"))
                outcome, error = "failed", str(exc)
            summary[outcome] += 1
            if error:
                summary["errors"].append({"follow_up_id": row.get("id"), "error": error})

        logger.info(
            "✅ Follow-up run done | checked=%s | sent=%s | failed=%s | skipped=%s | debug=%s | duration=%.2fs",
            summary["checked"],
            summary["sent"],
            summary["failed"],
            summary["skipped"],
            debug,
            time.time() - start,
        )
        return summary
