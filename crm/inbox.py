"""Inbox read cursors and unread counts."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, Optional

from crm.datastore import Datastore, eq
from crm.models import Direction, Message
from crm.runtime import parse_dt, utc_now

READ_KEY = ("owner_user_id", "recruit_id")


def mark_read(store: Datastore, owner_user_id: str, recruit_id: str, at: Optional[datetime] = None) -> Dict[str, str]:
    stamp = (at or utc_now()).astimezone(timezone.utc).isoformat()
    store.inbox_reads.upsert(
        [{"owner_user_id": owner_user_id, "recruit_id": recruit_id, "last_read_at": stamp}],
        key_fields=READ_KEY,
    )
    return {"recruit_id": recruit_id, "last_read_at": stamp}


def unread_counts(store: Datastore, owner_user_id: str) -> Dict[str, int]:
    """Inbound messages newer than each recruit's cursor; no cursor means all are unread."""
    cursors: Dict[str, datetime] = {}
    for row in store.inbox_reads.select([eq("owner_user_id", owner_user_id)]):
        fields = row.get("fields") or {}
        when = parse_dt(fields.get("last_read_at"))
        if fields.get("recruit_id") and when:
            cursors[str(fields["recruit_id"])] = when

    counts: Dict[str, int] = {}
    rows = store.messages.select(
        [eq("owner_user_id", owner_user_id), eq("direction", Direction.INBOUND.value)],
        sort=["created_at"],
    )
    for row in rows:
        msg = Message.from_record(row)
        cursor = cursors.get(msg.recruit_id)
        if cursor is not None and msg.created_at is not None and msg.created_at <= cursor:
            continue
        counts[msg.recruit_id] = counts.get(msg.recruit_id, 0) + 1
    return counts
